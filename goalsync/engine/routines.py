"""Daily reset of routine progress."""

from datetime import date

from ..domain.models import IntakeRoutine, Objective, ObjectiveStatus, RoutineKind


def needs_daily_reset(objective: Objective, today: date) -> bool:
    """Active objectives are reset once per calendar day."""
    if objective.status != ObjectiveStatus.ACTIVE:
        return False
    return objective.routines_reset_on is None or objective.routines_reset_on < today


def reset_for_day(routines: dict) -> dict:
    """
    Clear yesterday's routine progress.

    Completed scheduled entries are marked not completed and intake
    counters go back to zero.

    Args:
        routines: Mapping of RoutineKind to routine settings

    Returns:
        Mapping of only the kinds that changed to their reset settings
    """
    changed: dict[RoutineKind, object] = {}
    for kind, routine in routines.items():
        updates = {}
        if any(entry.completed for entry in routine.entries):
            updates["entries"] = tuple(
                entry.model_copy(update={"completed": False, "completed_at": None})
                if entry.completed
                else entry
                for entry in routine.entries
            )
        if isinstance(routine, IntakeRoutine) and routine.current > 0:
            updates["current"] = 0
        if updates:
            changed[kind] = routine.model_copy(update=updates)
    return changed
