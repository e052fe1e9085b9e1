"""Data models for a user's objectives and their nested collections.

Every model is frozen. The state store never edits a record in place; it
builds a replacement, so anything handed to the interface layer stays a
stable snapshot.
"""

from collections import defaultdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..engine.ordering import display_key

HH_MM = r"^\d{2}:\d{2}$"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ObjectiveStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Collection(str, Enum):
    """Nested collections of an objective, as named on the wire."""

    TASKS = "tasks"
    AVOID = "avoid"
    NOTES = "notes"
    SESSIONS = "sessions"
    TIME_BLOCKS = "time_blocks"
    ROUTINES = "routines"  # keyed by routine kind
    PROGRESS = "progress"  # keyed by ISO date

    @property
    def keyed(self) -> bool:
        """Keyed collections are upserted by key rather than created by id."""
        return self in (Collection.ROUTINES, Collection.PROGRESS)


class NoteColor(str, Enum):
    YELLOW = "yellow"
    BLUE = "blue"
    GREEN = "green"
    PINK = "pink"
    PURPLE = "purple"
    ORANGE = "orange"
    RED = "red"
    GRAY = "gray"


class RoutineKind(str, Enum):
    SLEEP = "sleep"
    WATER = "water"
    BATH = "bath"
    EXERCISE = "exercise"
    MEAL = "meal"
    TEETH = "teeth"

    @property
    def variant(self) -> str:
        """Name of the settings variant this kind stores."""
        return ROUTINE_VARIANTS[self]


ROUTINE_VARIANTS = {
    RoutineKind.SLEEP: "sleep",
    RoutineKind.WATER: "intake",
    RoutineKind.BATH: "schedule",
    RoutineKind.EXERCISE: "schedule",
    RoutineKind.MEAL: "schedule",
    RoutineKind.TEETH: "schedule",
}


class Record(BaseModel):
    """Base for all immutable records."""

    model_config = ConfigDict(frozen=True)


class Item(Record):
    """A record living in one of an objective's id-addressed collections."""

    id: str = Field(min_length=1)
    created_at: datetime
    updated_at: datetime


class Task(Item):
    """A position-ordered task."""

    text: str = Field(min_length=1)
    description: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    order: int = 0


class AvoidItem(Item):
    """Something the user is trying not to do, with a clamped count."""

    title: str = Field(min_length=1)
    description: Optional[str] = None
    trigger_patterns: tuple[str, ...] = ()
    count: int = Field(default=0, ge=0)


class Note(Item):
    title: str = Field(min_length=1)
    content: str = ""
    color: NoteColor = NoteColor.YELLOW


class Session(Item):
    """A timed work interval."""

    label: str = Field(min_length=1)
    start_time: datetime
    duration_ms: int = Field(ge=0)

    @property
    def day(self) -> date:
        return self.start_time.date()


class TimeBlock(Item):
    """A planned stretch of the day, e.g. 09:00-10:30 deep work."""

    label: str = Field(min_length=1)
    start_time: str = Field(pattern=HH_MM)
    end_time: str = Field(pattern=HH_MM)
    color: str = ""
    completed: bool = False
    completed_at: Optional[datetime] = None


class ScheduledEntry(Record):
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    icon: str = ""
    time: str = Field(pattern=HH_MM)
    duration_minutes: int = Field(ge=1, le=1440)
    completed: bool = False
    completed_at: Optional[datetime] = None


class IntakeRoutine(Record):
    """Daily consumption counter, e.g. glasses of water."""

    variant: Literal["intake"] = "intake"
    daily_goal: float = Field(gt=0)
    current: float = Field(default=0, ge=0)
    entries: tuple[ScheduledEntry, ...] = ()


class SleepRoutine(Record):
    variant: Literal["sleep"] = "sleep"
    sleep_time: str = Field(pattern=HH_MM)
    wake_time: str = Field(pattern=HH_MM)
    entries: tuple[ScheduledEntry, ...] = ()  # naps


class ScheduleRoutine(Record):
    variant: Literal["schedule"] = "schedule"
    entries: tuple[ScheduledEntry, ...] = ()


RoutineSettings = Annotated[
    Union[IntakeRoutine, SleepRoutine, ScheduleRoutine],
    Field(discriminator="variant"),
]


class DailyProgress(Record):
    """One day's metrics for an objective."""

    day: date
    satisfaction: Optional[int] = Field(default=None, ge=1, le=5)
    weight: Optional[float] = Field(default=None, gt=0)
    notes: str = ""
    updated_at: datetime


class Objective(Record):
    """The top-level tracked target."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    status: ObjectiveStatus = ObjectiveStatus.ACTIVE
    routines_reset_on: Optional[date] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_dates(self) -> "Objective":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


ITEM_MODELS: dict[Collection, type[Item]] = {
    Collection.TASKS: Task,
    Collection.AVOID: AvoidItem,
    Collection.NOTES: Note,
    Collection.SESSIONS: Session,
    Collection.TIME_BLOCKS: TimeBlock,
}


class ObjectiveTree(Record):
    """An objective together with all of its nested collections."""

    objective: Objective
    tasks: tuple[Task, ...] = ()
    avoid: tuple[AvoidItem, ...] = ()
    notes: tuple[Note, ...] = ()
    sessions: tuple[Session, ...] = ()
    time_blocks: tuple[TimeBlock, ...] = ()
    routines: dict[RoutineKind, RoutineSettings] = Field(default_factory=dict)
    progress: dict[date, DailyProgress] = Field(default_factory=dict)

    @field_validator("tasks")
    @classmethod
    def _tasks_in_display_order(cls, value: tuple[Task, ...]) -> tuple[Task, ...]:
        return tuple(sorted(value, key=display_key))

    @field_validator("avoid", "notes")
    @classmethod
    def _by_creation(cls, value: tuple) -> tuple:
        return tuple(sorted(value, key=lambda item: (item.created_at, item.id)))

    @field_validator("sessions")
    @classmethod
    def _by_start(cls, value: tuple[Session, ...]) -> tuple[Session, ...]:
        return tuple(sorted(value, key=lambda s: (s.start_time, s.id)))

    @field_validator("time_blocks")
    @classmethod
    def _by_time_of_day(cls, value: tuple[TimeBlock, ...]) -> tuple[TimeBlock, ...]:
        return tuple(sorted(value, key=lambda block: (block.start_time, block.id)))

    @field_validator("routines")
    @classmethod
    def _variant_matches_kind(cls, value: dict) -> dict:
        for kind, routine in value.items():
            if routine.variant != kind.variant:
                raise ValueError(
                    f"routine '{kind.value}' expects '{kind.variant}' settings, "
                    f"got '{routine.variant}'"
                )
        return value

    @property
    def id(self) -> str:
        return self.objective.id

    def replace(self, **changes) -> "ObjectiveTree":
        """Return a validated copy with some fields swapped out."""
        return type(self).model_validate({**dict(self), **changes})

    def items(self, collection: Collection) -> tuple:
        """Items of an id-addressed collection."""
        return getattr(self, collection.value)

    def find(self, collection: Collection, item_id: str) -> Optional[Item]:
        for item in self.items(collection):
            if item.id == item_id:
                return item
        return None

    def sessions_by_day(self) -> dict[date, list[Session]]:
        """Group sessions by the calendar date they started on."""
        grouped: dict[date, list[Session]] = defaultdict(list)
        for session in self.sessions:
            grouped[session.day].append(session)
        return dict(grouped)


class UserSnapshot(Record):
    """One user's full objective tree at a point in time."""

    user_id: str
    active_objective_id: Optional[str] = None
    objectives: dict[str, ObjectiveTree] = Field(default_factory=dict)

    @property
    def active(self) -> Optional[ObjectiveTree]:
        if self.active_objective_id is None:
            return None
        return self.objectives.get(self.active_objective_id)
