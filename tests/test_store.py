# tests/test_store.py
"""
Tests for GoalStateStore mutation intents.

Covers:
- Objective lifecycle and the active pointer
- Item add/update/remove with optimistic local state
- Task ordering writes and duplicate-order healing
- Debounced counters and routine settings
- Daily progress merging, routine reset and timer sessions
"""

from datetime import date, timedelta

import pytest

from conftest import OBJECTIVE_ID, T0, USER_ID, make_avoid, make_task, seed

from goalsync.domain.models import Collection, ObjectiveStatus, RoutineKind
from goalsync.engine.counter import CounterStatus
from goalsync.engine.ordering import OrderUpdate
from goalsync.engine.timer import TimerEngine
from goalsync.errors import TransportError


def task_ids(store, objective_id=OBJECTIVE_ID):
    return [task.id for task in store.objective(objective_id).tasks]


# =============================================================================
# Loading
# =============================================================================


@pytest.mark.asyncio
class TestLoad:
    """Tests for the initial snapshot load."""

    async def test_load_exposes_active_objective(self, store):
        assert store.loaded
        assert store.active_objective().id == OBJECTIVE_ID
        assert task_ids(store) == ["a", "b", "c"]

    async def test_duplicate_orders_are_healed_silently(self, gateway, make_store):
        await seed(gateway, tasks=(make_task("a", 0), make_task("b", 0, minutes=1), make_task("c", 1)))
        store = make_store()
        notices = []
        store.notices.subscribe(notices.append)

        await store.load()
        assert [t.order for t in store.objective(OBJECTIVE_ID).tasks] == [0, 1, 2]

        await store.settle()
        assert gateway.calls_to("batch_update_order") == [
            (OBJECTIVE_ID, Collection.TASKS, [OrderUpdate("b", 1), OrderUpdate("c", 2)])
        ]
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert [t.order for t in fresh.objectives[OBJECTIVE_ID].tasks] == [0, 1, 2]
        assert notices == []

    async def test_routines_reset_on_first_load_of_the_day(self, gateway, make_store, clock):
        await seed(
            gateway,
            routines={"water": {"variant": "intake", "daily_goal": 8, "current": 6}},
            routines_reset_on=(T0.date() - timedelta(days=1)).isoformat(),
        )
        store = make_store()
        await store.load()

        tree = store.objective(OBJECTIVE_ID)
        assert tree.routines[RoutineKind.WATER].current == 0
        assert tree.objective.routines_reset_on == clock().date()

        await store.settle()
        fresh = (await gateway.fetch_snapshot(USER_ID)).objectives[OBJECTIVE_ID]
        assert fresh.routines[RoutineKind.WATER].current == 0
        assert fresh.objective.routines_reset_on == clock().date()


# =============================================================================
# Objectives
# =============================================================================


@pytest.mark.asyncio
class TestObjectives:
    """Tests for objective intents."""

    async def test_create_objective_activates_it(self, store, gateway):
        objective_id = store.create_objective("Learn Spanish", T0 + timedelta(days=30))
        assert store.active_objective().id == objective_id

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.active_objective_id == objective_id
        assert fresh.objectives[objective_id].objective.name == "Learn Spanish"

    async def test_create_without_activating(self, store):
        objective_id = store.create_objective("Side quest", T0 + timedelta(days=5), activate=False)
        assert store.active_objective().id == OBJECTIVE_ID
        assert store.objective(objective_id) is not None

    async def test_end_before_start_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.create_objective("Backwards", T0 - timedelta(days=1), start_date=T0)

    async def test_update_objective(self, store, gateway):
        store.update_objective(OBJECTIVE_ID, {"name": "Run a full marathon"})
        assert store.objective(OBJECTIVE_ID).objective.name == "Run a full marathon"

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].objective.name == "Run a full marathon"

    async def test_update_objective_rejects_unknown_fields(self, store):
        with pytest.raises(ValueError):
            store.update_objective(OBJECTIVE_ID, {"status": "completed"})

    async def test_completing_active_objective_clears_pointer(self, store, gateway):
        store.set_objective_status(OBJECTIVE_ID, ObjectiveStatus.COMPLETED)
        assert store.active_objective() is None
        assert store.objective(OBJECTIVE_ID).objective.status == ObjectiveStatus.COMPLETED

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.active_objective_id is None

    async def test_cannot_activate_archived_objective(self, store):
        other = store.create_objective("Old goal", T0 + timedelta(days=1), activate=False)
        store.set_objective_status(other, "archived")
        store.set_active_objective(other)
        assert store.active_objective().id == OBJECTIVE_ID

    async def test_switch_active_objective(self, store, gateway):
        other = store.create_objective("Read 12 books", T0 + timedelta(days=365), activate=False)
        store.set_active_objective(other)
        assert store.active_objective().id == other

        await store.settle()
        assert (await gateway.fetch_snapshot(USER_ID)).active_objective_id == other


# =============================================================================
# Items
# =============================================================================


@pytest.mark.asyncio
class TestItems:
    """Tests for add/update/remove on id-addressed collections."""

    async def test_add_task_appends_to_end(self, store, gateway):
        task_id = store.add_item(OBJECTIVE_ID, Collection.TASKS, {"text": "Buy shoes"})
        tree = store.objective(OBJECTIVE_ID)
        assert tree.tasks[-1].id == task_id
        assert tree.tasks[-1].order == 3

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].find(Collection.TASKS, task_id).text == "Buy shoes"

    async def test_add_note(self, store):
        note_id = store.add_item(OBJECTIVE_ID, "notes", {"title": "Pace", "content": "5:30/km", "color": "blue"})
        assert store.objective(OBJECTIVE_ID).find(Collection.NOTES, note_id).color.value == "blue"

    async def test_add_to_missing_objective_is_noop(self, store, gateway):
        assert store.add_item("nope", Collection.TASKS, {"text": "Lost"}) is None
        await store.settle()
        assert gateway.calls_to("create") == []

    async def test_keyed_collections_are_rejected(self, store):
        with pytest.raises(ValueError):
            store.add_item(OBJECTIVE_ID, Collection.ROUTINES, {})

    async def test_invalid_payload_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.add_item(OBJECTIVE_ID, Collection.TASKS, {"text": ""})

    async def test_completing_task_stamps_completion_and_keeps_deadline(self, store, clock):
        deadline = T0 + timedelta(days=3)
        store.update_item(OBJECTIVE_ID, Collection.TASKS, "a", {"deadline": deadline})
        clock.advance(hours=1)
        store.update_item(OBJECTIVE_ID, Collection.TASKS, "a", {"completed": True})

        task = store.objective(OBJECTIVE_ID).find(Collection.TASKS, "a")
        assert task.completed
        assert task.completed_at == clock()
        assert task.deadline == deadline

        store.update_item(OBJECTIVE_ID, Collection.TASKS, "a", {"completed": False})
        assert store.objective(OBJECTIVE_ID).find(Collection.TASKS, "a").completed_at is None

    async def test_completing_task_can_clear_deadline(self, gateway, make_store):
        await seed(gateway, tasks=(make_task("a", 0, deadline=(T0 + timedelta(days=1)).isoformat()),))
        store = make_store(clear_deadline_on_complete=True)
        await store.load()

        store.update_item(OBJECTIVE_ID, Collection.TASKS, "a", {"completed": True})
        assert store.objective(OBJECTIVE_ID).find(Collection.TASKS, "a").deadline is None

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].find(Collection.TASKS, "a").deadline is None

    async def test_update_cannot_change_order(self, store, gateway):
        store.update_item(OBJECTIVE_ID, Collection.TASKS, "a", {"order": 9, "text": "Warm up"})
        task = store.objective(OBJECTIVE_ID).find(Collection.TASKS, "a")
        assert task.order == 0
        assert task.text == "Warm up"

        await store.settle()
        (_, _, _, fields), = gateway.calls_to("update")
        assert "order" not in fields
        assert fields["text"] == "Warm up"

    async def test_update_without_changes_sends_nothing(self, store, gateway):
        store.update_item(OBJECTIVE_ID, Collection.TASKS, "a", {"text": "Task a"})
        await store.settle()
        assert gateway.calls_to("update") == []

    async def test_update_missing_item_is_noop(self, store, gateway):
        store.update_item(OBJECTIVE_ID, Collection.TASKS, "ghost", {"text": "Boo"})
        await store.settle()
        assert gateway.calls_to("update") == []

    async def test_remove_is_idempotent(self, store, gateway):
        store.remove_item(OBJECTIVE_ID, Collection.TASKS, "b")
        store.remove_item(OBJECTIVE_ID, Collection.TASKS, "b")
        assert task_ids(store) == ["a", "c"]

        await store.settle()
        assert len(gateway.calls_to("remove")) == 1
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert [t.id for t in fresh.objectives[OBJECTIVE_ID].tasks] == ["a", "c"]

    async def test_remove_discards_pending_counter_write(self, store, gateway):
        store.adjust_counter(OBJECTIVE_ID, "snack", 1)
        store.remove_item(OBJECTIVE_ID, Collection.AVOID, "snack")
        assert not store.writer.has_pending()

        await store.settle()
        assert gateway.calls_to("update") == []

    async def test_count_update_is_coerced_and_clamped(self, store):
        store.update_item(OBJECTIVE_ID, Collection.AVOID, "snack", {"count": "5"})
        assert store.objective(OBJECTIVE_ID).find(Collection.AVOID, "snack").count == 5
        store.update_item(OBJECTIVE_ID, Collection.AVOID, "snack", {"count": -2})
        assert store.objective(OBJECTIVE_ID).find(Collection.AVOID, "snack").count == 0

    async def test_count_update_must_be_a_number(self, store):
        with pytest.raises(ValueError):
            store.update_item(OBJECTIVE_ID, Collection.AVOID, "snack", {"count": "lots"})
        assert store.objective(OBJECTIVE_ID).find(Collection.AVOID, "snack").count == 0


@pytest.mark.asyncio
class TestTimeBlocks:
    """Tests for the time-block collection."""

    async def test_blocks_sort_by_start_time(self, store, gateway):
        late = store.add_item(
            OBJECTIVE_ID, Collection.TIME_BLOCKS, {"label": "Emails", "start_time": "14:00", "end_time": "14:30"}
        )
        early = store.add_item(
            OBJECTIVE_ID, "time_blocks", {"label": "Deep work", "start_time": "09:00", "end_time": "10:30", "color": "#4f46e5"}
        )
        assert [block.id for block in store.objective(OBJECTIVE_ID).time_blocks] == [early, late]

        await store.settle()
        fresh = (await gateway.fetch_snapshot(USER_ID)).objectives[OBJECTIVE_ID]
        assert fresh.find(Collection.TIME_BLOCKS, early).color == "#4f46e5"

    async def test_completing_block_stamps_completion(self, store, gateway, clock):
        block_id = store.add_item(
            OBJECTIVE_ID, Collection.TIME_BLOCKS, {"label": "Stretch", "start_time": "07:00", "end_time": "07:15"}
        )
        clock.advance(minutes=20)
        store.update_item(OBJECTIVE_ID, Collection.TIME_BLOCKS, block_id, {"completed": True})

        block = store.objective(OBJECTIVE_ID).find(Collection.TIME_BLOCKS, block_id)
        assert block.completed_at == clock()

        store.remove_item(OBJECTIVE_ID, Collection.TIME_BLOCKS, block_id)
        await store.settle()
        fresh = (await gateway.fetch_snapshot(USER_ID)).objectives[OBJECTIVE_ID]
        assert fresh.time_blocks == ()

    async def test_invalid_time_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.add_item(
                OBJECTIVE_ID, Collection.TIME_BLOCKS, {"label": "Nap", "start_time": "2pm", "end_time": "15:00"}
            )

    async def test_failed_block_update_is_reconciled(self, store, gateway):
        block_id = store.add_item(
            OBJECTIVE_ID, Collection.TIME_BLOCKS, {"label": "Run", "start_time": "06:00", "end_time": "07:00"}
        )
        await store.settle()
        gateway.fail("update", TransportError())

        store.update_item(OBJECTIVE_ID, Collection.TIME_BLOCKS, block_id, {"label": "Long run"})
        await store.settle()
        assert store.objective(OBJECTIVE_ID).find(Collection.TIME_BLOCKS, block_id).label == "Run"


# =============================================================================
# Ordering
# =============================================================================


@pytest.mark.asyncio
class TestReordering:
    """Tests for reorder_items and move_item."""

    async def test_move_to_front_writes_three_updates(self, store, gateway):
        store.move_item(OBJECTIVE_ID, "c", 0)
        assert task_ids(store) == ["c", "a", "b"]

        await store.settle()
        (call,) = gateway.calls_to("batch_update_order")
        assert call[2] == [OrderUpdate("c", 0), OrderUpdate("a", 1), OrderUpdate("b", 2)]

    async def test_reorder_to_current_order_sends_nothing(self, store, gateway):
        store.reorder_items(OBJECTIVE_ID, Collection.TASKS, ["a", "b", "c"])
        await store.settle()
        assert gateway.calls_to("batch_update_order") == []

    async def test_reorder_empty_list_is_noop(self, gateway, make_store):
        await seed(gateway)
        store = make_store()
        await store.load()

        store.reorder_items(OBJECTIVE_ID, Collection.TASKS, [])
        await store.settle()
        assert gateway.calls_to("batch_update_order") == []

    async def test_reorder_persists(self, store, gateway):
        store.reorder_items(OBJECTIVE_ID, Collection.TASKS, ["b", "c", "a"])
        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert [t.id for t in fresh.objectives[OBJECTIVE_ID].tasks] == ["b", "c", "a"]

    async def test_only_tasks_are_ordered(self, store, gateway):
        store.reorder_items(OBJECTIVE_ID, Collection.NOTES, [])
        await store.settle()
        assert gateway.calls_to("batch_update_order") == []


# =============================================================================
# Debounced writes
# =============================================================================


@pytest.mark.asyncio
class TestCounters:
    """Tests for avoid-list counters."""

    async def test_burst_of_increments_is_one_write(self, store, gateway):
        for _ in range(3):
            store.adjust_counter(OBJECTIVE_ID, "snack", 1)
        assert store.objective(OBJECTIVE_ID).find(Collection.AVOID, "snack").count == 3

        await store.settle()
        (call,) = gateway.calls_to("update")
        assert call[3]["count"] == 3

    async def test_decrement_at_zero_sends_nothing(self, store, gateway):
        store.adjust_counter(OBJECTIVE_ID, "snack", -1)
        assert store.counter_status(OBJECTIVE_ID, "snack") == CounterStatus.EXCELLENT
        await store.settle()
        assert gateway.calls_to("update") == []

    async def test_switching_objective_flushes_pending_counter(self, gateway, make_store):
        await seed(gateway, avoid=(make_avoid("snack"),))
        store = make_store(quiet_period=10)
        await store.load()

        other = store.create_objective("Sleep better", T0 + timedelta(days=20), activate=False)
        store.adjust_counter(OBJECTIVE_ID, "snack", 1)
        store.set_active_objective(other)

        await store.settle(flush=False)
        assert not store.writer.has_pending()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].find(Collection.AVOID, "snack").count == 1

    async def test_status_band(self, gateway, make_store):
        await seed(gateway, avoid=(make_avoid("doom-scroll", count=10),))
        store = make_store()
        await store.load()
        assert store.counter_status(OBJECTIVE_ID, "doom-scroll") == CounterStatus.GOOD
        store.adjust_counter(OBJECTIVE_ID, "doom-scroll", 1)
        assert store.counter_status(OBJECTIVE_ID, "doom-scroll") == CounterStatus.MODERATE
        assert store.counter_status(OBJECTIVE_ID, "missing") is None


@pytest.mark.asyncio
class TestRoutines:
    """Tests for routine settings."""

    async def test_update_routine_settings(self, store, gateway):
        store.update_routine_settings(
            OBJECTIVE_ID, RoutineKind.SLEEP, {"variant": "sleep", "sleep_time": "22:30", "wake_time": "06:30"}
        )
        store.update_routine_settings(
            OBJECTIVE_ID, RoutineKind.SLEEP, {"variant": "sleep", "sleep_time": "23:00", "wake_time": "07:00"}
        )
        assert store.objective(OBJECTIVE_ID).routines[RoutineKind.SLEEP].sleep_time == "23:00"

        await store.settle()
        assert len(gateway.calls_to("update")) == 1
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].routines[RoutineKind.SLEEP].wake_time == "07:00"

    async def test_variant_must_match_kind(self, store):
        with pytest.raises(ValueError):
            store.update_routine_settings(OBJECTIVE_ID, "water", {"variant": "schedule"})

    async def test_adjust_intake_clamps(self, store):
        store.update_routine_settings(OBJECTIVE_ID, "water", {"variant": "intake", "daily_goal": 8, "current": 1})
        store.adjust_intake(OBJECTIVE_ID, "water", -3)
        assert store.objective(OBJECTIVE_ID).routines[RoutineKind.WATER].current == 0
        store.adjust_intake(OBJECTIVE_ID, "water", 2)
        assert store.objective(OBJECTIVE_ID).routines[RoutineKind.WATER].current == 2


# =============================================================================
# Progress and sessions
# =============================================================================


@pytest.mark.asyncio
class TestProgress:
    """Tests for daily progress entries."""

    async def test_entries_for_one_day_merge(self, store, gateway):
        store.append_progress_entry(OBJECTIVE_ID, {"day": "2026-03-02", "weight": 72.5})
        store.append_progress_entry(OBJECTIVE_ID, {"day": date(2026, 3, 2), "satisfaction": 4})

        entry = store.objective(OBJECTIVE_ID).progress[date(2026, 3, 2)]
        assert entry.weight == 72.5
        assert entry.satisfaction == 4

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        saved = fresh.objectives[OBJECTIVE_ID].progress[date(2026, 3, 2)]
        assert (saved.weight, saved.satisfaction) == (72.5, 4)

    async def test_entry_needs_a_day(self, store):
        with pytest.raises(ValueError):
            store.append_progress_entry(OBJECTIVE_ID, {"weight": 70})

    async def test_satisfaction_out_of_range(self, store):
        with pytest.raises(ValueError):
            store.append_progress_entry(OBJECTIVE_ID, {"day": "2026-03-02", "satisfaction": 9})


class FixedTimer(TimerEngine):
    def __init__(self, wall_clock):
        self.now = 0
        super().__init__(clock=lambda: self.now, wall_clock=wall_clock)


@pytest.mark.asyncio
class TestSessions:
    """Tests for timer sessions."""

    async def test_save_timer_session_on_active_objective(self, gateway, make_store, clock):
        await seed(gateway)
        timer = FixedTimer(clock)
        store = make_store(timer=timer)
        await store.load()

        timer.start()
        timer.now = 30 * 60 * 1000
        session_id = store.save_timer_session("Long run")

        session = store.objective(OBJECTIVE_ID).find(Collection.SESSIONS, session_id)
        assert session.duration_ms == 30 * 60 * 1000
        assert store.objective(OBJECTIVE_ID).sessions_by_day() == {T0.date(): [session]}
        assert timer.elapsed() == 0

        await store.settle()
        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].find(Collection.SESSIONS, session_id) is not None

    async def test_save_without_active_objective(self, store):
        store.set_active_objective(None)
        store.timer.start()
        assert store.save_timer_session("Nowhere") is None

    async def test_remove_session(self, store):
        session_id = store.add_session(
            OBJECTIVE_ID, {"label": "Tempo", "start_time": T0, "duration_ms": 1000}
        )
        store.remove_session(OBJECTIVE_ID, session_id)
        assert store.objective(OBJECTIVE_ID).sessions == ()


# =============================================================================
# Closing
# =============================================================================


@pytest.mark.asyncio
class TestClose:
    """Tests for sign-out behaviour of the store."""

    async def test_close_flushes_pending_writes(self, store, gateway):
        store.adjust_counter(OBJECTIVE_ID, "snack", 2)
        await store.close()
        assert store.closed

        fresh = await gateway.fetch_snapshot(USER_ID)
        assert fresh.objectives[OBJECTIVE_ID].find(Collection.AVOID, "snack").count == 2

    async def test_intents_after_close_are_ignored(self, store, gateway):
        await store.close()
        gateway.calls.clear()
        assert store.add_item(OBJECTIVE_ID, Collection.TASKS, {"text": "Late"}) is None
        assert gateway.calls == []
