"""In-memory state for one signed-in user's objectives."""

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Callable, Iterable, Optional, Union

from pydantic import TypeAdapter

from ..domain.models import (
    ITEM_MODELS,
    Collection,
    DailyProgress,
    IntakeRoutine,
    Objective,
    ObjectiveStatus,
    ObjectiveTree,
    RoutineKind,
    RoutineSettings,
    Session,
    UserSnapshot,
    utcnow,
)
from ..engine import counter, ordering
from ..engine.counter import CounterStatus
from ..engine.routines import needs_daily_reset, reset_for_day
from ..engine.timer import TimerEngine
from ..errors import RemoteCommandError
from ..remote.gateway import PersistenceGateway

from .debounce import DebouncedWriter
from .events import Listeners, Notice, SignedOut
from .reconcile import Failure, ReconciliationPolicy

logger = logging.getLogger(__name__)

RENUMBER_ACTION = "renumber tasks"

NOUNS = {
    Collection.TASKS: "task",
    Collection.AVOID: "avoid-list item",
    Collection.NOTES: "note",
    Collection.SESSIONS: "session",
    Collection.TIME_BLOCKS: "time block",
}

# Collections whose items stamp completed_at when their completed flag flips
COMPLETABLE = {Collection.TASKS, Collection.TIME_BLOCKS}

OBJECTIVE_FIELDS = {"name", "description", "start_date", "end_date"}
PROTECTED_FIELDS = {"id", "created_at", "order"}

_routine_adapter = TypeAdapter(RoutineSettings)
_count_adapter = TypeAdapter(int)


class GoalStateStore:
    """
    What the interface currently believes is true for one user.

    Mutation intents change memory synchronously and then hand the remote
    write to the reconciliation policy, directly or through the debounced
    writer. Intents never raise for remote failures; those arrive later as
    Notice events. Intents aimed at a missing objective or item are logged
    no-ops.

    One instance lives from sign-in to sign-out. Intents must be called
    from inside a running event loop.
    """

    def __init__(
        self,
        user_id: str,
        gateway: PersistenceGateway,
        quiet_period: float = 1.0,
        clear_deadline_on_complete: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
        timer: Optional[TimerEngine] = None,
    ):
        """
        Initialize store.

        Args:
            user_id: Stable id of the signed-in user
            gateway: Remote store
            quiet_period: Seconds a debounced write waits for its burst to end
            clear_deadline_on_complete: Null a task's deadline when it is completed
            clock: Source of timestamps (aware datetimes)
            timer: Stopwatch used by save_timer_session
        """
        self.user_id = user_id
        self.gateway = gateway
        self.clear_deadline_on_complete = clear_deadline_on_complete
        self._clock = clock or utcnow
        self._state = UserSnapshot(user_id=user_id)
        self.loaded = False
        self.closed = False

        self.notices: Listeners[Notice] = Listeners()
        self.signed_out: Listeners[SignedOut] = Listeners()

        self.writer = DebouncedWriter(self._write_debounced, quiet_period)
        self.policy = ReconciliationPolicy(
            gateway,
            user_id,
            on_refresh=self._adopt_refresh,
            on_notice=self.notices.emit,
            on_auth_lost=self.abort,
            writer=self.writer,
        )
        self.timer = timer or TimerEngine(wall_clock=self._clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> UserSnapshot:
        """Fetch the user's snapshot and make it the local state."""
        snapshot = await self.gateway.fetch_snapshot(self.user_id)
        self._state = snapshot
        self.loaded = True
        logger.info(f"Loaded {len(snapshot.objectives)} objectives for user {self.user_id}")

        for objective_id in snapshot.objectives:
            self._heal_order(objective_id)
        self._reset_routines()
        return self._state

    async def reload(self) -> UserSnapshot:
        """Replace all local state with a fresh snapshot once writes have settled."""
        await self.settle()
        snapshot = await self.gateway.fetch_snapshot(self.user_id)
        self._state = snapshot
        self.policy.stale.clear()
        for objective_id in snapshot.objectives:
            self._heal_order(objective_id)
        logger.info(f"Reloaded objectives for user {self.user_id}")
        return self._state

    async def settle(self, flush: bool = True):
        """
        Wait until no write is pending or in flight.

        Args:
            flush: Send debounced writes now instead of waiting out their quiet period
        """
        current = asyncio.current_task()
        while True:
            if flush:
                await self.writer.flush_all()
            tasks = [
                task
                for task in self.policy.tasks() + self.writer.tasks()
                if task is not current and not task.done()
            ]
            if not tasks:
                if flush and self.writer.has_pending():
                    continue
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self):
        """Flush pending writes, wait for them, then stop accepting intents."""
        await self.settle()
        self.closed = True
        logger.info(f"Closed store for user {self.user_id}")

    def abort(self, reason: str = "signed out"):
        """
        Drop everything after losing the session.

        Pending writes are abandoned, local state is cleared and a SignedOut
        event hands control back to the authentication layer.
        """
        if self.closed and not self._state.objectives:
            return
        self.writer.abort()
        self.policy.cancel_all()
        self._state = UserSnapshot(user_id=self.user_id)
        self.closed = True
        logger.warning(f"Store for user {self.user_id} reset: {reason}")
        self.signed_out.emit(SignedOut(user_id=self.user_id, reason=reason))

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def snapshot(self) -> UserSnapshot:
        return self._state

    def objectives(self) -> list[Objective]:
        return [tree.objective for tree in self._state.objectives.values()]

    def objective(self, objective_id: str) -> Optional[ObjectiveTree]:
        return self._state.objectives.get(objective_id)

    def active_objective(self) -> Optional[ObjectiveTree]:
        return self._state.active

    def counter_status(self, objective_id: str, item_id: str) -> Optional[CounterStatus]:
        tree = self.objective(objective_id)
        item = tree.find(Collection.AVOID, item_id) if tree else None
        return counter.status_band(item.count) if item else None

    # ------------------------------------------------------------------
    # Objective intents
    # ------------------------------------------------------------------

    def create_objective(
        self,
        name: str,
        end_date: datetime,
        description: Optional[str] = None,
        start_date: Optional[datetime] = None,
        activate: bool = True,
    ) -> Optional[str]:
        """
        Create an objective and, by default, make it the active one.

        Returns:
            The new objective's id
        """
        if self.closed:
            logger.warning(f"Store for user {self.user_id} is closed, ignoring create objective")
            return None

        now = self._clock()
        objective = Objective(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            start_date=start_date or now,
            end_date=end_date,
            created_at=now,
            updated_at=now,
        )
        self._put(ObjectiveTree(objective=objective))
        if activate:
            self._point_at(objective.id)

        payload = objective.model_dump(mode="json")

        async def create():
            remote_id = await self.gateway.create_objective(self.user_id, payload)
            if remote_id != objective.id:
                raise RemoteCommandError(
                    "objective/create",
                    {"message": f"store assigned id {remote_id}, expected {objective.id}"},
                )
            if activate:
                await self.gateway.set_active_objective(self.user_id, objective.id)

        self._write(f"create objective '{name}'", objective.id, create)
        return objective.id

    def update_objective(self, objective_id: str, fields: dict):
        """Edit an objective's name, description or dates."""
        unknown = set(fields) - OBJECTIVE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update objective fields: {', '.join(sorted(unknown))}")
        self._change_objective(objective_id, dict(fields), "update objective")

    def set_objective_status(self, objective_id: str, status: Union[ObjectiveStatus, str]):
        """
        Move an objective through its lifecycle.

        Completing or archiving the active objective clears the active pointer.
        """
        status = ObjectiveStatus(status)
        tree = self._tree(objective_id, "set objective status")
        if not tree or tree.objective.status == status:
            return

        clears_pointer = (
            status != ObjectiveStatus.ACTIVE and self._state.active_objective_id == objective_id
        )
        self._change_objective(
            objective_id,
            {"status": status},
            f"mark objective {status.value}",
            clear_pointer=clears_pointer,
        )

    def set_active_objective(self, objective_id: Optional[str]):
        """Point the user's focus at another objective (or none)."""
        if self.closed:
            logger.warning(f"Store for user {self.user_id} is closed, ignoring set active objective")
            return
        if objective_id is not None:
            tree = self._tree(objective_id, "set active objective")
            if not tree:
                return
            if tree.objective.status != ObjectiveStatus.ACTIVE:
                logger.warning(
                    f"Objective {objective_id} is {tree.objective.status.value}, not activating"
                )
                return

        previous = self._state.active_objective_id
        if previous == objective_id:
            return
        self._point_at(objective_id)

        async def activate():
            await self.gateway.set_active_objective(self.user_id, objective_id)

        self._write("switch active objective", objective_id or previous, activate)

    # ------------------------------------------------------------------
    # Collection intents
    # ------------------------------------------------------------------

    def add_item(self, objective_id: str, collection: Union[Collection, str], payload: dict) -> Optional[str]:
        """
        Add an item to one of an objective's collections.

        New tasks go to the end of the list. Ids and timestamps are filled in
        when the payload does not carry them.

        Returns:
            The new item's id, or None if the objective does not exist
        """
        collection = self._item_collection(collection)
        tree = self._tree(objective_id, f"add {NOUNS[collection]}")
        if not tree:
            return None

        now = self._clock()
        data = {**payload}
        data.setdefault("id", str(uuid.uuid4()))
        data.setdefault("created_at", now)
        data.setdefault("updated_at", now)
        if collection is Collection.TASKS:
            data["order"] = ordering.next_order(tree.tasks)
        item = ITEM_MODELS[collection].model_validate(data)
        if collection in COMPLETABLE and item.completed and item.completed_at is None:
            item = item.model_copy(update={"completed_at": now})

        if tree.find(collection, item.id):
            logger.warning(f"{NOUNS[collection]} {item.id} already exists in {objective_id}")
            return None

        self._put(tree.replace(**{collection.value: tree.items(collection) + (item,)}))
        body = item.model_dump(mode="json")

        async def create():
            remote_id = await self.gateway.create(objective_id, collection, body)
            if remote_id != item.id:
                raise RemoteCommandError(
                    "item/create", {"message": f"store assigned id {remote_id}, expected {item.id}"}
                )

        self._write(f"add {NOUNS[collection]}", objective_id, create)
        return item.id

    def update_item(
        self, objective_id: str, collection: Union[Collection, str], item_id: str, fields: dict
    ):
        """
        Apply a partial update to an item.

        ``id``, ``created_at`` and ``order`` cannot be changed here; order
        changes go through reorder_items. Completing a task or time block stamps
        ``completed_at``.
        """
        collection = self._item_collection(collection)
        noun = NOUNS[collection]
        tree = self._tree(objective_id, f"update {noun}")
        if not tree:
            return
        item = tree.find(collection, item_id)
        if not item:
            logger.warning(f"Update {noun}: {item_id} not found in {objective_id}, ignoring")
            return

        changes = dict(fields)
        for name in PROTECTED_FIELDS & set(changes):
            logger.warning(f"Ignoring change to '{name}' on {noun} {item_id}")
            del changes[name]
        if collection is Collection.AVOID and "count" in changes:
            changes["count"] = counter.adjust(_count_adapter.validate_python(changes["count"]), 0)

        now = self._clock()
        updated = type(item).model_validate({**dict(item), **changes})
        if collection in COMPLETABLE and updated.completed != item.completed:
            stamps = {"completed_at": now if updated.completed else None}
            if updated.completed and collection is Collection.TASKS and self.clear_deadline_on_complete:
                stamps["deadline"] = None
            changes.update(stamps)
            updated = updated.model_copy(update=stamps)

        if updated == item:
            logger.debug(f"Update {noun} {item_id}: nothing changed")
            return
        updated = updated.model_copy(update={"updated_at": now})

        self._put(
            tree.replace(
                **{
                    collection.value: tuple(
                        updated if existing.id == item_id else existing
                        for existing in tree.items(collection)
                    )
                }
            )
        )

        dumped = updated.model_dump(mode="json")
        diff = {name: dumped[name] for name in [*changes, "updated_at"] if name in dumped}

        async def update():
            await self.gateway.update(objective_id, collection, item_id, diff)

        self._write(f"update {noun}", objective_id, update)

    def remove_item(self, objective_id: str, collection: Union[Collection, str], item_id: str):
        """Remove an item. Removing an item that is already gone does nothing."""
        collection = self._item_collection(collection)
        noun = NOUNS[collection]
        tree = self._tree(objective_id, f"remove {noun}")
        if not tree:
            return
        if not tree.find(collection, item_id):
            logger.debug(f"Remove {noun}: {item_id} already gone from {objective_id}")
            return

        self.writer.discard((objective_id, collection.value, item_id))
        self._put(
            tree.replace(
                **{
                    collection.value: tuple(
                        existing for existing in tree.items(collection) if existing.id != item_id
                    )
                }
            )
        )

        async def remove():
            await self.gateway.remove(objective_id, collection, item_id)

        self._write(f"remove {noun}", objective_id, remove)

    def reorder_items(
        self, objective_id: str, collection: Union[Collection, str], ordered_ids: Iterable[str]
    ):
        """Put a list into the given display order, writing only changed positions."""
        collection = self._item_collection(collection)
        if collection is not Collection.TASKS:
            logger.warning(f"{collection.value} is not an ordered collection, ignoring reorder")
            return
        tree = self._tree(objective_id, "reorder tasks")
        if not tree:
            return
        if not tree.tasks:
            logger.info(f"Nothing to reorder in {objective_id}")
            return

        items, updates = ordering.reorder(tree.tasks, list(ordered_ids))
        self._apply_order(tree, items, updates)

    def move_item(self, objective_id: str, item_id: str, position: int):
        """Move one task to a display position."""
        tree = self._tree(objective_id, "move task")
        if not tree:
            return
        if not tree.find(Collection.TASKS, item_id):
            logger.warning(f"Move task: {item_id} not found in {objective_id}, ignoring")
            return

        items, updates = ordering.move(tree.tasks, item_id, position)
        self._apply_order(tree, items, updates)

    def adjust_counter(self, objective_id: str, item_id: str, delta: int):
        """Increment or decrement an avoid-list count. Writes are debounced."""
        tree = self._tree(objective_id, "adjust counter")
        if not tree:
            return
        item = tree.find(Collection.AVOID, item_id)
        if not item:
            logger.warning(f"Adjust counter: {item_id} not found in {objective_id}, ignoring")
            return

        count = counter.adjust(item.count, delta)
        if count == item.count:
            return

        now = self._clock()
        updated = item.model_copy(update={"count": count, "updated_at": now})
        self._put(
            tree.replace(
                avoid=tuple(updated if existing.id == item_id else existing for existing in tree.avoid)
            )
        )
        self.writer.schedule(
            (objective_id, Collection.AVOID.value, item_id),
            {"count": count, "updated_at": updated.model_dump(mode="json")["updated_at"]},
        )

    def update_routine_settings(
        self, objective_id: str, kind: Union[RoutineKind, str], settings: Union[RoutineSettings, dict]
    ):
        """Replace the settings for one routine kind. Writes are debounced."""
        kind = RoutineKind(kind)
        settings = _routine_adapter.validate_python(settings)
        if settings.variant != kind.variant:
            raise ValueError(
                f"Routine '{kind.value}' takes '{kind.variant}' settings, not '{settings.variant}'"
            )

        tree = self._tree(objective_id, f"update {kind.value} routine")
        if not tree:
            return
        if tree.routines.get(kind) == settings:
            return

        self._put(tree.replace(routines={**tree.routines, kind: settings}))
        self.writer.schedule(
            (objective_id, Collection.ROUTINES.value, kind.value),
            settings.model_dump(mode="json"),
        )

    def adjust_intake(self, objective_id: str, kind: Union[RoutineKind, str], delta: float):
        """Change an intake routine's current value, clamped at zero."""
        kind = RoutineKind(kind)
        tree = self._tree(objective_id, f"adjust {kind.value} intake")
        if not tree:
            return
        routine = tree.routines.get(kind)
        if not isinstance(routine, IntakeRoutine):
            logger.warning(f"Objective {objective_id} has no {kind.value} intake routine")
            return

        current = counter.adjust(routine.current, delta)
        self.update_routine_settings(objective_id, kind, routine.model_copy(update={"current": current}))

    def append_progress_entry(self, objective_id: str, entry: dict):
        """
        Record metrics for a day.

        Fields are merged into that day's existing entry, if there is one.
        The entry must carry a ``day`` (date or ISO string).
        """
        if "day" not in entry:
            raise ValueError("Progress entry needs a day")
        day = entry["day"]
        if not isinstance(day, date):
            day = date.fromisoformat(str(day))

        tree = self._tree(objective_id, "save daily progress")
        if not tree:
            return

        existing = tree.progress.get(day)
        base = dict(existing) if existing else {}
        merged = DailyProgress.model_validate(
            {**base, **entry, "day": day, "updated_at": self._clock()}
        )
        self._put(tree.replace(progress={**tree.progress, day: merged}))

        body = merged.model_dump(mode="json")

        async def save():
            await self.gateway.update(objective_id, Collection.PROGRESS, day.isoformat(), body)

        self._write(f"save progress for {day.isoformat()}", objective_id, save)

    def add_session(self, objective_id: str, session: Union[Session, dict]) -> Optional[str]:
        payload = dict(session) if isinstance(session, Session) else session
        return self.add_item(objective_id, Collection.SESSIONS, payload)

    def remove_session(self, objective_id: str, session_id: str):
        self.remove_item(objective_id, Collection.SESSIONS, session_id)

    def save_timer_session(self, label: str) -> Optional[str]:
        """Save the stopwatch's elapsed time as a session on the active objective."""
        tree = self.active_objective()
        if not tree:
            logger.warning("No active objective, not saving timer session")
            return None
        session = self.timer.save(label)
        if session is None:
            logger.debug("Timer has no elapsed time, nothing to save")
            return None
        return self.add_session(tree.id, session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _item_collection(self, collection: Union[Collection, str]) -> Collection:
        collection = Collection(collection)
        if collection.keyed:
            raise ValueError(f"{collection.value} is keyed; use its dedicated intent")
        return collection

    def _tree(self, objective_id: str, intent: str) -> Optional[ObjectiveTree]:
        if self.closed:
            logger.warning(f"Store for user {self.user_id} is closed, ignoring {intent}")
            return None
        tree = self._state.objectives.get(objective_id)
        if tree is None:
            logger.warning(f"{intent.capitalize()}: objective {objective_id} not found, ignoring")
        return tree

    def _put(self, tree: ObjectiveTree):
        objectives = {**self._state.objectives, tree.id: tree}
        self._state = self._state.model_copy(update={"objectives": objectives})

    def _point_at(self, objective_id: Optional[str]):
        previous = self._state.active_objective_id
        self._state = self._state.model_copy(update={"active_objective_id": objective_id})
        if previous and previous != objective_id:
            for key in self.writer.pending_keys(lambda key: key[0] == previous):
                self.writer.cancel(key)

    def _write(self, action: str, objective_id: str, operation, silent: bool = False):
        if self.closed:
            logger.warning(f"Store for user {self.user_id} is closed, not sending: {action}")
            return
        self.policy.submit(action, objective_id, operation, silent=silent)

    async def _write_debounced(self, key: tuple, payload: dict):
        objective_id, collection, item_id = key
        collection = Collection(collection)
        if collection is Collection.ROUTINES:
            action = f"save {item_id} routine"
        else:
            action = f"update {NOUNS[collection]} count"

        async def update():
            await self.gateway.update(objective_id, collection, item_id, payload)

        await self.policy.run(action, objective_id, update)

    def _change_objective(
        self, objective_id: str, changes: dict, action: str, clear_pointer: bool = False
    ):
        tree = self._tree(objective_id, action)
        if not tree:
            return

        updated = Objective.model_validate(
            {**dict(tree.objective), **changes, "updated_at": self._clock()}
        )
        self._put(tree.replace(objective=updated))
        if clear_pointer:
            self._point_at(None)

        dumped = updated.model_dump(mode="json")
        fields = {name: dumped[name] for name in [*changes, "updated_at"] if name in dumped}

        async def update():
            await self.gateway.update_objective(self.user_id, objective_id, fields)
            if clear_pointer:
                await self.gateway.set_active_objective(self.user_id, None)

        self._write(action, objective_id, update)

    def _apply_order(self, tree: ObjectiveTree, items: list, updates: list, silent: bool = False):
        if not updates:
            logger.debug(f"Order of {tree.id} tasks unchanged")
            return
        self._put(tree.replace(tasks=tuple(items)))

        async def reorder():
            await self.gateway.batch_update_order(tree.id, Collection.TASKS, updates)

        self._write(RENUMBER_ACTION if silent else "reorder tasks", tree.id, reorder, silent=silent)

    def _heal_order(self, objective_id: str):
        tree = self._state.objectives.get(objective_id)
        if not tree or not ordering.has_order_conflicts(tree.tasks):
            return
        items, updates = ordering.renumber(tree.tasks)
        logger.warning(f"Tasks in {objective_id} share order values, renumbering {len(updates)}")
        self._apply_order(tree, items, updates, silent=True)

    def _reset_routines(self):
        today = self._clock().date()
        for tree in list(self._state.objectives.values()):
            if not needs_daily_reset(tree.objective, today):
                continue
            changed = reset_for_day(tree.routines)
            if not changed:
                continue
            logger.info(f"Resetting {len(changed)} routines of {tree.id} for {today}")
            for kind, settings in changed.items():
                self.update_routine_settings(tree.id, kind, settings)
            self._change_objective(tree.id, {"routines_reset_on": today}, "reset daily routines")

    def _adopt_refresh(self, objective_id: str, snapshot: UserSnapshot, failures: list[Failure]):
        objectives = dict(self._state.objectives)
        fresh = snapshot.objectives.get(objective_id)
        if fresh is None:
            objectives.pop(objective_id, None)
        else:
            objectives[objective_id] = fresh

        active_id = self._state.active_objective_id
        if objective_id in (active_id, snapshot.active_objective_id):
            active_id = snapshot.active_objective_id
        if active_id not in objectives:
            active_id = None

        self._state = self._state.model_copy(
            update={"objectives": objectives, "active_objective_id": active_id}
        )
        if not any(failure.action == RENUMBER_ACTION for failure in failures):
            self._heal_order(objective_id)
