"""How local state and the remote store are brought back into agreement.

Every mutation is applied to memory first and then written remotely. A
successful write needs no follow-up. A failed write is never rolled back
field by field: once the objective has no more writes in flight or
waiting, the whole snapshot is fetched again and the objective's subtree is
replaced with what the store actually holds. Writes may complete in any
order, and a full refetch is correct regardless of that order.
"""

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..domain.models import UserSnapshot
from ..errors import AuthenticationError, GatewayError
from ..remote.gateway import PersistenceGateway

from .debounce import DebouncedWriter
from .events import Notice

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class Failure:
    action: str
    silent: bool = False


class ReconciliationPolicy:
    """Optimistic apply with failure-triggered full refetch."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        user_id: str,
        on_refresh: Callable[[str, UserSnapshot, list[Failure]], None],
        on_notice: Callable[[Notice], None],
        on_auth_lost: Callable[[str], None],
        writer: Optional[DebouncedWriter] = None,
    ):
        """
        Initialize policy.

        Args:
            gateway: Remote store
            user_id: Owner of the snapshots being reconciled
            on_refresh: Called with (objective_id, fresh snapshot, failures) to
                replace the objective's local subtree
            on_notice: Called with user-visible failure notices
            on_auth_lost: Called with a reason when the store rejects our credentials
            writer: Debounced writer whose pending writes must land before a refetch
        """
        self.gateway = gateway
        self.user_id = user_id
        self.on_refresh = on_refresh
        self.on_notice = on_notice
        self.on_auth_lost = on_auth_lost
        self.writer = writer
        self.stale: set[str] = set()

        self._inflight: Counter = Counter()
        self._generation: Counter = Counter()
        self._failed: dict[str, list[Failure]] = defaultdict(list)
        self._refreshing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def submit(
        self, action: str, objective_id: str, operation: Operation, silent: bool = False
    ) -> asyncio.Task:
        """
        Start a remote write in the background.

        Args:
            action: Human-readable name of the mutation, used in notices
            objective_id: Objective the write belongs to
            operation: Zero-argument coroutine function performing the write
            silent: Failures are reconciled but not reported to the user

        Returns:
            Task that finishes once the write (and any refetch) settles
        """
        self._begin(objective_id)
        task = asyncio.create_task(self._settle(action, objective_id, operation, silent))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(
        self, action: str, objective_id: str, operation: Operation, silent: bool = False
    ):
        """Perform a remote write in the current task and reconcile it."""
        self._begin(objective_id)
        await self._settle(action, objective_id, operation, silent)

    def busy(self, objective_id: str) -> bool:
        """True while writes for the objective are in flight or waiting to fire."""
        if self._inflight[objective_id] > 0:
            return True
        return bool(self.writer and self.writer.has_pending(_belongs_to(objective_id)))

    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def cancel_all(self):
        """Cancel every background write except the caller's own task."""
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._inflight.clear()
        self._failed.clear()
        self._refreshing.clear()

    def _begin(self, objective_id: str):
        self._inflight[objective_id] += 1
        self._generation[objective_id] += 1

    async def _settle(self, action: str, objective_id: str, operation: Operation, silent: bool):
        try:
            await operation()
            logger.debug(f"✓ {action} ({objective_id})")
        except AuthenticationError as e:
            logger.warning(f"Authentication lost while trying to {action}: {e}")
            self.on_auth_lost(str(e))
            return
        except GatewayError as e:
            logger.error(f"Failed to {action} ({objective_id}): {e}")
            self._failed[objective_id].append(Failure(action, silent))
        except Exception:
            logger.exception(f"Unexpected error while trying to {action} ({objective_id})")
            self._failed[objective_id].append(Failure(action, silent))
        finally:
            if self._inflight[objective_id] > 0:
                self._inflight[objective_id] -= 1

        await self._reconcile(objective_id)

    async def _reconcile(self, objective_id: str):
        if objective_id in self._refreshing:
            return  # the running refresh notices the change and fetches again

        while self._failed.get(objective_id):
            if self._wait_for_writes(objective_id):
                return  # the last write to settle reconciles

            generation = self._generation[objective_id]
            self._refreshing.add(objective_id)
            try:
                snapshot = await self.gateway.fetch_snapshot(self.user_id)
            except AuthenticationError as e:
                logger.warning(f"Authentication lost while refreshing {objective_id}: {e}")
                self.on_auth_lost(str(e))
                return
            except GatewayError as e:
                self._give_up(objective_id, e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error while refreshing {objective_id}")
                self._give_up(objective_id, e)
                return
            finally:
                self._refreshing.discard(objective_id)

            # Debounced writes scheduled during the fetch do not bump the generation
            if self._generation[objective_id] != generation or self.busy(objective_id):
                logger.debug(f"Objective {objective_id} changed during refresh, refetching")
                continue

            failures = self._failed.pop(objective_id, [])
            self.stale.discard(objective_id)
            logger.info(f"Reconciled objective {objective_id} from a fresh snapshot")
            self.on_refresh(objective_id, snapshot, failures)
            for failure in failures:
                if not failure.silent:
                    self.on_notice(
                        Notice(
                            action=failure.action,
                            message=f"Could not {failure.action}. Showing the last saved data.",
                            objective_id=objective_id,
                        )
                    )

    def _wait_for_writes(self, objective_id: str) -> bool:
        """Flush pending debounced writes; True if a refetch has to wait."""
        if self._inflight[objective_id] > 0:
            return True
        if self.writer:
            keys = self.writer.pending_keys(_belongs_to(objective_id))
            for key in keys:
                self.writer.flush(key)
            if keys:
                return True
        return False

    def _give_up(self, objective_id: str, error: Exception):
        failures = self._failed.pop(objective_id, [])
        self.stale.add(objective_id)
        logger.error(f"Could not refresh objective {objective_id}: {error}")
        visible = [failure.action for failure in failures if not failure.silent]
        if visible:
            self.on_notice(
                Notice(
                    action=visible[-1],
                    message=(
                        f"Could not {', '.join(visible)}, and the saved data could not "
                        "be reloaded. Refresh to try again."
                    ),
                    objective_id=objective_id,
                )
            )


def _belongs_to(objective_id: str) -> Callable[[tuple], bool]:
    """Predicate over debounced-write keys, which start with the objective id."""
    return lambda key: key[0] == objective_id
