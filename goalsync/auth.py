"""Sign-in lifecycle of the state store."""

import asyncio
import logging
from typing import Callable, Optional

from .errors import GatewayError
from .remote.gateway import PersistenceGateway
from .sync.events import Listeners, SignedOut
from .sync.store import GoalStateStore

logger = logging.getLogger(__name__)


class AuthSession:
    """
    Owns the state store for whoever is signed in.

    A store is built and loaded on sign-in and torn down on sign-out. If the
    remote store rejects our credentials mid-operation, the store resets
    itself and this session forgets it, so the next request has to sign in
    again.
    """

    def __init__(
        self,
        gateway_factory: Callable[[str], PersistenceGateway],
        quiet_period: float = 1.0,
        clear_deadline_on_complete: bool = False,
    ):
        """
        Initialize session.

        Args:
            gateway_factory: Builds a gateway for a user id
            quiet_period: Debounce quiet period for new stores
            clear_deadline_on_complete: Deadline policy for new stores
        """
        self.gateway_factory = gateway_factory
        self.quiet_period = quiet_period
        self.clear_deadline_on_complete = clear_deadline_on_complete
        self.store: Optional[GoalStateStore] = None
        self.signed_out: Listeners[SignedOut] = Listeners()
        self._closing: set[asyncio.Task] = set()

    @property
    def user_id(self) -> Optional[str]:
        return self.store.user_id if self.store else None

    def store_for(self, user_id: str) -> Optional[GoalStateStore]:
        """The signed-in store, if it belongs to user_id."""
        if self.store and self.store.user_id == user_id and not self.store.closed:
            return self.store
        return None

    async def sign_in(self, user_id: str) -> GoalStateStore:
        """
        Build and load a store for user_id.

        Signing in as a different user signs the current one out first.

        Raises:
            GatewayError: If the initial snapshot cannot be loaded
        """
        existing = self.store_for(user_id)
        if existing:
            return existing
        if self.store:
            await self.sign_out()

        gateway = self.gateway_factory(user_id)
        store = GoalStateStore(
            user_id,
            gateway,
            quiet_period=self.quiet_period,
            clear_deadline_on_complete=self.clear_deadline_on_complete,
        )
        store.signed_out.subscribe(self._on_store_reset)

        try:
            await store.load()
        except GatewayError:
            await gateway.close()
            raise

        self.store = store
        logger.info(f"✓ Signed in user {user_id}")
        return store

    async def sign_out(self):
        """Flush the store's pending writes, then drop it."""
        store = self.store
        if not store:
            return
        self.store = None

        try:
            await store.close()
        finally:
            await store.gateway.close()
        logger.info(f"Signed out user {store.user_id}")
        self.signed_out.emit(SignedOut(user_id=store.user_id, reason="signed out"))

    def _on_store_reset(self, event: SignedOut):
        if self.store is None or self.store.user_id != event.user_id:
            return
        store = self.store
        self.store = None

        task = asyncio.create_task(store.gateway.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

        logger.warning(f"User {event.user_id} signed out: {event.reason}")
        self.signed_out.emit(event)
