"""Events the state store reports to the interface layer."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Generic, Optional, TypeVar

from ..domain.models import utcnow

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class Notice:
    """A user-visible, non-fatal failure notice."""

    action: str
    message: str
    objective_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SignedOut:
    """The store lost its session and has cleared its state."""

    user_id: str
    reason: str


class Listeners(Generic[E]):
    """Registry of callbacks for one kind of event."""

    def __init__(self):
        self._callbacks: list[Callable[[E], None]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        """
        Register a callback.

        Returns:
            Function that unregisters the callback
        """
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: E):
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Listener {callback!r} failed on {event!r}")
