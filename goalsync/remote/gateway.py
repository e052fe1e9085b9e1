"""Interface to the remote store holding users' objective trees."""

from abc import ABC, abstractmethod
from typing import Optional

from ..domain.models import Collection, UserSnapshot
from ..engine.ordering import OrderUpdate


class PersistenceGateway(ABC):
    """
    CRUD and snapshot access to the remote store.

    Payloads are JSON-ready dicts (``model_dump(mode="json")``). Every call
    either applies completely for its own item or raises a GatewayError.
    Item ids are chosen by the caller; ``create`` persists under that id.

    For keyed collections (routines, progress) ``update`` is an upsert
    where ``item_id`` is the routine kind or ISO date.
    """

    @abstractmethod
    async def create(self, objective_id: str, collection: Collection, item: dict) -> str:
        """Create an item and return its id."""

    @abstractmethod
    async def update(
        self, objective_id: str, collection: Collection, item_id: str, fields: dict
    ) -> None:
        """Merge fields into an existing item."""

    @abstractmethod
    async def remove(self, objective_id: str, collection: Collection, item_id: str) -> None:
        """Delete an item. Deleting a missing item is not an error."""

    @abstractmethod
    async def batch_update_order(
        self, objective_id: str, collection: Collection, updates: list[OrderUpdate]
    ) -> None:
        """Set the order field of several items in one call."""

    @abstractmethod
    async def fetch_snapshot(self, user_id: str) -> UserSnapshot:
        """Read the user's whole objective tree."""

    @abstractmethod
    async def create_objective(self, user_id: str, objective: dict) -> str:
        """Create an empty objective and return its id."""

    @abstractmethod
    async def update_objective(self, user_id: str, objective_id: str, fields: dict) -> None:
        """Merge fields into an objective's own record."""

    @abstractmethod
    async def set_active_objective(self, user_id: str, objective_id: Optional[str]) -> None:
        """Point the user's active objective at objective_id (or nothing)."""

    async def close(self):
        """Release any connection held by the gateway."""
