"""WebSocket client for a remote objective store."""

import asyncio
import json
import logging
from typing import Optional

import websockets
from websockets.exceptions import WebSocketException

from ..domain.models import Collection, UserSnapshot
from ..engine.ordering import OrderUpdate
from ..errors import (
    AuthenticationError,
    NotFoundError,
    RemoteCommandError,
    TransportError,
)

from .gateway import PersistenceGateway
from .snapshot import SnapshotParser

logger = logging.getLogger(__name__)


class RemoteStoreClient(PersistenceGateway):
    """
    Gateway speaking a JSON command protocol over a WebSocket.

    Every command is ``{"id": n, "type": "<command>", ...}`` and is answered
    by ``{"id": n, "success": bool, "result": ..., "error": {...}}``.
    Commands are sent one at a time; concurrent callers wait their turn.
    """

    def __init__(self, store_url: str, store_token: str):
        """
        Initialize client.

        Args:
            store_url: Store URL (e.g., https://store.example.com)
            store_token: Access token for the signed-in user
        """
        self.store_url = store_url
        self.store_token = store_token
        self.ws_url = self._convert_to_ws_url(store_url)
        self.websocket = None
        self.parser = SnapshotParser()
        self._message_id = 0
        self._lock = asyncio.Lock()

    def _convert_to_ws_url(self, http_url: str) -> str:
        """Convert HTTP URL to WebSocket URL."""
        ws_url = http_url.replace("http://", "ws://").replace("https://", "wss://")
        if not ws_url.endswith("/"):
            ws_url += "/"
        return ws_url + "api/websocket"

    async def connect(self):
        """Connect and authenticate to the store."""
        logger.info(f"Connecting to {self.ws_url}")

        try:
            self.websocket = await websockets.connect(self.ws_url)

            # Receive auth required message
            auth_required = self._decode(await self.websocket.recv())
            if auth_required.get("type") != "auth_required":
                await self.disconnect()
                raise TransportError(f"Unexpected message: {auth_required}")

            await self.websocket.send(
                json.dumps({"type": "auth", "access_token": self.store_token})
            )

            auth_result = self._decode(await self.websocket.recv())
        except (OSError, WebSocketException) as e:
            self.websocket = None
            raise TransportError(f"Could not connect to {self.ws_url}: {e}") from e
        except ValueError as e:
            await self.disconnect()
            raise TransportError(f"Malformed handshake from {self.ws_url}: {e}") from e

        logger.debug(f"Auth result: {auth_result}")
        if auth_result.get("type") != "auth_ok":
            await self.disconnect()
            raise AuthenticationError(f"Authentication failed: {auth_result.get('message')}")

        logger.info("✓ Connected and authenticated to remote store")

    async def disconnect(self):
        """Disconnect from the store."""
        if self.websocket:
            await self.websocket.close()
            self.websocket = None
            logger.info("Disconnected from remote store")

    async def close(self):
        await self.disconnect()

    def _decode(self, frame) -> dict:
        """Parse one frame; raises ValueError unless it is a JSON object."""
        message = json.loads(frame)
        if not isinstance(message, dict):
            raise ValueError(f"expected a JSON object, got {type(message).__name__}")
        return message

    async def send_command(self, command_type: str, **kwargs):
        """
        Send a command and wait for its response.

        Connects on first use and after a dropped connection.

        Args:
            command_type: Command type (e.g., "item/update")
            **kwargs: Command parameters

        Returns:
            The response's result payload
        """
        async with self._lock:
            if not self.websocket:
                await self.connect()

            self._message_id += 1
            message = {"id": self._message_id, "type": command_type, **kwargs}

            logger.debug(f"Sending command: {command_type} (id={self._message_id})")
            try:
                await self.websocket.send(json.dumps(message))

                # Wait for response with matching ID
                while True:
                    response = self._decode(await self.websocket.recv())
                    if response.get("id") == self._message_id:
                        break
            except (OSError, WebSocketException) as e:
                self.websocket = None
                raise TransportError(f"Connection lost during {command_type}: {e}") from e
            except ValueError as e:
                await self.disconnect()
                raise TransportError(f"Malformed reply to {command_type}: {e}") from e

        if not response.get("success"):
            error = response.get("error") or {}
            logger.error(f"Command failed: {response}")
            code = error.get("code")
            if code == "unauthorized":
                raise AuthenticationError(error.get("message", "Unauthorized"))
            if code == "not_found":
                raise NotFoundError(error.get("target", command_type), error.get("message", "Not found."))
            raise RemoteCommandError(command_type, error)

        logger.debug(f"Received response for id={message['id']}")
        return response.get("result")

    def _created_id(self, result, fallback: str) -> str:
        if isinstance(result, dict):
            return result.get("id", fallback)
        if result is not None:
            logger.warning(f"Ignoring unexpected create result: {result!r}")
        return fallback

    async def create(self, objective_id: str, collection: Collection, item: dict) -> str:
        result = await self.send_command(
            "item/create", objective_id=objective_id, collection=collection.value, item=item
        )
        return self._created_id(result, item["id"])

    async def update(
        self, objective_id: str, collection: Collection, item_id: str, fields: dict
    ) -> None:
        await self.send_command(
            "item/update",
            objective_id=objective_id,
            collection=collection.value,
            item_id=item_id,
            fields=fields,
        )

    async def remove(self, objective_id: str, collection: Collection, item_id: str) -> None:
        await self.send_command(
            "item/remove", objective_id=objective_id, collection=collection.value, item_id=item_id
        )

    async def batch_update_order(
        self, objective_id: str, collection: Collection, updates: list[OrderUpdate]
    ) -> None:
        await self.send_command(
            "item/reorder",
            objective_id=objective_id,
            collection=collection.value,
            updates=[{"item_id": u.item_id, "order": u.order} for u in updates],
        )

    async def fetch_snapshot(self, user_id: str) -> UserSnapshot:
        raw = await self.send_command("snapshot/get", user_id=user_id)
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise TransportError(f"Malformed snapshot for {user_id}: got {type(raw).__name__}")
        return self.parser.parse(user_id, raw)

    async def create_objective(self, user_id: str, objective: dict) -> str:
        result = await self.send_command("objective/create", user_id=user_id, objective=objective)
        return self._created_id(result, objective["id"])

    async def update_objective(self, user_id: str, objective_id: str, fields: dict) -> None:
        await self.send_command(
            "objective/update", user_id=user_id, objective_id=objective_id, fields=fields
        )

    async def set_active_objective(self, user_id: str, objective_id: Optional[str]) -> None:
        await self.send_command("objective/activate", user_id=user_id, objective_id=objective_id)
