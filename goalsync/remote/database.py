"""SQLite-backed store for local and single-machine deployments."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..domain.models import ITEM_MODELS, Collection, UserSnapshot
from ..engine.ordering import OrderUpdate
from ..errors import NotFoundError, RemoteCommandError, TransportError

from .gateway import PersistenceGateway
from .snapshot import SnapshotParser

logger = logging.getLogger(__name__)


class SQLiteGateway(PersistenceGateway):
    """Stores each objective and each nested item as a JSON row."""

    def __init__(self, db_path: str = "data/goals.db"):
        """Initialize database."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.parser = SnapshotParser()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    active_objective_id TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS objectives (
                    objective_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    objective_id TEXT NOT NULL,
                    collection TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (objective_id, collection, item_id)
                )
            """)
        logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection; the block commits on success and rolls back on error."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise TransportError(f"SQLite store error: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    def _require_objective(self, conn: sqlite3.Connection, objective_id: str, user_id: Optional[str] = None):
        row = conn.execute(
            "SELECT user_id, data FROM objectives WHERE objective_id = ?", (objective_id,)
        ).fetchone()
        if not row or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError(f"objective {objective_id}")
        return row

    def _ensure_user(self, conn: sqlite3.Connection, user_id: str):
        conn.execute("INSERT OR IGNORE INTO users (user_id) VALUES (?)", (user_id,))

    async def create(self, objective_id: str, collection: Collection, item: dict) -> str:
        if collection.keyed:
            raise RemoteCommandError("item/create", {"message": f"{collection.value} is keyed"})

        with self._connect() as conn:
            self._require_objective(conn, objective_id)
            try:
                conn.execute(
                    """
                    INSERT INTO items (objective_id, collection, item_id, data)
                    VALUES (?, ?, ?, ?)
                    """,
                    (objective_id, collection.value, item["id"], json.dumps(item)),
                )
            except sqlite3.IntegrityError as e:
                raise RemoteCommandError("item/create", {"message": str(e)}) from e

        logger.debug(f"Created {collection.value} item {item['id']} in {objective_id}")
        return item["id"]

    async def update(
        self, objective_id: str, collection: Collection, item_id: str, fields: dict
    ) -> None:
        with self._connect() as conn:
            self._require_objective(conn, objective_id)
            row = conn.execute(
                """
                SELECT data FROM items
                WHERE objective_id = ? AND collection = ? AND item_id = ?
                """,
                (objective_id, collection.value, item_id),
            ).fetchone()

            if row:
                data = {**json.loads(row["data"]), **fields}
                conn.execute(
                    """
                    UPDATE items SET data = ?
                    WHERE objective_id = ? AND collection = ? AND item_id = ?
                    """,
                    (json.dumps(data), objective_id, collection.value, item_id),
                )
            elif collection.keyed:
                conn.execute(
                    """
                    INSERT INTO items (objective_id, collection, item_id, data)
                    VALUES (?, ?, ?, ?)
                    """,
                    (objective_id, collection.value, item_id, json.dumps(fields)),
                )
            else:
                raise NotFoundError(f"{collection.value} item {item_id}")

    async def remove(self, objective_id: str, collection: Collection, item_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM items
                WHERE objective_id = ? AND collection = ? AND item_id = ?
                """,
                (objective_id, collection.value, item_id),
            )

    async def batch_update_order(
        self, objective_id: str, collection: Collection, updates: list[OrderUpdate]
    ) -> None:
        with self._connect() as conn:
            self._require_objective(conn, objective_id)
            for update in updates:
                row = conn.execute(
                    """
                    SELECT data FROM items
                    WHERE objective_id = ? AND collection = ? AND item_id = ?
                    """,
                    (objective_id, collection.value, update.item_id),
                ).fetchone()
                if not row:
                    raise NotFoundError(f"{collection.value} item {update.item_id}")
                data = {**json.loads(row["data"]), "order": update.order}
                conn.execute(
                    """
                    UPDATE items SET data = ?
                    WHERE objective_id = ? AND collection = ? AND item_id = ?
                    """,
                    (json.dumps(data), objective_id, collection.value, update.item_id),
                )
        logger.debug(f"Reordered {len(updates)} {collection.value} items in {objective_id}")

    async def fetch_snapshot(self, user_id: str) -> UserSnapshot:
        with self._connect() as conn:
            self._ensure_user(conn, user_id)
            user = conn.execute(
                "SELECT active_objective_id FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()

            objectives = {}
            for row in conn.execute(
                "SELECT objective_id, data FROM objectives WHERE user_id = ? ORDER BY rowid",
                (user_id,),
            ):
                objectives[row["objective_id"]] = {
                    "objective": json.loads(row["data"]),
                    **{collection.value: [] for collection in ITEM_MODELS},
                    "routines": {},
                    "progress": {},
                }

            for row in conn.execute(
                """
                SELECT items.objective_id, items.collection, items.item_id, items.data
                FROM items JOIN objectives USING (objective_id)
                WHERE objectives.user_id = ?
                ORDER BY items.rowid
                """,
                (user_id,),
            ):
                tree = objectives[row["objective_id"]]
                data = json.loads(row["data"])
                if row["collection"] in (Collection.ROUTINES.value, Collection.PROGRESS.value):
                    tree[row["collection"]][row["item_id"]] = data
                else:
                    tree.setdefault(row["collection"], []).append(data)

        raw = {"active_objective_id": user["active_objective_id"], "objectives": objectives}
        return self.parser.parse(user_id, raw)

    async def create_objective(self, user_id: str, objective: dict) -> str:
        with self._connect() as conn:
            self._ensure_user(conn, user_id)
            try:
                conn.execute(
                    "INSERT INTO objectives (objective_id, user_id, data) VALUES (?, ?, ?)",
                    (objective["id"], user_id, json.dumps(objective)),
                )
            except sqlite3.IntegrityError as e:
                raise RemoteCommandError("objective/create", {"message": str(e)}) from e
        logger.info(f"Created objective: {objective.get('name')} ({objective['id']})")
        return objective["id"]

    async def update_objective(self, user_id: str, objective_id: str, fields: dict) -> None:
        with self._connect() as conn:
            row = self._require_objective(conn, objective_id, user_id)
            data = {**json.loads(row["data"]), **fields}
            conn.execute(
                "UPDATE objectives SET data = ? WHERE objective_id = ?",
                (json.dumps(data), objective_id),
            )

    async def set_active_objective(self, user_id: str, objective_id: Optional[str]) -> None:
        with self._connect() as conn:
            self._ensure_user(conn, user_id)
            if objective_id is not None:
                self._require_objective(conn, objective_id, user_id)
            conn.execute(
                "UPDATE users SET active_objective_id = ? WHERE user_id = ?",
                (objective_id, user_id),
            )
