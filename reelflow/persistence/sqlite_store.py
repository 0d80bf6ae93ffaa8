"""
SQLite Workflow Store
=====================

Keeps each workflow as one row: the serialized aggregate plus the columns
needed to find resumable workflows of an owner. Saves are a single
``INSERT OR REPLACE`` inside a transaction.
"""

import json
import logging
import sqlite3
import asyncio
from pathlib import Path
from typing import Optional, List, Union

from .base import WorkflowStore
from ..core.exceptions import StorageError
from ..workflow.models import Workflow

logger = logging.getLogger(__name__)


class SQLiteWorkflowStore(WorkflowStore):
    """
    SQLite-backed store.

    Blocking sqlite3 calls run in a worker thread; each call opens its own
    connection.
    """

    def __init__(self, db_path: Union[str, Path] = "output/workflows/workflows.db"):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        conn = self._connect()
        try:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS workflows (
                        workflow_id TEXT PRIMARY KEY,
                        owner_key TEXT,
                        status TEXT,
                        stage TEXT,
                        updated_at TEXT,
                        payload TEXT NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_workflows_owner
                    ON workflows(owner_key, updated_at)
                """)
        finally:
            conn.close()

        logger.info(f"Initialized workflow database at {self.db_path}")

    # -------------------------------------------------------------------------
    # WorkflowStore
    # -------------------------------------------------------------------------

    async def load(self, workflow_id: str) -> Optional[Workflow]:
        row = await asyncio.to_thread(self._fetch_one, workflow_id)
        return self._decode(row["payload"]) if row else None

    async def save(self, workflow: Workflow) -> None:
        data = workflow.to_dict()
        params = (
            workflow.id,
            workflow.owner_key,
            data["status"],
            data["stage"],
            data["updated_at"],
            json.dumps(data, ensure_ascii=False),
        )
        await asyncio.to_thread(self._upsert, params)

    async def list_for_owner(self, owner_key: str) -> List[Workflow]:
        rows = await asyncio.to_thread(self._fetch_owner, owner_key, None)
        return [self._decode(row["payload"]) for row in rows]

    async def list_active_for_owner(self, owner_key: str) -> List[Workflow]:
        rows = await asyncio.to_thread(self._fetch_owner, owner_key, ("completed", "failed"))
        return [self._decode(row["payload"]) for row in rows]

    async def delete(self, workflow_id: str) -> bool:
        return await asyncio.to_thread(self._delete, workflow_id)

    # -------------------------------------------------------------------------
    # Blocking helpers
    # -------------------------------------------------------------------------

    def _upsert(self, params: tuple) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("""
                    INSERT OR REPLACE INTO workflows (
                        workflow_id, owner_key, status, stage, updated_at, payload
                    ) VALUES (?, ?, ?, ?, ?, ?)
                """, params)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save workflow: {e}", key=params[0])
        finally:
            conn.close()

    def _fetch_one(self, workflow_id: str) -> Optional[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(
                "SELECT payload FROM workflows WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        finally:
            conn.close()

    def _fetch_owner(self, owner_key: str, exclude_statuses: Optional[tuple]) -> List[sqlite3.Row]:
        query = "SELECT payload FROM workflows WHERE owner_key = ?"
        params: list = [owner_key]
        if exclude_statuses:
            query += f" AND status NOT IN ({', '.join('?' for _ in exclude_statuses)})"
            params.extend(exclude_statuses)
        query += " ORDER BY updated_at DESC"

        conn = self._connect()
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    def _delete(self, workflow_id: str) -> bool:
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute("DELETE FROM workflows WHERE workflow_id = ?", (workflow_id,))
            return cursor.rowcount > 0
        finally:
            conn.close()

    @staticmethod
    def _decode(payload: str) -> Workflow:
        try:
            return Workflow.from_dict(json.loads(payload))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise StorageError(f"Corrupt workflow row: {e}", recoverable=False)
