"""Durable item rows for the lifecycle state machine."""

import json
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite

from ..storage.database import Database
from ..utils.errors import DatabaseError, ItemNotFound, VersionConflict
from ..utils.logging import get_logger
from .state_machine import Item


logger = get_logger("todo-sync.items")


def _row_to_item(row: aiosqlite.Row) -> Item:
    data = dict(row)
    data["status_timestamps"] = json.loads(row["status_timestamps"])
    return Item.from_dict(data)


def _encode_timestamps(item: Item) -> str:
    return json.dumps(
        {status.value: ts.isoformat() for status, ts in item.status_timestamps.items()},
        sort_keys=True,
    )


class ItemStore:
    """Persists items; only accepted transitions ever update a row."""

    def __init__(self, db: Database):
        self.db = db

    async def insert(self, conn: aiosqlite.Connection, item: Item) -> None:
        """Insert a new item row inside an open transaction."""
        try:
            await conn.execute(
                """
                INSERT INTO items
                (id, owner_id, title, status, version, status_timestamps, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.owner_id,
                    item.title,
                    item.status.value,
                    item.version,
                    _encode_timestamps(item),
                    datetime.now(timezone.utc).isoformat(),
                )
            )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Item {item.id} already exists", cause=e, item_id=item.id) from e
        logger.info("item_created", item_id=item.id, owner_id=item.owner_id)

    async def get(self, item_id: str) -> Optional[Item]:
        row = await self.db.fetchone("SELECT * FROM items WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    async def get_owned(self, owner_id: str, item_id: str) -> Item:
        """Fetch an item, treating items of other users as missing."""
        item = await self.get(item_id)
        if item is None or item.owner_id != owner_id:
            raise ItemNotFound(f"Item {item_id} not found", item_id=item_id)
        return item

    async def list_for(self, owner_id: str) -> List[Item]:
        rows = await self.db.fetchall(
            "SELECT * FROM items WHERE owner_id = ? ORDER BY id",
            (owner_id,)
        )
        return [_row_to_item(row) for row in rows]

    async def save_transition(
        self,
        conn: aiosqlite.Connection,
        item: Item,
        previous_version: int,
    ) -> None:
        """
        Write a transitioned item inside an open transaction.

        The update is guarded on the previous version so a concurrent writer
        that slipped in first turns this write into a VersionConflict.
        """
        cursor = await conn.execute(
            """
            UPDATE items
            SET status = ?, version = ?, status_timestamps = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                item.status.value,
                item.version,
                _encode_timestamps(item),
                datetime.now(timezone.utc).isoformat(),
                item.id,
                previous_version,
            )
        )
        if cursor.rowcount != 1:
            async with conn.execute(
                "SELECT version FROM items WHERE id = ?", (item.id,)
            ) as check:
                row = await check.fetchone()
            if row is None:
                raise ItemNotFound(f"Item {item.id} not found", item_id=item.id)
            raise VersionConflict(previous_version, row["version"])
