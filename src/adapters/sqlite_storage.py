"""SQLite storage adapter.

Implements the core MessageStore and AuditSink ports using a simple SQLite
database. Calls are blocking sqlite3 work pushed onto a worker thread so the
async core can fan out writes.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.errors import StoreError, ValidationError
from core.models import UPDATABLE_FIELDS, AnalyzedContent, Message, ProcessingState


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _encode_field(name: str, value: Any) -> Any:
    """Map a Message field value onto its column representation."""

    if name == "analyzed_content":
        return _dump_json(value.to_dict()) if value is not None else None
    if name == "processing_state":
        return ProcessingState(value).value
    if name == "edit_history":
        return _dump_json(list(value or ()))
    if name in {"is_original_caption", "is_edited"}:
        return int(bool(value))
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _row_to_message(row: sqlite3.Row) -> Message:
    analyzed = row["analyzed_content"]
    updated_at = row["updated_at"]
    return Message(
        id=row["id"],
        chat_id=int(row["chat_id"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        correlation_id=row["correlation_id"],
        media_group_id=row["media_group_id"],
        caption=row["caption"],
        is_original_caption=bool(row["is_original_caption"]),
        analyzed_content=AnalyzedContent.from_dict(json.loads(analyzed)) if analyzed else None,
        processing_state=ProcessingState(row["processing_state"]),
        retry_count=int(row["retry_count"]),
        error_message=row["error_message"],
        edit_history=tuple(json.loads(row["edit_history"] or "[]")),
        is_edited=bool(row["is_edited"]),
        updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
    )


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the MessageStore and AuditSink contracts."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite error: {exc}") from exc

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - messages: one row per platform message with its analysis state
        - audit_log: append-only trail of processing and sync events
        """

        with self._connect() as conn:
            # messages mirrors the core Message model. analyzed_content and
            # edit_history are JSON documents.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id INTEGER NOT NULL,
                    media_group_id TEXT,
                    caption TEXT,
                    is_original_caption INTEGER NOT NULL DEFAULT 0,
                    analyzed_content TEXT,
                    processing_state TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    edit_history TEXT,
                    is_edited INTEGER NOT NULL DEFAULT 0,
                    correlation_id TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_group ON messages (media_group_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_state ON messages (processing_state)"
            )
            # audit_log is append-only; metadata is a JSON document.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    correlation_id TEXT,
                    metadata TEXT,
                    error_message TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )

    def add(self, message: Message) -> None:
        """Insert or replace a message row. Used by ingestion code."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO messages (
                    id,
                    chat_id,
                    media_group_id,
                    caption,
                    is_original_caption,
                    analyzed_content,
                    processing_state,
                    retry_count,
                    error_message,
                    edit_history,
                    is_edited,
                    correlation_id,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.chat_id,
                    message.media_group_id,
                    message.caption,
                    _encode_field("is_original_caption", message.is_original_caption),
                    _encode_field("analyzed_content", message.analyzed_content),
                    _encode_field("processing_state", message.processing_state),
                    message.retry_count,
                    message.error_message,
                    _encode_field("edit_history", message.edit_history),
                    _encode_field("is_edited", message.is_edited),
                    message.correlation_id,
                    message.created_at.isoformat(),
                    message.updated_at.isoformat() if message.updated_at else None,
                ),
            )

    def _select(self, where: str = "", params: tuple = ()) -> list[Message]:
        query = "SELECT * FROM messages"
        if where:
            query = f"{query} WHERE {where}"
        with self._connect() as conn:
            rows = conn.execute(f"{query} ORDER BY created_at, id", params).fetchall()
        return [_row_to_message(row) for row in rows]

    def _get_sync(self, message_id: str) -> Optional[Message]:
        messages = self._select("id = ?", (message_id,))
        return messages[0] if messages else None

    def _update_sync(self, message_id: str, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_encode_field(name, value) for name, value in fields.items()]
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE messages SET {assignments} WHERE id = ?",
                (*values, message_id),
            )
            if cur.rowcount == 0:
                raise ValidationError(f"message {message_id} not found")

    async def insert(self, message: Message) -> None:
        await self._run(self.add, message)

    async def get(self, message_id: str) -> Optional[Message]:
        return await self._run(self._get_sync, message_id)

    async def list_by_group(self, group_id: str) -> list[Message]:
        return await self._run(self._select, "media_group_id = ?", (group_id,))

    async def list_by_state(self, state: ProcessingState) -> list[Message]:
        return await self._run(self._select, "processing_state = ?", (ProcessingState(state).value,))

    async def list_all(self) -> list[Message]:
        return await self._run(self._select)

    async def update(self, message_id: str, fields: Mapping[str, Any]) -> None:
        await self._run(self._update_sync, message_id, dict(fields))

    def _record_sync(
        self,
        event_type: str,
        entity_id: str,
        correlation_id: str,
        metadata: Mapping[str, Any],
        error_message: Optional[str],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    event_type,
                    entity_id,
                    correlation_id,
                    metadata,
                    error_message,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event_type,
                    entity_id,
                    correlation_id,
                    _dump_json(dict(metadata)),
                    error_message,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )

    async def record(
        self,
        event_type: str,
        entity_id: str,
        correlation_id: str,
        metadata: Mapping[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        await self._run(self._record_sync, event_type, entity_id, correlation_id, metadata, error_message)

    def list_audit_events(self, entity_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Return audit rows, oldest first, optionally for one entity."""

        query = "SELECT * FROM audit_log"
        params: tuple = ()
        if entity_id is not None:
            query += " WHERE entity_id = ?"
            params = (entity_id,)
        with self._connect() as conn:
            rows = conn.execute(f"{query} ORDER BY id", params).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "entity_id": row["entity_id"],
                "correlation_id": row["correlation_id"],
                "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
                "error_message": row["error_message"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]
