"""Activity feed and user notifications."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import httpx

from conductor.config import NotificationsConfig
from conductor.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_activity_user ON activity (user_id, id);
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    message TEXT NOT NULL,
    related_id TEXT,
    created_at TEXT NOT NULL
);
"""


class ActivitySink(ABC):
    @abstractmethod
    async def log_activity(
        self,
        user_id: str,
        event_type: str,
        title: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    @abstractmethod
    async def notify(
        self, user_id: str, messages: list[str], related_id: str | None = None
    ) -> None: ...


class SqliteActivitySink(ActivitySink):
    """Stores activity entries and notifications locally, optionally pushing
    notifications to an HTTP endpoint."""

    def __init__(
        self,
        db_path: Path,
        config: NotificationsConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._db_path = db_path
        self._config = config or NotificationsConfig()
        self._db: aiosqlite.Connection | None = None
        self._client: httpx.AsyncClient | None = None
        if self._config.push_url:
            self._client = httpx.AsyncClient(timeout=self._config.timeout, transport=transport)

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._db:
            await self._db.close()
            self._db = None

    async def log_activity(
        self,
        user_id: str,
        event_type: str,
        title: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        assert self._db is not None
        await self._db.execute(
            "INSERT INTO activity (user_id, event_type, title, description, metadata_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                user_id, event_type, title, description,
                json.dumps(metadata or {}), datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self._db.commit()

    async def notify(
        self, user_id: str, messages: list[str], related_id: str | None = None
    ) -> None:
        """Record notifications, then push them if a push endpoint is configured.

        Push errors propagate; callers decide whether they matter.
        """
        assert self._db is not None
        now = datetime.now(timezone.utc).isoformat()
        await self._db.executemany(
            "INSERT INTO notifications (user_id, message, related_id, created_at) "
            "VALUES (?, ?, ?, ?)",
            [(user_id, m, related_id, now) for m in messages],
        )
        await self._db.commit()

        if self._client is not None:
            resp = await self._client.post(
                self._config.push_url,
                json={"user_id": user_id, "messages": messages, "related_id": related_id},
            )
            resp.raise_for_status()

    async def recent_activity(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT event_type, title, description, metadata_json, created_at "
            "FROM activity WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            {
                "event_type": row[0],
                "title": row[1],
                "description": row[2],
                "metadata": json.loads(row[3]),
                "created_at": row[4],
            }
            for row in rows
        ]

    async def notifications(self, user_id: str) -> list[dict[str, Any]]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT message, related_id, created_at FROM notifications "
            "WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [
            {"message": row[0], "related_id": row[1], "created_at": row[2]}
            for row in rows
        ]
