"""Per-user conversation state behind a narrow get/set/delete interface."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol

from pydantic import ValidationError

from .config import CONFIG
from .kv_client import KVClient, get_kv_client
from .schemas import ConversationSession

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    async def get(self, user_key: str) -> Optional[ConversationSession]:
        ...

    async def set(self, user_key: str, session: ConversationSession) -> None:
        ...

    async def delete(self, user_key: str) -> None:
        ...


def _decode(user_key: str, raw: Optional[str]) -> Optional[ConversationSession]:
    if not raw:
        return None
    try:
        return ConversationSession.model_validate_json(raw)
    except ValidationError as exc:
        # A session written by an older build is dropped, not fatal.
        logger.warning("discarding unreadable session", extra={"user_key": user_key, "error": str(exc)})
        return None


class MemorySessionStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, str] = {}

    async def get(self, user_key: str) -> Optional[ConversationSession]:
        return _decode(user_key, self._sessions.get(user_key))

    async def set(self, user_key: str, session: ConversationSession) -> None:
        self._sessions[user_key] = session.model_dump_json()

    async def delete(self, user_key: str) -> None:
        self._sessions.pop(user_key, None)

    def __len__(self) -> int:
        return len(self._sessions)


class SQLiteSessionStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    user_key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.commit()

    async def get(self, user_key: str) -> Optional[ConversationSession]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT payload FROM chat_sessions WHERE user_key = ?", (user_key,)).fetchone()
        return _decode(user_key, row[0] if row else None)

    async def set(self, user_key: str, session: ConversationSession) -> None:
        now = datetime.now(tz=timezone.utc).isoformat()
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (user_key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (user_key, session.model_dump_json(), now),
            )
            conn.commit()

    async def delete(self, user_key: str) -> None:
        with self.get_connection() as conn:
            conn.execute("DELETE FROM chat_sessions WHERE user_key = ?", (user_key,))
            conn.commit()


class KVSessionStore:
    def __init__(self, client: KVClient, *, ttl_seconds: Optional[int] = None, prefix: str = "session:") -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, user_key: str) -> str:
        return f"{self.prefix}{user_key}"

    async def get(self, user_key: str) -> Optional[ConversationSession]:
        raw = await self.client.get(self._key(user_key))
        if raw is not None and not isinstance(raw, str):
            raw = json.dumps(raw)
        return _decode(user_key, raw)

    async def set(self, user_key: str, session: ConversationSession) -> None:
        await self.client.set(self._key(user_key), session.model_dump_json(), ex=self.ttl_seconds)

    async def delete(self, user_key: str) -> None:
        await self.client.delete(self._key(user_key))


def create_session_store() -> SessionStore:
    backend = CONFIG.session_backend
    if backend == "memory":
        return MemorySessionStore()
    if backend == "kv":
        return KVSessionStore(get_kv_client(), ttl_seconds=CONFIG.session_ttl_seconds)
    return SQLiteSessionStore(CONFIG.resolved_database_path)
