import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import aiosqlite

from .db import utc_now
from .schemas import SessionState


class SessionStore:
    """Persist one state row per session key."""

    def __init__(self, path: str):
        self.path = path

    async def load(self, session_key: str) -> SessionState:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT state_json FROM sessions WHERE session_key=?",
                (session_key,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row or not row["state_json"]:
            now = utc_now()
            return SessionState(session_key=session_key, created_at=now, updated_at=now)
        return SessionState.model_validate_json(row["state_json"])

    async def save(self, state: SessionState) -> None:
        state.updated_at = utc_now()
        if not state.created_at:
            state.created_at = state.updated_at
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO sessions(session_key, state_json, created_at, updated_at) VALUES (?,?,?,?)",
                (state.session_key, state.model_dump_json(), state.created_at, state.updated_at),
            )
            await db.commit()

    async def exists(self, session_key: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("SELECT 1 FROM sessions WHERE session_key=?", (session_key,))
            row = await cursor.fetchone()
            await cursor.close()
        return row is not None


class KeyedLock:
    """One asyncio.Lock per key; idle locks are dropped."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def active_keys(self) -> int:
        return len(self._locks)
