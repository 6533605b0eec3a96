import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

logger = logging.getLogger("uvicorn.error")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sessions(
                    session_key TEXT PRIMARY KEY,
                    state_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS audit_events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_key TEXT NOT NULL,
                    timestamp TEXT,
                    kind TEXT NOT NULL,
                    payload_json TEXT,
                    status TEXT NOT NULL CHECK(status IN ('SUCCESS', 'ERROR', 'PENDING')),
                    error_message TEXT,
                    duration_ms INTEGER
                );
                CREATE TABLE IF NOT EXISTS curated_knowledge(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    source_url TEXT,
                    tags TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    is_active INTEGER DEFAULT 1
                );
                CREATE INDEX IF NOT EXISTS idx_audit_events_session_key ON audit_events(session_key);
                CREATE INDEX IF NOT EXISTS idx_audit_events_kind ON audit_events(kind);
                CREATE INDEX IF NOT EXISTS idx_curated_knowledge_tags ON curated_knowledge(tags);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def add_audit_event(
        self,
        session_key: str,
        kind: str,
        payload: Any,
        status: str = "SUCCESS",
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> dict:
        timestamp = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO audit_events(session_key, timestamp, kind, payload_json, status, error_message, duration_ms) "
                "VALUES (?,?,?,?,?,?,?)",
                (
                    session_key,
                    timestamp,
                    kind,
                    json.dumps(payload, ensure_ascii=True, default=str),
                    status,
                    error_message,
                    duration_ms,
                ),
            )
            await db.commit()
            return {"id": cursor.lastrowid, "timestamp": timestamp}

    async def list_audit_events(self, session_key: str, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, session_key, timestamp, kind, payload_json, status, error_message, duration_ms "
            "FROM audit_events WHERE session_key=? ORDER BY id ASC LIMIT ?",
            (session_key, limit),
        )
        return [
            {
                "id": row["id"],
                "session_key": row["session_key"],
                "timestamp": row["timestamp"],
                "kind": row["kind"],
                "payload": json.loads(row["payload_json"] or "null"),
                "status": row["status"],
                "error_message": row["error_message"],
                "duration_ms": row["duration_ms"],
            }
            for row in rows
        ]

    async def add_curated_knowledge(
        self,
        title: str,
        content: str,
        source_url: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> int:
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO curated_knowledge(title, content, source_url, tags, created_at, updated_at, is_active) "
                "VALUES (?,?,?,?,?,?,1)",
                (title, content, source_url, tags, now, now),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_curated_knowledge_by_ids(self, ids: Sequence[int]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = await self.fetchall(
            f"SELECT id, title, content, source_url, tags, created_at, updated_at FROM curated_knowledge "
            f"WHERE is_active=1 AND id IN ({placeholders})",
            tuple(int(i) for i in ids),
        )
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "content": row["content"],
                "source_url": row["source_url"],
                "tags": row["tags"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    async def deactivate_curated_knowledge(self, item_id: int) -> None:
        await self.execute(
            "UPDATE curated_knowledge SET is_active=0, updated_at=? WHERE id=?",
            (utc_now(), item_id),
        )


async def record_audit(
    db: Database,
    session_key: str,
    kind: str,
    payload: Any,
    status: str = "SUCCESS",
    error_message: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> Optional[dict]:
    """Append an audit event; a failed write is logged and never interrupts the turn."""
    try:
        return await db.add_audit_event(
            session_key,
            kind,
            payload,
            status=status,
            error_message=error_message,
            duration_ms=duration_ms,
        )
    except (aiosqlite.Error, OSError) as exc:
        logger.warning("Audit write failed for %s (%s): %s", session_key, kind, exc)
        return None
