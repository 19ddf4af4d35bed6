import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sessions(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    title TEXT,
                    created_at TEXT,
                    last_message_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    processing_time_ms INTEGER,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages(session_id, seq);
                CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id, last_message_at);
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

    async def ensure_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> dict:
        existing = await self.get_session(session_id)
        if existing:
            return existing
        now = utc_now()
        await self.execute(
            "INSERT OR IGNORE INTO sessions(id, user_id, title, created_at, last_message_at) VALUES (?,?,?,?,?)",
            (session_id, user_id, title, now, now),
        )
        return {
            "id": session_id,
            "user_id": user_id,
            "title": title,
            "created_at": now,
            "last_message_at": now,
        }

    async def get_session(self, session_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, user_id, title, created_at, last_message_at FROM sessions WHERE id=?",
            (session_id,),
        )
        return dict(row) if row else None

    async def list_sessions(self, user_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        """Sessions owned by `user_id`, newest first. `None` lists anonymous sessions only."""
        rows = await self.fetchall(
            "SELECT id, user_id, title, created_at, last_message_at FROM sessions "
            "WHERE user_id IS ? ORDER BY last_message_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [dict(r) for r in rows]

    async def append_message(
        self,
        session_id: str,
        message_id: str,
        role: str,
        content: List[Dict[str, Any]],
        processing_time_ms: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        """Append one message at the end of the session, creating the session on first use.

        `seq` is computed and written inside a single transaction so generation order
        is preserved for sequential writers.
        """
        await self.ensure_session(session_id, user_id=user_id)
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM messages WHERE session_id=?",
                (session_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            seq = int(row[0]) + 1 if row else 1
            await db.execute(
                "INSERT INTO messages(id, session_id, seq, role, content, processing_time_ms, created_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (message_id, session_id, seq, role, json.dumps(content), processing_time_ms, created_at),
            )
            await db.execute(
                "UPDATE sessions SET last_message_at=? WHERE id=?",
                (created_at, session_id),
            )
            await db.commit()
        return {
            "id": message_id,
            "session_id": session_id,
            "seq": seq,
            "role": role,
            "content": content,
            "processing_time_ms": processing_time_ms,
            "created_at": created_at,
        }

    async def list_messages(self, session_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, session_id, seq, role, content, processing_time_ms, created_at "
            "FROM messages WHERE session_id=? ORDER BY seq ASC",
            (session_id,),
        )
        results: List[dict] = []
        for r in rows:
            item = dict(r)
            try:
                item["content"] = json.loads(item["content"] or "[]")
            except json.JSONDecodeError:
                item["content"] = []
            results.append(item)
        return results

    async def set_session_title(self, session_id: str, title: str) -> None:
        await self.execute(
            "UPDATE sessions SET title=? WHERE id=? AND (title IS NULL OR title='')",
            (title, session_id),
        )
