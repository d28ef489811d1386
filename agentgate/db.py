import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

MAX_SKILL_VERSIONS = 10
MAX_EXCHANGE_SCAN = 20


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    conversation_id TEXT PRIMARY KEY,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    role TEXT,
                    content TEXT,
                    timestamp REAL
                );
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);
                CREATE TABLE IF NOT EXISTS pending_actions(
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    tool_name TEXT,
                    input_json TEXT,
                    created_at REAL,
                    expires_at REAL
                );
                CREATE INDEX IF NOT EXISTS idx_pending_conversation ON pending_actions(conversation_id, created_at);
                CREATE TABLE IF NOT EXISTS dedup_markers(
                    event_id TEXT PRIMARY KEY,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS conversation_locks(
                    conversation_id TEXT PRIMARY KEY,
                    token TEXT,
                    acquired_at REAL
                );
                CREATE TABLE IF NOT EXISTS tool_logs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS skills(
                    name TEXT PRIMARY KEY,
                    description TEXT,
                    content TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS skill_versions(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT,
                    content TEXT,
                    created_at REAL
                );
                CREATE INDEX IF NOT EXISTS idx_skill_versions_name ON skill_versions(name, id);
                CREATE TABLE IF NOT EXISTS feedback(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT,
                    user_message TEXT,
                    assistant_response TEXT,
                    rating TEXT,
                    feedback_text TEXT,
                    created_at REAL
                );
                CREATE TABLE IF NOT EXISTS kv_state(
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
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

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)",
            (utc_now(), json.dumps(payload)),
        )

    # Conversation history

    async def touch_conversation(self, conversation_id: str) -> None:
        now = utc_now()
        await self.execute(
            "INSERT INTO conversations(conversation_id, created_at, updated_at) VALUES (?,?,?) "
            "ON CONFLICT(conversation_id) DO UPDATE SET updated_at=excluded.updated_at",
            (conversation_id, now, now),
        )

    async def add_message(
        self, conversation_id: str, role: str, content: str, timestamp: Optional[float] = None
    ) -> dict:
        ts = timestamp if timestamp is not None else time.time()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO messages(conversation_id, role, content, timestamp) VALUES (?,?,?,?)",
                (conversation_id, role, content, ts),
            )
            await db.commit()
            message_id = cursor.lastrowid
        await self.touch_conversation(conversation_id)
        return {"id": message_id, "timestamp": ts}

    async def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if limit:
            rows = await self.fetchall(
                "SELECT * FROM (SELECT id, role, content, timestamp FROM messages WHERE conversation_id=? "
                "ORDER BY id DESC LIMIT ?) ORDER BY id ASC",
                (conversation_id, limit),
            )
        else:
            rows = await self.fetchall(
                "SELECT id, role, content, timestamp FROM messages WHERE conversation_id=? ORDER BY id ASC",
                (conversation_id,),
            )
        return [dict(row) for row in rows]

    async def context_messages(
        self, conversation_id: str, max_messages: int, max_chars: int
    ) -> List[Dict[str, str]]:
        """Sliding window over history: newest messages first until the char budget is spent."""
        recent = await self.list_messages(conversation_id, limit=max_messages)
        total = 0
        window: List[Dict[str, str]] = []
        for msg in reversed(recent):
            total += len(msg["content"] or "")
            if total > max_chars:
                break
            window.insert(0, {"role": msg["role"], "content": msg["content"]})
        return window

    async def clear_conversation(self, conversation_id: str) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
            await db.execute("DELETE FROM conversations WHERE conversation_id=?", (conversation_id,))
            await db.commit()

    # Tool logs

    async def add_tool_log(self, conversation_id: str, payload: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO tool_logs(conversation_id, payload_json, created_at) VALUES (?,?,?)",
            (conversation_id, json.dumps(payload, ensure_ascii=True), utc_now()),
        )

    async def list_tool_logs(self, conversation_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT payload_json, created_at FROM tool_logs WHERE conversation_id=? ORDER BY id DESC LIMIT ?",
            (conversation_id, limit),
        )
        logs = []
        for row in rows:
            payload = _json_loads(row["payload_json"], {})
            payload["created_at"] = row["created_at"]
            logs.append(payload)
        return logs

    async def recent_tool_names(self, conversation_id: str, turns: int = 3) -> List[str]:
        names: List[str] = []
        for log in await self.list_tool_logs(conversation_id, limit=turns):
            for call in log.get("tool_calls") or []:
                name = call.get("tool_name") if isinstance(call, dict) else None
                if name and name not in names:
                    names.append(name)
        return names

    # Skills and soul

    async def list_skills(self) -> List[Dict[str, str]]:
        rows = await self.fetchall("SELECT name, description FROM skills ORDER BY name ASC")
        return [{"name": row["name"], "description": row["description"] or ""} for row in rows]

    async def get_skill(self, name: str) -> Optional[Dict[str, str]]:
        row = await self.fetchone("SELECT name, description, content FROM skills WHERE name=?", (name,))
        return dict(row) if row else None

    async def save_skill(self, name: str, content: str, description: str = "") -> None:
        await self.execute(
            "INSERT OR REPLACE INTO skills(name, description, content, updated_at) VALUES (?,?,?,?)",
            (name, description, content, utc_now()),
        )

    async def save_skill_version(self, name: str, content: str) -> int:
        """Snapshot a skill's content, keeping only the newest MAX_SKILL_VERSIONS per skill."""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO skill_versions(name, content, created_at) VALUES (?,?,?)",
                (name, content, time.time()),
            )
            version_id = cursor.lastrowid
            await db.execute(
                "DELETE FROM skill_versions WHERE name=? AND id NOT IN "
                "(SELECT id FROM skill_versions WHERE name=? ORDER BY id DESC LIMIT ?)",
                (name, name, MAX_SKILL_VERSIONS),
            )
            await db.commit()
        return version_id

    async def list_skill_versions(self, name: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT id, created_at FROM skill_versions WHERE name=? ORDER BY id DESC",
            (name,),
        )
        return [{"id": row["id"], "created_at": row["created_at"]} for row in rows]

    async def load_skill_version(self, name: str, version_id: int) -> Optional[str]:
        row = await self.fetchone(
            "SELECT content FROM skill_versions WHERE name=? AND id=?",
            (name, version_id),
        )
        return row["content"] if row else None

    async def restore_skill_version(self, name: str, version_id: int) -> bool:
        content = await self.load_skill_version(name, version_id)
        if content is None:
            return False
        current = await self.get_skill(name)
        if current:
            await self.save_skill_version(name, current["content"] or "")
        await self.save_skill(name, content, (current or {}).get("description") or "")
        return True

    # Feedback

    async def add_feedback(
        self,
        conversation_id: str,
        rating: str,
        user_message: str = "",
        assistant_response: str = "",
        feedback_text: Optional[str] = None,
    ) -> None:
        await self.execute(
            "INSERT INTO feedback(conversation_id, user_message, assistant_response, rating, feedback_text, "
            "created_at) VALUES (?,?,?,?,?,?)",
            (conversation_id, user_message, assistant_response, rating, feedback_text, time.time()),
        )

    async def list_feedback(self, conversation_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if conversation_id:
            rows = await self.fetchall(
                "SELECT * FROM feedback WHERE conversation_id=? ORDER BY created_at DESC, id DESC",
                (conversation_id,),
            )
        else:
            rows = await self.fetchall("SELECT * FROM feedback ORDER BY created_at DESC, id DESC")
        return [dict(row) for row in rows]

    async def last_exchange(self, conversation_id: str) -> Tuple[str, str]:
        """The most recent user message and the assistant reply that followed it."""
        user_message = ""
        assistant_response = ""
        for msg in reversed(await self.list_messages(conversation_id, limit=MAX_EXCHANGE_SCAN)):
            if msg["role"] == "assistant" and not assistant_response:
                assistant_response = msg["content"] or ""
            elif msg["role"] == "user" and assistant_response:
                user_message = msg["content"] or ""
                break
        return user_message, assistant_response

    async def get_state(self, key: str) -> Optional[str]:
        row = await self.fetchone("SELECT value FROM kv_state WHERE key=?", (key,))
        return row["value"] if row else None

    async def set_state(self, key: str, value: str) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO kv_state(key, value, updated_at) VALUES (?,?,?)",
            (key, value, utc_now()),
        )
