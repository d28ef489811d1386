"""Delivery dedup and per-conversation leases over the shared SQLite store.

Neither mechanism is a true mutex. A lease older than its TTL is treated as
absent so a turn that died without cleanup cannot block its conversation, at
the cost of occasionally letting two turns overlap.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import aiosqlite

from .db import utc_now

logger = logging.getLogger("uvicorn.error")


class DeliveryDeduplicator:
    def __init__(self, path: str):
        self.path = path

    async def mark_seen(self, event_id: str) -> bool:
        """Create the marker for an event. False means a prior delivery already created it."""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO dedup_markers(event_id, created_at) VALUES (?,?)",
                (event_id, utc_now()),
            )
            await db.commit()
            created = cursor.rowcount > 0
            await cursor.close()
        if not created:
            logger.info("Skipping duplicate event_id=%s", event_id)
        return created

    async def seen(self, event_id: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("SELECT 1 FROM dedup_markers WHERE event_id=?", (event_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return row is not None


@dataclass(frozen=True)
class ConversationLease:
    conversation_id: str
    token: str
    acquired_at: float


class ConversationLockManager:
    def __init__(self, path: str, ttl_s: float, clock: Callable[[], float] = time.time):
        self.path = path
        self.ttl_s = ttl_s
        self.clock = clock

    async def acquire(self, conversation_id: str) -> Optional[ConversationLease]:
        now = self.clock()
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT acquired_at FROM conversation_locks WHERE conversation_id=?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row is not None:
                age = now - float(row["acquired_at"] or 0)
                if age < self.ttl_s:
                    await db.execute("ROLLBACK")
                    logger.info(
                        "Conversation %s already processing (locked %.1fs ago), skipping", conversation_id, age
                    )
                    return None
                logger.warning("Conversation %s lock is stale (%.1fs old); taking over", conversation_id, age)
            lease = ConversationLease(conversation_id=conversation_id, token=uuid.uuid4().hex, acquired_at=now)
            await db.execute(
                "INSERT OR REPLACE INTO conversation_locks(conversation_id, token, acquired_at) VALUES (?,?,?)",
                (conversation_id, lease.token, lease.acquired_at),
            )
            await db.commit()
        return lease

    async def renew(self, lease: ConversationLease) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "UPDATE conversation_locks SET acquired_at=? WHERE conversation_id=? AND token=?",
                (self.clock(), lease.conversation_id, lease.token),
            )
            await db.commit()
            renewed = cursor.rowcount > 0
            await cursor.close()
        return renewed

    async def release(self, lease: ConversationLease) -> None:
        # Only the holder's own row is removed; a takeover after expiry keeps its lock.
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "DELETE FROM conversation_locks WHERE conversation_id=? AND token=?",
                (lease.conversation_id, lease.token),
            )
            await db.commit()

    async def is_locked(self, conversation_id: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT acquired_at FROM conversation_locks WHERE conversation_id=?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            return False
        return self.clock() - float(row[0] or 0) < self.ttl_s

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[Optional[ConversationLease]]:
        lease = await self.acquire(conversation_id)
        try:
            yield lease
        finally:
            if lease is not None:
                try:
                    await self.release(lease)
                except Exception as exc:
                    logger.warning("Failed to release lock for %s: %s", conversation_id, exc)
