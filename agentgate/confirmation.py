"""Confirmation gate for side-effecting tools.

A gated tool request is never executed when the model asks for it. Instead a
pending action is persisted and the user has to approve or reject it through a
follow-up command. Each pending action ends in exactly one of three ways:
committed (executed once), aborted, or expired.

Commit deletes the record before running the tool, so when two approvals race
only the one whose delete lands executes; the other sees nothing to approve.
"""

import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from .registry import ToolContext, ToolExecutionOutput, ToolRegistry
from .schemas import GateOutcome, PendingAction, ToolExecutionResult

logger = logging.getLogger("uvicorn.error")


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


def summarize_input(tool_input: Dict[str, Any]) -> str:
    if tool_input.get("text"):
        return f'"{str(tool_input["text"])[:100]}"'
    if tool_input.get("content"):
        return f'"{str(tool_input["content"])[:100]}"'
    if tool_input.get("title"):
        return f'title: "{str(tool_input["title"])[:80]}"'
    keys = ", ".join(tool_input.keys())
    return f"params: {keys}" if keys else "(no parameters)"


class PendingActionStore:
    """Persistent pending actions keyed by id, grouped by conversation."""

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock

    def _row_to_action(self, row: aiosqlite.Row) -> PendingAction:
        return PendingAction(
            id=row["id"],
            conversation_id=row["conversation_id"],
            tool_name=row["tool_name"],
            input=_json_loads(row["input_json"], {}),
            created_at=float(row["created_at"]),
            expires_at=float(row["expires_at"]),
        )

    async def save(self, action: PendingAction) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO pending_actions(id, conversation_id, tool_name, input_json, created_at, expires_at) "
                "VALUES (?,?,?,?,?,?)",
                (
                    action.id,
                    action.conversation_id,
                    action.tool_name,
                    json.dumps(action.input, ensure_ascii=True),
                    action.created_at,
                    action.expires_at,
                ),
            )
            await db.commit()

    async def get(self, action_id: str) -> Optional[PendingAction]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM pending_actions WHERE id=?", (action_id,))
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        action = self._row_to_action(row)
        if action.is_expired(self.clock()):
            await self.delete(action.id)
            return None
        return action

    async def list_for_conversation(self, conversation_id: str) -> List[PendingAction]:
        """Live actions for a conversation, newest first. Expired ones are purged on the way."""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM pending_actions WHERE conversation_id=? ORDER BY created_at DESC, rowid DESC",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        now = self.clock()
        actions: List[PendingAction] = []
        for row in rows:
            action = self._row_to_action(row)
            if action.is_expired(now):
                await self.delete(action.id)
                continue
            actions.append(action)
        return actions

    async def delete(self, action_id: str) -> bool:
        """Remove an action. Returns True only for the caller whose delete took effect."""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM pending_actions WHERE id=?", (action_id,))
            await db.commit()
            deleted = cursor.rowcount > 0
            await cursor.close()
        return deleted

    async def clean_expired(self) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM pending_actions WHERE expires_at < ?", (self.clock(),))
            await db.commit()
            cleaned = cursor.rowcount
            await cursor.close()
        return cleaned


class ConfirmationGate:
    def __init__(
        self,
        store: PendingActionStore,
        registry: ToolRegistry,
        ttl_s: float,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.ttl_s = ttl_s
        self.clock = clock

    async def propose(
        self, conversation_id: str, tool_name: str, tool_input: Dict[str, Any]
    ) -> ToolExecutionOutput:
        now = self.clock()
        action = PendingAction(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            tool_name=tool_name,
            input=dict(tool_input or {}),
            created_at=now,
            expires_at=now + self.ttl_s,
        )
        await self.store.save(action)
        logger.info("Queued %s for approval in conversation %s (id=%s)", tool_name, conversation_id, action.id)
        prompt = (
            "This action requires user approval. I've queued it for confirmation. "
            f"Action: {tool_name}: {summarize_input(action.input)}. "
            "Tell the user to reply /approve to confirm or /reject to cancel."
        )
        return ToolExecutionOutput(
            result=ToolExecutionResult(result=prompt),
            was_confirmation_gated=True,
            pending_action_id=action.id,
        )

    async def latest(self, conversation_id: str) -> Optional[PendingAction]:
        # Several outstanding actions cannot be targeted individually; the newest one wins.
        actions = await self.store.list_for_conversation(conversation_id)
        return actions[0] if actions else None

    async def commit(self, action: PendingAction, ctx: ToolContext) -> Optional[ToolExecutionResult]:
        """Execute a pending action once. Returns None when another caller already consumed it."""
        if not await self.store.delete(action.id):
            return None
        return await self.registry.execute_direct(action.tool_name, action.input, ctx)

    async def abort(self, action: PendingAction) -> bool:
        return await self.store.delete(action.id)

    async def approve(self, ctx: ToolContext) -> GateOutcome:
        action = await self.latest(ctx.conversation_id)
        if action is None:
            return GateOutcome(status="empty", message="No pending actions to approve.")
        result = await self.commit(action, ctx)
        if result is None:
            return GateOutcome(status="empty", message="No pending actions to approve.")
        logger.info(
            "Approved %s in conversation %s (error=%s)", action.tool_name, ctx.conversation_id, result.is_error
        )
        if result.is_error:
            message = f"Action failed: {result.result}"
        else:
            message = f"Action approved and executed!\n\n{result.result}"
        return GateOutcome(status="executed", message=message, action=action, result=result)

    async def reject(self, conversation_id: str) -> GateOutcome:
        action = await self.latest(conversation_id)
        if action is None or not await self.abort(action):
            return GateOutcome(status="empty", message="No pending actions to reject.")
        logger.info("Rejected %s in conversation %s", action.tool_name, conversation_id)
        return GateOutcome(status="rejected", message=f"Action cancelled: {action.tool_name}", action=action)
