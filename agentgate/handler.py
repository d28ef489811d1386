"""Inbound event handling.

Events from senders outside the allowlist are refused outright. Anything else
is deduplicated first, then either handled as a chat command or run as a full
turn under the conversation's lease. The lease is released on every exit path.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .concurrency import ConversationLease, ConversationLockManager, DeliveryDeduplicator
from .config import AppSettings
from .confirmation import ConfirmationGate
from .db import Database
from .llm import ModelServiceError
from .model_router import select_model
from .orchestrator import MessageClient, run_tool_loop
from .prompt import build_system_prompt
from .registry import ToolContext, ToolDispatcher, ToolRegistry
from .relevance import RelevanceFilter
from .schemas import EventOutcome, InboundEvent, ToolUseRequest, TurnResult

logger = logging.getLogger("uvicorn.error")

HELP_TEXT = (
    "Available commands:\n"
    "/start - Welcome message\n"
    "/clear - Reset conversation history\n"
    "/model - Show the AI models in use\n"
    "/approve - Approve the most recent pending action\n"
    "/reject - Reject the most recent pending action\n"
    "/feedback <text> - Give feedback on my last response\n"
    "/help - Show this help"
)

NOT_AUTHORIZED_TEXT = "Sorry, you're not authorized to use this bot."


@dataclass
class Services:
    settings: AppSettings
    db: Database
    registry: ToolRegistry
    gate: ConfirmationGate
    dispatcher: ToolDispatcher
    relevance: RelevanceFilter
    dedup: DeliveryDeduplicator
    locks: ConversationLockManager
    llm: MessageClient
    extras: Dict[str, Any] = field(default_factory=dict)

    def tool_context(self, conversation_id: str) -> ToolContext:
        return ToolContext(
            settings=self.settings,
            db=self.db,
            conversation_id=conversation_id,
            services=self.extras,
        )


def recent_context_text(messages: List[Dict[str, Any]], count: int) -> str:
    """Text of the last few plain messages, so follow-ups like "do it" still pull the right tools."""
    return " ".join(m["content"] for m in messages[-count:] if isinstance(m.get("content"), str))


async def run_turn(
    services: Services,
    conversation_id: str,
    text: str,
    lease: Optional[ConversationLease] = None,
) -> TurnResult:
    settings = services.settings
    db = services.db
    system_prompt = await build_system_prompt(db, settings)
    context = await db.context_messages(
        conversation_id, settings.max_history_messages, settings.max_context_chars
    )
    context.append({"role": "user", "content": text})
    model = select_model(text, settings)
    previously_used = await db.recent_tool_names(conversation_id)
    tools = services.relevance.select(
        recent_context_text(context, settings.recent_context_messages), previously_used
    )
    ctx = services.tool_context(conversation_id)

    async def execute(request: ToolUseRequest):
        return await services.dispatcher.dispatch(request, ctx)

    async def on_iteration() -> None:
        if lease is not None:
            await services.locks.renew(lease)

    logger.info(
        "Turn start conversation=%s model=%s tools=%s history=%s",
        conversation_id,
        model,
        len(tools),
        len(context),
    )
    result = await run_tool_loop(
        services.llm,
        system_prompt=system_prompt,
        messages=context,
        model=model,
        tools=tools or None,
        execute_tool=execute if tools else None,
        on_iteration=on_iteration,
        max_iterations=settings.max_tool_iterations,
        wall_clock_timeout_s=settings.wall_clock_timeout_s,
        pacing_delay_s=settings.pacing_delay_s,
        max_tokens=settings.max_tokens,
        retry_delays=settings.retry_delays_s,
    )
    logger.info(
        "Turn done conversation=%s tool_calls=%s iterations=%s input_tokens=%s output_tokens=%s exhausted=%s",
        conversation_id,
        len(result.tool_calls),
        result.iterations,
        result.input_tokens,
        result.output_tokens,
        result.exhausted,
    )
    await db.add_tool_log(
        conversation_id,
        {
            "user_message": text,
            "model": result.model,
            "tool_count": len(tools),
            "system_prompt_length": len(system_prompt),
            "tool_calls": [call.model_dump() for call in result.tool_calls],
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
            "iterations": result.iterations,
            "exhausted": result.exhausted,
        },
    )
    now = time.time()
    await db.add_message(conversation_id, "user", text, timestamp=now)
    await db.add_message(conversation_id, "assistant", result.text, timestamp=now)
    return result


async def record_feedback(
    db: Database, conversation_id: str, rating: str, feedback_text: Optional[str] = None
) -> None:
    """Store a rating against the conversation's most recent exchange."""
    user_message, assistant_response = await db.last_exchange(conversation_id)
    await db.add_feedback(
        conversation_id,
        rating,
        user_message=user_message,
        assistant_response=assistant_response,
        feedback_text=feedback_text,
    )
    logger.info("Recorded %s feedback for conversation %s", rating, conversation_id)


async def handle_command(services: Services, conversation_id: str, text: str) -> str:
    command = text.split()[0].split("@")[0].lower()
    if command == "/start":
        return "Hi! I'm your personal AI assistant. Send me a message to get started.\n\n" + HELP_TEXT
    if command == "/help":
        return HELP_TEXT
    if command in ("/clear", "/reset"):
        await services.db.clear_conversation(conversation_id)
        return "Conversation cleared. Starting fresh!"
    if command == "/model":
        models = services.settings.models
        return f"Models: light={models.light}, standard={models.standard}"
    if command == "/approve":
        outcome = await services.gate.approve(services.tool_context(conversation_id))
        return outcome.message
    if command == "/reject":
        outcome = await services.gate.reject(conversation_id)
        return outcome.message
    if command == "/feedback":
        feedback_text = text[len(text.split()[0]):].strip()
        if not feedback_text:
            return "Usage: /feedback <your feedback text>"
        await record_feedback(services.db, conversation_id, "negative", feedback_text)
        return "Thanks for the feedback! I'll use it to improve."
    return f"Unknown command: {command}\nType /help for available commands."


async def process_event(event: InboundEvent, services: Services) -> EventOutcome:
    if not services.settings.is_user_allowed(event.user_id):
        logger.warning("Rejected event %s from unlisted user %s", event.event_id, event.user_id)
        return EventOutcome(status="unauthorized", reply=NOT_AUTHORIZED_TEXT)

    if not await services.dedup.mark_seen(event.event_id):
        return EventOutcome(status="duplicate")

    text = (event.text or "").strip()
    conversation_id = event.conversation_id
    if text.startswith("/"):
        reply = await handle_command(services, conversation_id, text)
        return EventOutcome(status="command", reply=reply)

    async with services.locks.hold(conversation_id) as lease:
        if lease is None:
            return EventOutcome(status="busy")
        try:
            result = await run_turn(services, conversation_id, text, lease=lease)
        except ModelServiceError as exc:
            logger.error("Turn failed for conversation %s: %s", conversation_id, exc)
            return EventOutcome(status="error", reply=f"Sorry, I encountered an error: {exc}")
    return EventOutcome(
        status="completed",
        reply=result.text,
        model=result.model,
        result=result,
    )
