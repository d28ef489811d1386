import logging
import time
from dataclasses import dataclass
from typing import Dict

from .handler import Services
from .orchestrator import run_tool_loop
from .prompt import build_system_prompt
from .schemas import ToolUseRequest, TurnResult

logger = logging.getLogger("uvicorn.error")

SCHEDULED_CONVERSATION_PREFIX = "scheduled:"


@dataclass(frozen=True)
class ScheduledTask:
    name: str
    prompt: str
    tool_keywords: str
    always_notify: bool = False


TASKS: Dict[str, ScheduledTask] = {
    "morning": ScheduledTask(
        name="morning",
        prompt=(
            "You are running the morning routine. Do the following:\n"
            "1. Search the web for news relevant to your skills and audience.\n"
            "2. Review your skills for anything that is out of date.\n"
            "3. Propose today's priorities.\n\n"
            "End with a concise briefing. If there is nothing notable, say \"nothing notable\"."
        ),
        tool_keywords="web search research skill content",
    ),
    "evening": ScheduledTask(
        name="evening",
        prompt=(
            "You are running the evening routine. Review today's activity, note what worked, "
            "and compile a short daily summary with suggestions for tomorrow."
        ),
        tool_keywords="skill content post",
        always_notify=True,
    ),
    "weekly": ScheduledTask(
        name="weekly",
        prompt=(
            "You are running the weekly strategy review. Read the relevant strategy skills, research "
            "what is trending in your space, evaluate what worked this week and propose next week's plan."
        ),
        tool_keywords="web search research skill strategy content",
        always_notify=True,
    ),
}


def is_noop(text: str) -> bool:
    lowered = text.lower()
    return "nothing notable" in lowered or "nothing noteworthy" in lowered


async def run_scheduled_task(name: str, services: Services) -> TurnResult:
    """Run a background task. Raises KeyError for unknown task names."""
    task = TASKS[name]
    settings = services.settings
    conversation_id = f"{SCHEDULED_CONVERSATION_PREFIX}{task.name}"
    started = time.monotonic()
    system_prompt = await build_system_prompt(services.db, settings)
    tools = services.relevance.select(task.tool_keywords)
    ctx = services.tool_context(conversation_id)

    async def execute(request: ToolUseRequest):
        return await services.dispatcher.dispatch(request, ctx)

    logger.info("Scheduled task %s: model=%s tools=%s", task.name, settings.models.standard, len(tools))
    result = await run_tool_loop(
        services.llm,
        system_prompt=system_prompt,
        messages=[{"role": "user", "content": task.prompt}],
        model=settings.models.standard,
        tools=tools or None,
        execute_tool=execute if tools else None,
        max_iterations=settings.max_tool_iterations,
        wall_clock_timeout_s=settings.wall_clock_timeout_s,
        pacing_delay_s=settings.pacing_delay_s,
        max_tokens=settings.max_tokens,
        retry_delays=settings.background_retry_delays_s,
    )
    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Scheduled task %s complete: tool_calls=%s iterations=%s duration=%sms",
        task.name,
        len(result.tool_calls),
        result.iterations,
        duration_ms,
    )
    await services.db.add_tool_log(
        conversation_id,
        {
            "task": task.name,
            "model": settings.models.standard,
            "tool_count": len(tools),
            "tool_calls": [call.model_dump() for call in result.tool_calls],
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
            "iterations": result.iterations,
            "duration_ms": duration_ms,
            "response_text": result.text,
            "notify": task.always_notify or not is_noop(result.text),
        },
    )
    return result
