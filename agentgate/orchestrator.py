"""Multi-turn tool-use loop against the model service.

Each iteration sends the running message list (plus tool definitions) to the
model, keeps any text it returned as the candidate answer, and, when the model
asks for tools, runs them one after another in request order before looping.
Running out of iterations or wall-clock time is a normal outcome: the loop
returns the best text it has and flags the result as exhausted.

The deadline is only checked between iterations; an in-flight model request
or tool call is never interrupted.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from .registry import ToolExecutionOutput
from .schemas import PendingActionInfo, ToolCallRecord, ToolDefinition, ToolUseRequest, TurnResult

logger = logging.getLogger("uvicorn.error")

NO_RESPONSE_TEXT = "(No response)"
EXHAUSTED_TEXT = "I ran out of time processing your request. Here is what I completed so far."
TOOL_USE_STOP_REASON = "tool_use"

ToolExecuteCallback = Callable[[ToolUseRequest], Awaitable[ToolExecutionOutput]]
IterationCallback = Callable[[], Awaitable[None]]


class MessageClient(Protocol):
    async def create_message(
        self,
        *,
        system: str,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
        retry_delays: Optional[Sequence[float]] = None,
    ) -> Dict[str, Any]: ...


def extract_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    parts = [
        str(block.get("text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(part for part in parts if part)


def tool_use_requests(content: Any) -> List[ToolUseRequest]:
    if not isinstance(content, list):
        return []
    return [
        ToolUseRequest.from_block(block)
        for block in content
        if isinstance(block, dict) and block.get("type") == "tool_use"
    ]


async def run_tool_loop(
    client: MessageClient,
    *,
    system_prompt: str,
    messages: List[Dict[str, Any]],
    model: Optional[str] = None,
    tools: Optional[List[ToolDefinition]] = None,
    execute_tool: Optional[ToolExecuteCallback] = None,
    on_iteration: Optional[IterationCallback] = None,
    max_iterations: int = 10,
    wall_clock_timeout_s: float = 120.0,
    pacing_delay_s: float = 3.0,
    max_tokens: Optional[int] = None,
    retry_delays: Optional[Sequence[float]] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> TurnResult:
    tool_payload = [tool.model_dump() for tool in tools] if tools else None
    conversation: List[Dict[str, Any]] = list(messages)
    tool_calls: List[ToolCallRecord] = []
    pending_actions: List[PendingActionInfo] = []
    input_tokens = 0
    output_tokens = 0
    iterations = 0
    last_text = ""
    started = clock()

    while iterations < max_iterations:
        elapsed = clock() - started
        if elapsed > wall_clock_timeout_s:
            logger.info("Wall clock timeout after %.1fs and %s iterations", elapsed, iterations)
            break

        if iterations > 0 and pacing_delay_s > 0:
            await sleep(pacing_delay_s)

        iterations += 1
        data = await client.create_message(
            system=system_prompt,
            messages=conversation,
            model=model,
            tools=tool_payload,
            max_tokens=max_tokens,
            retry_delays=retry_delays,
        )
        content = data.get("content") or []
        stop_reason = data.get("stop_reason")
        logger.info(
            "Model iteration=%s model=%s stop_reason=%s tools=%s",
            iterations,
            model,
            stop_reason,
            len(tool_payload or []),
        )

        usage = data.get("usage") or {}
        input_tokens += int(usage.get("input_tokens") or 0)
        output_tokens += int(usage.get("output_tokens") or 0)

        text = extract_text(content)
        if text:
            last_text = text

        if stop_reason != TOOL_USE_STOP_REASON or execute_tool is None:
            return TurnResult(
                text=last_text or NO_RESPONSE_TEXT,
                model=model,
                tool_calls=tool_calls,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                iterations=iterations,
                pending_actions=pending_actions,
            )

        conversation.append({"role": "assistant", "content": content})

        results: List[Dict[str, Any]] = []
        for request in tool_use_requests(content):
            start = time.monotonic()
            output = await execute_tool(request)
            duration_ms = int((time.monotonic() - start) * 1000)
            tool_calls.append(
                ToolCallRecord(
                    tool_name=request.name,
                    input=request.input,
                    result=output.result.result,
                    is_error=output.result.is_error,
                    duration_ms=duration_ms,
                    was_confirmation_gated=output.was_confirmation_gated,
                )
            )
            if output.was_confirmation_gated and output.pending_action_id:
                pending_actions.append(
                    PendingActionInfo(
                        id=output.pending_action_id,
                        tool_name=request.name,
                        description=output.result.result,
                    )
                )
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": request.id,
                    "content": output.result.result,
                    "is_error": output.result.is_error,
                }
            )

        conversation.append({"role": "user", "content": results})

        if on_iteration is not None:
            await on_iteration()

    return TurnResult(
        text=last_text or EXHAUSTED_TEXT,
        model=model,
        tool_calls=tool_calls,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        iterations=iterations,
        pending_actions=pending_actions,
        exhausted=True,
    )
