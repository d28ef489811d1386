"""Tool registration and dispatch.

The registry is a plain object built once at startup and handed to every
component that needs to resolve a tool by name.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .schemas import ToolDefinition, ToolExecutionResult, ToolUseRequest

if TYPE_CHECKING:
    from .config import AppSettings
    from .confirmation import ConfirmationGate
    from .db import Database

logger = logging.getLogger("uvicorn.error")


@dataclass
class ToolContext:
    settings: "AppSettings"
    db: "Database"
    conversation_id: str
    services: Dict[str, Any] = field(default_factory=dict)


ToolExecutor = Callable[[Dict[str, Any], ToolContext], Awaitable[ToolExecutionResult]]
Registrar = Callable[["ToolRegistry"], None]


@dataclass(frozen=True)
class RegisteredTool:
    definition: ToolDefinition
    execute: ToolExecutor
    requires_confirmation: bool = False


@dataclass
class ToolExecutionOutput:
    result: ToolExecutionResult
    was_confirmation_gated: bool = False
    pending_action_id: Optional[str] = None


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, RegisteredTool] = {}
        self.initialized = False

    def register(
        self,
        definition: ToolDefinition,
        execute: ToolExecutor,
        requires_confirmation: bool = False,
    ) -> None:
        # Re-registering a name replaces the previous entry without complaint.
        self._tools[definition.name] = RegisteredTool(
            definition=definition,
            execute=execute,
            requires_confirmation=requires_confirmation,
        )
        logger.debug("Registered tool: %s (gated=%s)", definition.name, requires_confirmation)

    def initialize(self, registrars: Iterable[Registrar]) -> None:
        if self.initialized:
            return
        self.initialized = True
        for registrar in registrars:
            registrar(self)

    def lookup(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def list_all(self) -> List[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def execute_direct(
        self, name: str, tool_input: Dict[str, Any], ctx: ToolContext
    ) -> ToolExecutionResult:
        """Run a tool's executor, bypassing the confirmation gate."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolExecutionResult(result=f"Unknown tool: {name}", is_error=True)
        try:
            return await tool.execute(tool_input, ctx)
        except Exception as exc:
            logger.warning("Tool %s raised in conversation %s: %s", name, ctx.conversation_id, exc)
            return ToolExecutionResult(result=f"Tool error: {exc}", is_error=True)


class ToolDispatcher:
    """Routes model tool requests through the registry and the confirmation gate."""

    def __init__(self, registry: ToolRegistry, gate: "ConfirmationGate"):
        self.registry = registry
        self.gate = gate

    async def dispatch(self, request: ToolUseRequest, ctx: ToolContext) -> ToolExecutionOutput:
        tool = self.registry.lookup(request.name)
        if tool is None:
            return ToolExecutionOutput(
                result=ToolExecutionResult(result=f"Unknown tool: {request.name}", is_error=True)
            )
        if tool.requires_confirmation:
            return await self.gate.propose(ctx.conversation_id, request.name, request.input)
        result = await self.registry.execute_direct(request.name, request.input, ctx)
        return ToolExecutionOutput(result=result)
