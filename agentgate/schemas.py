from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["user", "assistant"]
ModelTier = Literal["light", "standard"]
GateStatus = Literal["executed", "rejected", "empty"]
EventStatus = Literal["completed", "duplicate", "busy", "command", "error", "unauthorized"]
FeedbackRating = Literal["positive", "negative"]


class ToolDefinition(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    model_config = {"frozen": True}


class ToolUseRequest(BaseModel):
    """A single tool invocation requested by the model."""

    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_block(cls, block: Dict[str, Any]) -> "ToolUseRequest":
        raw_input = block.get("input")
        return cls(
            id=str(block.get("id") or ""),
            name=str(block.get("name") or ""),
            input=raw_input if isinstance(raw_input, dict) else {},
        )


class ToolExecutionResult(BaseModel):
    result: str
    is_error: bool = False


class ToolCallRecord(BaseModel):
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    result: str
    is_error: bool = False
    duration_ms: int = 0
    was_confirmation_gated: bool = False

    model_config = {"frozen": True}


class PendingAction(BaseModel):
    id: str
    conversation_id: str
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class PendingActionInfo(BaseModel):
    id: str
    tool_name: str
    description: str


class TurnResult(BaseModel):
    text: str
    model: Optional[str] = None
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    iterations: int = 0
    pending_actions: List[PendingActionInfo] = Field(default_factory=list)
    # Set when the iteration cap or wall-clock deadline ended the turn.
    exhausted: bool = False


class ConversationMessage(BaseModel):
    role: Role
    content: str
    timestamp: float


class InboundEvent(BaseModel):
    event_id: str
    conversation_id: str
    text: Optional[str] = None
    user_id: Optional[str] = None

    model_config = {"coerce_numbers_to_str": True}


class EventOutcome(BaseModel):
    status: EventStatus
    reply: Optional[str] = None
    model: Optional[str] = None
    result: Optional[TurnResult] = None


class GateOutcome(BaseModel):
    status: GateStatus
    message: str
    action: Optional[PendingAction] = None
    result: Optional[ToolExecutionResult] = None


class FeedbackRequest(BaseModel):
    rating: FeedbackRating
    text: Optional[str] = None
