import re
from typing import TYPE_CHECKING

from .schemas import ModelTier

if TYPE_CHECKING:
    from .config import AppSettings


LONG_MESSAGE_CHARS = 40

COMPLEX_KEYWORDS = [
    "strategy", "create", "generate", "analyze", "plan", "write", "build",
    "research", "post", "tweet", "search", "video", "image", "moltbook",
    "content", "schedule", "campaign", "draft", "compose", "summarize",
    "compare", "review", "explain", "describe", "help me", "how to",
    "make", "design", "find", "look up", "what is", "what are",
]

SIMPLE_PATTERNS = [
    re.compile(r"^(hi|hey|hello|yo|sup|howdy|hola|greetings)\b", re.IGNORECASE),
    re.compile(
        r"^(ok|okay|k|yep|yup|yes|no|nah|nope|sure|fine|cool|nice|great|thanks|thank you|ty|thx|bye|goodbye"
        r"|gn|gm|lol|haha|wow|omg)$",
        re.IGNORECASE,
    ),
    re.compile(r"^(good morning|good night|good evening|good afternoon)$", re.IGNORECASE),
]


def select_tier(message: str) -> ModelTier:
    """Pick the model tier for a message. Only obvious small talk gets the light tier."""
    trimmed = (message or "").strip()
    if len(trimmed) >= LONG_MESSAGE_CHARS:
        return "standard"
    lowered = trimmed.lower()
    if any(keyword in lowered for keyword in COMPLEX_KEYWORDS):
        return "standard"
    if any(pattern.search(trimmed) for pattern in SIMPLE_PATTERNS):
        return "light"
    return "standard"


def select_model(message: str, settings: "AppSettings") -> str:
    tier = select_tier(message)
    return settings.models.light if tier == "light" else settings.models.standard
