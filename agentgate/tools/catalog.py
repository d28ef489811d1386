from typing import List

from ..registry import Registrar, ToolRegistry
from .learning import register_learning_tools
from .skills import register_skill_tools
from .web import register_web_tools

DEFAULT_REGISTRARS: List[Registrar] = [register_skill_tools, register_learning_tools, register_web_tools]


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.initialize(DEFAULT_REGISTRARS)
    return registry
