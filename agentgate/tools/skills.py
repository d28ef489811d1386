"""Skill and soul tools.

Skills are named playbook documents with a short version history; the soul is
the assistant's base system prompt. Reading is free, writing goes through the
confirmation gate.
"""

from typing import Any, Dict

from ..prompt import SOUL_KEY, load_soul
from ..registry import ToolContext, ToolRegistry
from ..schemas import ToolDefinition, ToolExecutionResult


async def list_skills(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    skills = await ctx.db.list_skills()
    if not skills:
        return ToolExecutionResult(result="No skills found.")
    lines = [f"- **{s['name']}**: {s['description'] or '(no description)'}" for s in skills]
    return ToolExecutionResult(result="\n".join(lines))


async def read_skill(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    name = str(tool_input.get("name") or "").strip()
    skill = await ctx.db.get_skill(name) if name else None
    if not skill:
        return ToolExecutionResult(result=f'Skill "{name}" not found.', is_error=True)
    return ToolExecutionResult(result=skill["content"] or "")


async def update_skill(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    name = str(tool_input.get("name") or "").strip()
    content = str(tool_input.get("content") or "")
    if not name or not content.strip():
        return ToolExecutionResult(result="Both name and content are required.", is_error=True)
    existing = await ctx.db.get_skill(name)
    description = str(tool_input.get("description") or (existing or {}).get("description") or "")
    if existing:
        await ctx.db.save_skill_version(name, existing["content"] or "")
    await ctx.db.save_skill(name, content, description)
    if existing:
        return ToolExecutionResult(result=f'Skill "{name}" updated. Previous version saved to history.')
    return ToolExecutionResult(result=f'Skill "{name}" created.')


async def read_soul(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    return ToolExecutionResult(result=await load_soul(ctx.db, ctx.settings))


async def update_soul(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    content = str(tool_input.get("content") or "")
    if not content.strip():
        return ToolExecutionResult(result="Soul content cannot be empty.", is_error=True)
    await ctx.db.set_state(SOUL_KEY, content)
    return ToolExecutionResult(result="Soul updated. Changes apply from the next message.")


def register_skill_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolDefinition(
            name="list_skills",
            description="List all your skills with their names and descriptions.",
            input_schema={"type": "object", "properties": {}},
        ),
        list_skills,
    )
    registry.register(
        ToolDefinition(
            name="read_skill",
            description="Read the full content of a specific skill document.",
            input_schema={
                "type": "object",
                "properties": {"name": {"type": "string", "description": "The name of the skill to read"}},
                "required": ["name"],
            },
        ),
        read_skill,
    )
    registry.register(
        ToolDefinition(
            name="update_skill",
            description="Create or replace a skill document. Requires user approval.",
            input_schema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Skill name"},
                    "content": {"type": "string", "description": "Full markdown content"},
                    "description": {"type": "string", "description": "One-line summary"},
                },
                "required": ["name", "content"],
            },
        ),
        update_skill,
        requires_confirmation=True,
    )
    registry.register(
        ToolDefinition(
            name="read_soul",
            description="Read your current soul (base personality and instructions).",
            input_schema={"type": "object", "properties": {}},
        ),
        read_soul,
    )
    registry.register(
        ToolDefinition(
            name="update_soul",
            description="Replace your soul document. Requires user approval.",
            input_schema={
                "type": "object",
                "properties": {"content": {"type": "string", "description": "Full new soul content"}},
                "required": ["content"],
            },
        ),
        update_soul,
        requires_confirmation=True,
    )
