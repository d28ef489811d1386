from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import AppSettings
    from .db import Database

SOUL_KEY = "soul"


async def load_soul(db: "Database", settings: "AppSettings") -> str:
    return await db.get_state(SOUL_KEY) or settings.soul


async def build_system_prompt(db: "Database", settings: "AppSettings") -> str:
    soul = await load_soul(db, settings)
    skills = await db.list_skills()
    if not skills:
        return soul
    # Only the index goes in the prompt; read_skill loads full content on demand.
    index = "\n".join(f"- **{s['name']}**: {s['description'] or '(no description)'}" for s in skills)
    return (
        f"{soul}\n\n---\n# Available Skills\n\n"
        f"You have {len(skills)} skill documents loaded. Use `read_skill` to load a skill's full "
        "content before executing a complex task.\n\n"
        f"{index}\n\n"
        "## Tool Use Efficiency\n"
        "- Call `read_skill` before using platform-specific tools.\n"
        "- Batch related operations in a single response when possible.\n"
        "- Never repeat a tool call with identical parameters.\n"
        "- Keep tool outputs concise.\n"
        "- If a task doesn't need tools, don't use them."
    )
