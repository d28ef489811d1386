"""Feedback review tools used for self-improvement."""

from datetime import datetime, timezone
from typing import Any, Dict, List

from ..registry import ToolContext, ToolRegistry
from ..schemas import ToolDefinition, ToolExecutionResult

RECENT_NEGATIVE_LIMIT = 10
ANALYSIS_NEGATIVE_LIMIT = 15


def summarize_feedback(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    negative = [e for e in entries if e.get("rating") == "negative"]
    return {
        "total": len(entries),
        "positive": sum(1 for e in entries if e.get("rating") == "positive"),
        "negative": len(negative),
        "recent_negative": negative[:RECENT_NEGATIVE_LIMIT],
    }


def _timestamp(value: Any) -> str:
    return datetime.fromtimestamp(float(value or 0), tz=timezone.utc).isoformat().replace("+00:00", "Z")


async def get_feedback_summary(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    summary = summarize_feedback(await ctx.db.list_feedback())
    if summary["total"] == 0:
        return ToolExecutionResult(result="No feedback has been recorded yet.")
    text = (
        f"Feedback Summary:\n- Total: {summary['total']}\n"
        f"- Positive: {summary['positive']}\n- Negative: {summary['negative']}\n"
    )
    if summary["recent_negative"]:
        text += "\nRecent negative feedback:\n"
        for entry in summary["recent_negative"]:
            text += (
                f"\n---\nUser said: \"{entry['user_message'] or ''}\"\n"
                f"You responded: \"{(entry['assistant_response'] or '')[:200]}...\"\n"
            )
            if entry.get("feedback_text"):
                text += f"Feedback: \"{entry['feedback_text']}\"\n"
            text += f"Time: {_timestamp(entry['created_at'])}\n"
    return ToolExecutionResult(result=text)


async def analyze_and_improve(tool_input: Dict[str, Any], ctx: ToolContext) -> ToolExecutionResult:
    entries = await ctx.db.list_feedback()
    if not entries:
        return ToolExecutionResult(result="No feedback available for analysis.")
    summary = summarize_feedback(entries)
    focus_area = str(tool_input.get("focus_area") or "").strip()
    analysis = (
        f"Analysis of {summary['total']} feedback entries:\n"
        f"- {summary['positive']} positive, {summary['negative']} negative\n"
    )
    if focus_area:
        analysis += f"- Focus area requested: {focus_area}\n"
    negative = [e for e in entries if e.get("rating") == "negative"][:ANALYSIS_NEGATIVE_LIMIT]
    if negative:
        analysis += "\nNegative feedback patterns:\n"
        for entry in negative:
            analysis += (
                f"\nUser: \"{entry['user_message'] or ''}\"\n"
                f"Response: \"{(entry['assistant_response'] or '')[:300]}\"\n"
            )
            if entry.get("feedback_text"):
                analysis += f"Why: \"{entry['feedback_text']}\"\n"
    analysis += (
        "\nBased on this data, consider using list_skills and read_skill to review relevant skills, "
        "then update_skill to make improvements."
    )
    return ToolExecutionResult(result=analysis)


def register_learning_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolDefinition(
            name="get_feedback_summary",
            description=(
                "Get a summary of user feedback: total counts, positive/negative breakdown, and recent "
                "negative feedback details. Use this to understand how you are performing."
            ),
            input_schema={"type": "object", "properties": {}},
        ),
        get_feedback_summary,
    )
    registry.register(
        ToolDefinition(
            name="analyze_and_improve",
            description=(
                "Analyze recent feedback and identify areas for improvement. After analysis, use "
                "update_skill to make improvements (which requires user confirmation)."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "focus_area": {
                        "type": "string",
                        "description": 'Optional area to focus on (e.g. "tone", "accuracy")',
                    }
                },
            },
        ),
        analyze_and_improve,
    )
