from typing import Dict, Iterable, List, Optional, Sequence

from .registry import ToolRegistry
from .schemas import ToolDefinition


CORE_TOOLS: Sequence[str] = ("web_search", "fetch_url", "send_media_to_chat", "list_skills")

TOOL_CATEGORIES: Dict[str, Dict[str, List[str]]] = {
    "skills": {
        "keywords": ["skill", "soul", "playbook", "personality", "remember", "learn"],
        "tools": ["read_skill", "update_skill", "read_soul", "update_soul"],
    },
    "learning": {
        "keywords": ["feedback", "improve", "lesson"],
        "tools": ["get_feedback_summary", "analyze_and_improve"],
    },
    "twitter": {
        "keywords": ["tweet", "twitter", "x.com", "mentions", "retweet"],
        "tools": ["post_tweet", "reply_to_tweet", "delete_tweet", "get_mentions", "get_tweet_analytics"],
    },
    "linkedin": {
        "keywords": ["linkedin"],
        "tools": [
            "get_linkedin_profile",
            "get_linkedin_analytics",
            "create_linkedin_post",
            "delete_linkedin_post",
        ],
    },
    "youtube": {
        "keywords": ["youtube", "channel", "subscriber"],
        "tools": [
            "get_channel_stats",
            "list_youtube_videos",
            "get_video_stats",
            "update_youtube_video",
            "reply_to_youtube_comment",
        ],
    },
    "instagram": {
        "keywords": ["instagram", "insta", "reel"],
        "tools": [
            "get_instagram_profile",
            "get_instagram_media",
            "get_instagram_insights",
            "create_instagram_post",
            "reply_to_instagram_comment",
        ],
    },
    "moltbook": {
        "keywords": ["moltbook", "molt", "submolt", "upvote"],
        "tools": [
            "moltbook_get_feed",
            "moltbook_get_posts",
            "moltbook_create_post",
            "moltbook_comment",
            "moltbook_upvote",
            "moltbook_search",
            "moltbook_check_dms",
            "moltbook_get_post",
            "moltbook_list_submolts",
        ],
    },
    "media": {
        "keywords": ["image", "picture", "photo", "graphic", "video", "draw", "render", "illustration"],
        "tools": ["generate_graphic", "generate_image", "generate_image_fast", "generate_video"],
    },
    "polymarket": {
        "keywords": ["polymarket", "prediction market", "odds", "portfolio", "wager"],
        "tools": [
            "polymarket_scan_markets",
            "polymarket_search_markets",
            "polymarket_get_market",
            "polymarket_get_positions",
            "polymarket_get_portfolio",
            "polymarket_get_balance",
            "polymarket_get_orders",
        ],
    },
}


class RelevanceFilter:
    """Narrows the advertised tool set to what the recent conversation needs.

    The core tools are always offered. A category is added when one of its
    keywords appears in the context text, and any category a previously used
    tool belongs to stays available so multi-turn work keeps its siblings.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        categories: Optional[Dict[str, Dict[str, List[str]]]] = None,
        core_tools: Iterable[str] = CORE_TOOLS,
    ):
        self.registry = registry
        self.categories = categories if categories is not None else TOOL_CATEGORIES
        self.core_tools = list(core_tools)
        self._category_of: Dict[str, str] = {}
        for category, rule in self.categories.items():
            for name in rule.get("tools", []):
                self._category_of.setdefault(name, category)

    def category_for(self, tool_name: str) -> Optional[str]:
        return self._category_of.get(tool_name)

    def selected_names(self, context_text: str, previously_used: Iterable[str] = ()) -> List[str]:
        lowered = (context_text or "").lower()
        wanted: List[str] = list(self.core_tools)
        active = set()
        for category, rule in self.categories.items():
            if any(keyword.lower() in lowered for keyword in rule.get("keywords", [])):
                active.add(category)
        for name in previously_used:
            wanted.append(name)
            category = self._category_of.get(name)
            if category:
                active.add(category)
        for category in self.categories:
            if category in active:
                wanted.extend(self.categories[category].get("tools", []))
        seen = set()
        ordered = []
        for name in wanted:
            if name not in seen:
                seen.add(name)
                ordered.append(name)
        return ordered

    def select(self, context_text: str, previously_used: Iterable[str] = ()) -> List[ToolDefinition]:
        definitions = []
        for name in self.selected_names(context_text, previously_used):
            tool = self.registry.lookup(name)
            if tool is not None:
                definitions.append(tool.definition)
        return definitions
