import pytest

from agentgate.prompt import build_system_prompt
from tests.conftest import make_settings


@pytest.mark.asyncio
async def test_context_window_respects_message_limit(db):
    for i in range(6):
        await db.add_message("c1", "user" if i % 2 == 0 else "assistant", f"m{i}", timestamp=float(i))
    window = await db.context_messages("c1", max_messages=4, max_chars=1000)
    assert [m["content"] for m in window] == ["m2", "m3", "m4", "m5"]
    assert set(window[0].keys()) == {"role", "content"}


@pytest.mark.asyncio
async def test_context_window_drops_oldest_past_char_budget(db):
    await db.add_message("c1", "user", "a" * 60)
    await db.add_message("c1", "assistant", "b" * 30)
    await db.add_message("c1", "user", "c" * 30)
    window = await db.context_messages("c1", max_messages=50, max_chars=100)
    assert [m["content"][0] for m in window] == ["b", "c"]


@pytest.mark.asyncio
async def test_clear_conversation_is_scoped(db):
    await db.add_message("c1", "user", "one")
    await db.add_message("c2", "user", "two")
    await db.clear_conversation("c1")
    assert await db.list_messages("c1") == []
    assert len(await db.list_messages("c2")) == 1


@pytest.mark.asyncio
async def test_recent_tool_names_from_logs(db):
    await db.add_tool_log("c1", {"tool_calls": [{"tool_name": "web_search"}]})
    await db.add_tool_log("c1", {"tool_calls": [{"tool_name": "post_tweet"}, {"tool_name": "web_search"}]})
    await db.add_tool_log("c2", {"tool_calls": [{"tool_name": "generate_image"}]})
    assert await db.recent_tool_names("c1") == ["post_tweet", "web_search"]


@pytest.mark.asyncio
async def test_system_prompt_lists_skills(tmp_path, db):
    settings = make_settings(tmp_path, soul="You are a test bot.")
    assert await build_system_prompt(db, settings) == "You are a test bot."
    await db.save_skill("voice", "Be brief.", "Tone guide")
    prompt = await build_system_prompt(db, settings)
    assert prompt.startswith("You are a test bot.")
    assert "- **voice**: Tone guide" in prompt
    assert "Be brief." not in prompt

    await db.set_state("soul", "Edited soul")
    assert (await build_system_prompt(db, settings)).startswith("Edited soul")


@pytest.mark.asyncio
async def test_skill_versions_keep_newest_ten(db):
    for i in range(12):
        await db.save_skill_version("voice", f"v{i}")
    versions = await db.list_skill_versions("voice")
    assert len(versions) == 10
    assert await db.load_skill_version("voice", versions[0]["id"]) == "v11"
    assert await db.load_skill_version("voice", versions[-1]["id"]) == "v2"
    assert await db.list_skill_versions("other") == []


@pytest.mark.asyncio
async def test_restore_skill_version_snapshots_current_content(db):
    await db.save_skill("voice", "old", "Tone")
    old_id = await db.save_skill_version("voice", "old")
    await db.save_skill("voice", "new", "Tone")

    assert await db.restore_skill_version("voice", old_id) is True
    skill = await db.get_skill("voice")
    assert skill["content"] == "old"
    assert skill["description"] == "Tone"
    versions = await db.list_skill_versions("voice")
    assert await db.load_skill_version("voice", versions[0]["id"]) == "new"
    assert await db.restore_skill_version("voice", 9999) is False


@pytest.mark.asyncio
async def test_last_exchange_pairs_latest_user_and_reply(db):
    assert await db.last_exchange("c1") == ("", "")
    await db.add_message("c1", "user", "first")
    await db.add_message("c1", "assistant", "reply one")
    await db.add_message("c1", "user", "second")
    await db.add_message("c1", "assistant", "reply two")
    assert await db.last_exchange("c1") == ("second", "reply two")
