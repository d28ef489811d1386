import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentgate.handler import NOT_AUTHORIZED_TEXT
from agentgate.llm import ModelServiceError
from tests.fakes import FakeModelClient, text_response, tool_use_response


def _event(event_id: str, text: str, conversation_id: str = "c1") -> dict:
    return {"event_id": event_id, "conversation_id": conversation_id, "text": text}


@pytest.mark.asyncio
async def test_turn_runs_tools_and_persists_history(app_factory):
    fake_model = FakeModelClient(
        [
            tool_use_response([{"name": "web_search", "input": {"query": "ai news"}}]),
            text_response("Here is the news."),
        ]
    )
    app, _, _, fake_tavily = app_factory(fake_model=fake_model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/webhook", json=_event("e1", "search for ai news"))
            assert res.status_code == 200
            data = res.json()
            assert data["status"] == "completed"
            assert data["reply"] == "Here is the news."
            assert data["model"] == "standard-model"
            assert data["result"]["model"] == "standard-model"
            assert data["result"]["tool_calls"][0]["tool_name"] == "web_search"
            assert fake_tavily.search_calls[0]["query"] == "ai news"

            services = app.state.services
            messages = await services.db.list_messages("c1")
            assert [(m["role"], m["content"]) for m in messages] == [
                ("user", "search for ai news"),
                ("assistant", "Here is the news."),
            ]
            logs = await services.db.list_tool_logs("c1")
            assert logs[0]["tool_calls"][0]["tool_name"] == "web_search"
            assert logs[0]["model"] == "standard-model"
            assert await services.locks.is_locked("c1") is False

            res = await client.post("/webhook", json=_event("e2", "thanks"))
            assert res.json()["model"] == "light-model"
            history = fake_model.calls[-1]["messages"]
            assert [m["content"] for m in history] == ["search for ai news", "Here is the news.", "thanks"]
            # Tools used in earlier turns stay on offer.
            assert "web_search" in fake_model.calls[-1]["tools"]


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(app_factory):
    app, _, fake_model, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            first = await client.post("/webhook", json=_event("dup", "hello there"))
            second = await client.post("/webhook", json=_event("dup", "hello there"))
            assert first.json()["status"] == "completed"
            assert second.json()["status"] == "duplicate"
            assert len(fake_model.calls) == 1


@pytest.mark.asyncio
async def test_busy_conversation_is_skipped(app_factory):
    app, _, fake_model, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            lease = await app.state.services.locks.acquire("c1")
            res = await client.post("/webhook", json=_event("e1", "are you there"))
            assert res.json()["status"] == "busy"
            assert fake_model.calls == []
            await app.state.services.locks.release(lease)

            other = await client.post("/webhook", json=_event("e2", "are you there", conversation_id="c2"))
            assert other.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_gated_tool_waits_for_approve_command(app_factory):
    fake_model = FakeModelClient(
        [
            tool_use_response(
                [{"name": "update_skill", "input": {"name": "voice", "content": "Be brief.", "description": "Tone"}}]
            ),
            text_response("I've queued that skill update for your approval."),
        ]
    )
    app, _, _, _ = app_factory(fake_model=fake_model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            services = app.state.services
            res = await client.post("/webhook", json=_event("e1", "save a skill about my voice"))
            data = res.json()
            assert data["status"] == "completed"
            assert len(data["result"]["pending_actions"]) == 1
            assert data["result"]["tool_calls"][0]["was_confirmation_gated"] is True
            assert await services.db.get_skill("voice") is None

            pending = await client.get("/api/conversations/c1/pending-actions")
            assert pending.json()["pending_actions"][0]["tool_name"] == "update_skill"

            res = await client.post("/webhook", json=_event("e2", "/approve"))
            data = res.json()
            assert data["status"] == "command"
            assert data["reply"].startswith("Action approved and executed!")
            skill = await services.db.get_skill("voice")
            assert skill["content"] == "Be brief."

            res = await client.post("/webhook", json=_event("e3", "/approve"))
            assert res.json()["reply"] == "No pending actions to approve."
            assert len(fake_model.calls) == 2


@pytest.mark.asyncio
async def test_reject_command_and_endpoint(app_factory):
    fake_model = FakeModelClient(
        fallback=tool_use_response([{"name": "update_soul", "input": {"content": "New soul"}}]),
    )
    app, _, _, _ = app_factory(fake_model=fake_model, max_tool_iterations=1)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            await client.post("/webhook", json=_event("e1", "change your soul"))
            await client.post("/webhook", json=_event("e2", "change your soul again"))

            res = await client.post("/webhook", json=_event("e3", "/reject"))
            assert res.json()["reply"] == "Action cancelled: update_soul"
            res = await client.post("/api/conversations/c1/reject")
            assert res.json()["status"] == "rejected"
            res = await client.post("/api/conversations/c1/approve")
            assert res.json()["status"] == "empty"
            assert await app.state.services.db.get_state("soul") is None


@pytest.mark.asyncio
async def test_model_error_replies_and_releases_lock(app_factory):
    fake_model = FakeModelClient([ModelServiceError("Model API error (500): overloaded", status_code=500)])
    app, _, _, _ = app_factory(fake_model=fake_model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/webhook", json=_event("e1", "write me a plan"))
            data = res.json()
            assert data["status"] == "error"
            assert data["reply"] == "Sorry, I encountered an error: Model API error (500): overloaded"
            assert await app.state.services.locks.is_locked("c1") is False
            assert await app.state.services.db.list_messages("c1") == []


@pytest.mark.asyncio
async def test_exhausted_turn_still_replies(app_factory):
    fake_model = FakeModelClient(fallback=tool_use_response([{"name": "web_search", "input": {"query": "q"}}]))
    app, _, _, _ = app_factory(fake_model=fake_model, max_tool_iterations=2)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            data = (await client.post("/webhook", json=_event("e1", "research everything"))).json()
            assert data["status"] == "completed"
            assert data["result"]["exhausted"] is True
            assert data["reply"].startswith("I ran out of time")


@pytest.mark.asyncio
async def test_text_free_event_is_rejected(client):
    res = await client.post("/webhook", json={"event_id": "e1", "conversation_id": "c1"})
    assert res.status_code == 400
    res = await client.post("/webhook", json=_event("e2", "   "))
    assert res.status_code == 400
    assert client.fake_model.calls == []


@pytest.mark.asyncio
async def test_webhook_secret_is_enforced(app_factory):
    app, _, _, _ = app_factory(webhook_secret="s3cret")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/webhook", json=_event("e1", "hi"))
            assert res.status_code == 401
            res = await client.post("/webhook", json=_event("e1", "hi"), headers={"X-Webhook-Secret": "wrong"})
            assert res.status_code == 401
            res = await client.post("/webhook", json=_event("e1", "hi"), headers={"X-Webhook-Secret": "s3cret"})
            assert res.status_code == 200


@pytest.mark.asyncio
async def test_chat_commands(client):
    res = await client.post("/webhook", json=_event("e1", "/help"))
    assert "/approve" in res.json()["reply"]
    res = await client.post("/webhook", json=_event("e2", "/model"))
    assert "light-model" in res.json()["reply"]
    res = await client.post("/webhook", json=_event("e3", "/bogus"))
    assert res.json()["reply"].startswith("Unknown command: /bogus")

    await client.post("/webhook", json=_event("e4", "remember this"))
    assert len(await client.app.state.services.db.list_messages("c1")) == 2
    res = await client.post("/webhook", json=_event("e5", "/clear"))
    assert res.json()["reply"] == "Conversation cleared. Starting fresh!"
    assert await client.app.state.services.db.list_messages("c1") == []
    assert client.fake_model.calls and len(client.fake_model.calls) == 1


@pytest.mark.asyncio
async def test_tools_and_history_endpoints(client):
    res = await client.get("/api/tools")
    tools = {t["name"]: t for t in res.json()["tools"]}
    assert tools["update_skill"]["requires_confirmation"] is True
    assert tools["web_search"]["requires_confirmation"] is False

    await client.post("/webhook", json=_event("e1", "hello there"))
    res = await client.get("/api/conversations/c1/messages")
    assert len(res.json()["messages"]) == 2
    res = await client.delete("/api/conversations/c1")
    assert res.json() == {"ok": True}
    res = await client.get("/api/conversations/c1/messages")
    assert res.json()["messages"] == []


@pytest.mark.asyncio
async def test_lifespan_closes_clients(app_factory):
    app, _, fake_model, fake_tavily = app_factory()
    async with LifespanManager(app):
        pass
    assert fake_model.closed is True
    assert fake_tavily.closed is True


@pytest.mark.asyncio
async def test_allowlist_refuses_unlisted_senders(app_factory):
    app, _, fake_model, _ = app_factory(allowed_user_ids=["42"])
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/webhook", json={**_event("e1", "hello"), "user_id": 42})
            assert res.json()["status"] == "completed"

            res = await client.post("/webhook", json={**_event("e2", "hello"), "user_id": "7"})
            assert res.json()["status"] == "unauthorized"
            assert res.json()["reply"] == NOT_AUTHORIZED_TEXT
            res = await client.post("/webhook", json={**_event("e3", "/clear"), "user_id": "7"})
            assert res.json()["status"] == "unauthorized"
            res = await client.post("/webhook", json=_event("e4", "no sender"))
            assert res.json()["status"] == "unauthorized"

            services = app.state.services
            assert len(fake_model.calls) == 1
            assert len(await services.db.list_messages("c1")) == 2
            # Refused events leave no dedup marker, so a later listed delivery still runs.
            res = await client.post("/webhook", json={**_event("e2", "hello again"), "user_id": "42"})
            assert res.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_empty_allowlist_accepts_everyone(client):
    res = await client.post("/webhook", json={**_event("e1", "hi"), "user_id": "anyone"})
    assert res.json()["status"] == "completed"
    res = await client.post("/webhook", json=_event("e2", "/help"))
    assert res.json()["status"] == "command"


@pytest.mark.asyncio
async def test_skill_version_endpoints(client):
    db = client.app.state.services.db
    await db.save_skill("voice", "v1", "Tone")
    await db.save_skill_version("voice", "v1")
    await db.save_skill("voice", "v2", "Tone")

    res = await client.get("/api/skills/voice/versions")
    versions = res.json()["versions"]
    assert len(versions) == 1
    res = await client.post(f"/api/skills/voice/versions/{versions[0]['id']}/restore")
    assert res.json() == {"ok": True}
    assert (await db.get_skill("voice"))["content"] == "v1"
    res = await client.post("/api/skills/voice/versions/9999/restore")
    assert res.status_code == 404
