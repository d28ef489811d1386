import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentgate.scheduled import is_noop, run_scheduled_task
from tests.fakes import FakeModelClient, text_response


@pytest.mark.asyncio
async def test_task_endpoint_uses_background_schedule(app_factory):
    fake_model = FakeModelClient([text_response("Morning briefing: all quiet")])
    app, _, _, _ = app_factory(fake_model=fake_model, background_retry_delays_s=[1.0, 2.0])
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/tasks/morning")
            assert res.status_code == 200
            assert res.json()["result"]["text"] == "Morning briefing: all quiet"

            call = fake_model.calls[0]
            assert call["model"] == "standard-model"
            assert call["retry_delays"] == [1.0, 2.0]
            assert "web_search" in call["tools"]
            assert "read_skill" in call["tools"]

            logs = await app.state.services.db.list_tool_logs("scheduled:morning")
            assert logs[0]["task"] == "morning"
            assert logs[0]["notify"] is True

            res = await client.post("/api/tasks/hourly")
            assert res.status_code == 404


@pytest.mark.asyncio
async def test_unknown_task_raises(app_factory):
    app, _, _, _ = app_factory()
    with pytest.raises(KeyError):
        await run_scheduled_task("nope", app.state.services)


@pytest.mark.asyncio
async def test_quiet_morning_does_not_notify(app_factory):
    fake_model = FakeModelClient([text_response("Nothing notable today.")])
    app, _, _, _ = app_factory(fake_model=fake_model)
    async with LifespanManager(app):
        await run_scheduled_task("morning", app.state.services)
        logs = await app.state.services.db.list_tool_logs("scheduled:morning")
        assert logs[0]["notify"] is False


def test_is_noop():
    assert is_noop("Nothing notable to report")
    assert not is_noop("Three new mentions need replies")
