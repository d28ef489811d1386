import hmac
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request

from .concurrency import ConversationLockManager, DeliveryDeduplicator
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .confirmation import ConfirmationGate, PendingActionStore
from .db import Database
from .handler import Services, process_event, record_feedback
from .llm import AnthropicClient
from .registry import ToolDispatcher, ToolRegistry
from .relevance import RelevanceFilter
from .scheduled import TASKS, run_scheduled_task
from .schemas import FeedbackRequest, InboundEvent
from .tavily import TavilyClient
from .tools.catalog import build_registry


def build_services(
    settings: AppSettings,
    db: Database,
    llm_client: Any,
    tavily_client: Any,
    registry: Optional[ToolRegistry] = None,
) -> Services:
    registry = registry or build_registry()
    store = PendingActionStore(settings.database_path)
    gate = ConfirmationGate(store, registry, ttl_s=settings.pending_action_ttl_s)
    return Services(
        settings=settings,
        db=db,
        registry=registry,
        gate=gate,
        dispatcher=ToolDispatcher(registry, gate),
        relevance=RelevanceFilter(registry),
        dedup=DeliveryDeduplicator(settings.database_path),
        locks=ConversationLockManager(settings.database_path, ttl_s=settings.lock_ttl_s),
        llm=llm_client,
        extras={"tavily": tavily_client},
    )


def apply_settings(services: Services, settings: AppSettings) -> None:
    """Push new settings into the components built from the old ones."""
    services.settings = settings
    services.gate.ttl_s = settings.pending_action_ttl_s
    services.locks.ttl_s = settings.lock_ttl_s
    llm = services.llm
    llm.api_key = settings.anthropic_api_key
    llm.base_url = settings.anthropic_base_url.rstrip("/")
    llm.max_tokens = settings.max_tokens
    llm.retry_delays = list(settings.retry_delays_s)
    if settings.anthropic_model:
        llm.default_model = settings.anthropic_model
    tavily = services.extras.get("tavily")
    if tavily is not None:
        tavily.api_key = settings.tavily_api_key


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(request: Request) -> AppSettings:
    return request.app.state.services.settings


def get_db(request: Request) -> Database:
    return request.app.state.services.db


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def verify_webhook_secret(secret: Optional[str], provided: Optional[str]) -> None:
    if not secret:
        return
    if not provided or not hmac.compare_digest(provided.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter()


@router.post("/webhook")
async def webhook(
    payload: InboundEvent,
    services: Services = Depends(get_services),
    x_webhook_secret: Optional[str] = Header(default=None),
):
    verify_webhook_secret(services.settings.webhook_secret, x_webhook_secret)
    if not (payload.text or "").strip():
        raise HTTPException(status_code=400, detail="Only text messages can be processed.")
    outcome = await process_event(payload, services)
    return outcome.model_dump()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings(
    payload: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
    config_path: Path = Depends(get_config_path),
):
    merged = {**services.settings.model_dump(), **payload}
    try:
        new_settings = AppSettings(**merged)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path)
    await services.db.save_config(new_settings.to_safe_dict())
    apply_settings(services, new_settings)
    return {"ok": True}


@router.get("/api/tools")
async def list_tools(services: Services = Depends(get_services)):
    tools = []
    for name in services.registry.names():
        tool = services.registry.lookup(name)
        tools.append({**tool.definition.model_dump(), "requires_confirmation": tool.requires_confirmation})
    return {"tools": tools}


@router.get("/api/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, db: Database = Depends(get_db)):
    return {"messages": await db.list_messages(conversation_id)}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, db: Database = Depends(get_db)):
    await db.clear_conversation(conversation_id)
    return {"ok": True}


@router.post("/api/conversations/{conversation_id}/feedback")
async def submit_feedback(conversation_id: str, payload: FeedbackRequest, db: Database = Depends(get_db)):
    await record_feedback(db, conversation_id, payload.rating, payload.text)
    return {"ok": True}


@router.get("/api/skills/{name}/versions")
async def list_skill_versions(name: str, db: Database = Depends(get_db)):
    return {"versions": await db.list_skill_versions(name)}


@router.post("/api/skills/{name}/versions/{version_id}/restore")
async def restore_skill_version(name: str, version_id: int, db: Database = Depends(get_db)):
    if not await db.restore_skill_version(name, version_id):
        raise HTTPException(status_code=404, detail="Version not found")
    return {"ok": True}


@router.get("/api/conversations/{conversation_id}/pending-actions")
async def list_pending_actions(conversation_id: str, services: Services = Depends(get_services)):
    actions = await services.gate.store.list_for_conversation(conversation_id)
    return {"pending_actions": [a.model_dump() for a in actions]}


@router.post("/api/conversations/{conversation_id}/approve")
async def approve_pending_action(conversation_id: str, services: Services = Depends(get_services)):
    outcome = await services.gate.approve(services.tool_context(conversation_id))
    return outcome.model_dump()


@router.post("/api/conversations/{conversation_id}/reject")
async def reject_pending_action(conversation_id: str, services: Services = Depends(get_services)):
    outcome = await services.gate.reject(conversation_id)
    return outcome.model_dump()


@router.post("/api/tasks/{name}")
async def run_task(name: str, services: Services = Depends(get_services)):
    if name not in TASKS:
        raise HTTPException(status_code=404, detail="Unknown task")
    result = await run_scheduled_task(name, services)
    return {"task": name, "result": result.model_dump()}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[Any] = None,
    tavily_client: Optional[Any] = None,
    registry: Optional[ToolRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services: Services = app.state.services
        await services.db.init()
        await services.db.save_config(services.settings.to_safe_dict())
        try:
            yield
        finally:
            await services.llm.close()
            await services.extras["tavily"].close()

    app = FastAPI(title="Agentgate", lifespan=lifespan)
    app.state.services = build_services(
        settings,
        db or Database(settings.database_path),
        llm_client
        or AnthropicClient(
            settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            default_model=settings.anthropic_model,
            max_tokens=settings.max_tokens,
            retry_delays=settings.retry_delays_s,
        ),
        tavily_client or TavilyClient(settings.tavily_api_key),
        registry=registry,
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.services.settings
    reload_enabled = os.getenv("AGENTGATE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "agentgate.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
