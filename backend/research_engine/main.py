from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .config import Settings
from .db import ResearchStore
from .engine import ResearchOrchestrator
from .errors import PersistenceError, RunNotFound, RunStateConflict
from .logging_setup import configure_logging
from .models import TERMINAL_STATUSES, CreatePlanRequest, CreateTasksRequest, StartRunRequest

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


@dataclass
class Caller:
    household_id: str
    user_id: str | None


def caller_identity(
    x_household_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> Caller:
    household_id = (x_household_id or "").strip()
    if not household_id:
        raise HTTPException(status_code=401, detail="missing X-Household-Id header")
    return Caller(household_id=household_id, user_id=(x_user_id or "").strip() or None)


def get_orchestrator(request: Request) -> ResearchOrchestrator:
    return request.app.state.orchestrator


def format_sse(event: dict[str, Any]) -> str:
    data = json.dumps(event, default=str)
    return f"id: {event['id']}\nevent: {event['stage']}\ndata: {data}\n\n"


def is_terminal_event(event: dict[str, Any]) -> bool:
    payload = event.get("payload") or {}
    return event.get("stage") == "run" and bool(payload.get("terminal"))


def create_app(settings: Settings | None = None, orchestrator: ResearchOrchestrator | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        manager = orchestrator or ResearchOrchestrator(settings=settings, store=ResearchStore(settings.db_path))
        app.state.orchestrator = manager
        await manager.resume_interrupted_runs()
        yield
        await manager.shutdown()

    app = FastAPI(title="Deep Research Engine", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RunNotFound)
    async def run_not_found_handler(request: Request, exc: RunNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": "research run not found"})

    @app.exception_handler(RunStateConflict)
    async def run_state_conflict_handler(request: Request, exc: RunStateConflict) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": exc.args[0], "context": exc.context})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": json.loads(exc.json())})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Persistence failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "research store unavailable"})

    @app.get("/api/system/capabilities")
    async def system_capabilities() -> dict[str, Any]:
        return {
            "llm_enabled": bool(settings.llm_api_key),
            "models": {
                "planner": settings.llm_model_planner,
                "researcher": settings.llm_model_researcher,
                "reporter": settings.llm_model_reporter,
            },
            "search_providers": {
                "tavily": bool(settings.tavily_api_key),
                "serper": bool(settings.serper_api_key),
                "duckduckgo": True,
            },
            "search_provider_order": settings.search_provider_order,
            "trusted_domains": settings.trusted_domains,
            "blocked_domains": settings.blocked_domains,
        }

    @app.post("/api/conversations/{conversation_id}/research/plan")
    async def create_plan(
        conversation_id: str,
        body: CreatePlanRequest,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return await manager.create_plan(
            conversation_id=conversation_id,
            household_id=caller.household_id,
            user_id=caller.user_id,
            request=body,
        )

    @app.get("/api/conversations/{conversation_id}/research")
    async def list_runs(
        conversation_id: str,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        runs = await manager.list_runs_for_conversation(conversation_id, caller.household_id)
        return {"runs": runs}

    @app.post("/api/conversations/{conversation_id}/research/{run_id}/start", status_code=202)
    async def start_run(
        conversation_id: str,
        run_id: str,
        body: Optional[StartRunRequest] = None,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        run = await manager.start_run(
            run_id=run_id,
            conversation_id=conversation_id,
            household_id=caller.household_id,
            plan=body.plan if body else None,
        )
        return {"run": run}

    @app.post("/api/conversations/{conversation_id}/research/{run_id}/cancel")
    async def cancel_run(
        conversation_id: str,
        run_id: str,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        run = await manager.cancel_run(run_id=run_id, conversation_id=conversation_id, household_id=caller.household_id)
        return {"run": run}

    @app.get("/api/conversations/{conversation_id}/research/{run_id}")
    async def get_run_status(
        conversation_id: str,
        run_id: str,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return await manager.get_run_status(run_id, conversation_id, caller.household_id)

    @app.get("/api/conversations/{conversation_id}/research/{run_id}/events")
    async def get_events(
        conversation_id: str,
        run_id: str,
        after_id: int = 0,
        limit: int = 300,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        events = await manager.get_events(
            run_id,
            conversation_id,
            caller.household_id,
            after_id=max(0, after_id),
            limit=max(1, min(limit, 500)),
        )
        return {"events": events}

    @app.get("/api/conversations/{conversation_id}/research/{run_id}/events/stream")
    async def stream_events(
        conversation_id: str,
        run_id: str,
        after_id: int = 0,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> StreamingResponse:
        # Ownership is checked before the stream opens so a bad id is a plain 404.
        await manager.get_events(run_id, conversation_id, caller.household_id, after_id=0, limit=1)

        async def event_source() -> AsyncIterator[str]:
            subscriber = await manager.bus.subscribe(run_id)
            last_id = max(0, after_id)
            try:
                history = manager.store.list_events(run_id, after_id=last_id, limit=500)
                for event in history:
                    last_id = event["id"]
                    yield format_sse(event)
                    if is_terminal_event(event):
                        return

                run = manager.store.get_run(run_id)
                if run is None or run["status"] in TERMINAL_STATUSES:
                    return

                while True:
                    try:
                        event = await asyncio.wait_for(subscriber.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    if event["id"] <= last_id:
                        continue
                    last_id = event["id"]
                    yield format_sse(event)
                    if is_terminal_event(event):
                        return
            finally:
                await manager.bus.unsubscribe(run_id, subscriber)

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/conversations/{conversation_id}/research/{run_id}/tasks")
    async def create_tasks(
        conversation_id: str,
        run_id: str,
        body: CreateTasksRequest,
        caller: Caller = Depends(caller_identity),
        manager: ResearchOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        task_ids = await manager.create_tasks_from_run(
            run_id=run_id,
            conversation_id=conversation_id,
            household_id=caller.household_id,
            user_id=caller.user_id,
            request=body,
        )
        return {"created_task_ids": task_ids}

    return app


app = create_app()
