"""
API_APP
=======

FastAPI control surface for the fleet supervisor.

Endpoints:
    GET    /health                          Health check
    GET    /agents                          Configured agents with status
    GET    /agents/{name}/status            Supervisor stats
    POST   /agents/{name}/start             Start an agent (schedule-guarded)
    POST   /agents/{name}/stop              Stop an agent
    POST   /agents/{name}/pause             Toggle pause
    GET    /agents/{name}/schedule          Window check, next window, day plan
    GET    /agents/{name}/schedule/history  Closed-out days, newest first
    POST   /config/reload                   Re-read configuration

Usage:
    fleet serve --factory mypackage.drivers:build_components
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..errors import AlreadyRunningError, UnknownAgentError

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# ============================================================================
# MODELS
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    running_agents: int
    scheduler_running: bool


class AgentSummary(BaseModel):
    name: str
    status: str
    schedule_mode: Optional[str] = None
    within_schedule: Optional[bool] = None


class StartAgentRequest(BaseModel):
    """Request body for starting an agent."""
    attach: bool = Field(False, description="Attach to an already running client")
    manual: bool = Field(False, description="Manual play; never auto-restarted")
    force: bool = Field(False, description="Start even outside the schedule window")


class ActionResponse(BaseModel):
    agent: str
    status: str
    detail: Optional[str] = None


class ScheduleResponse(BaseModel):
    agent: str
    enabled: bool
    mode: str
    within_schedule: bool
    next_window_start: Optional[str] = None
    state: Optional[Dict[str, Any]] = None


class HistoryResponse(BaseModel):
    agent: str
    history: List[Dict[str, Any]]


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(registry: Any = None, scheduler: Any = None, config_manager: Any = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Fleet Supervisor API",
        description="Control surface for supervised agents",
        version=API_VERSION,
    )

    def get_registry():
        nonlocal registry
        if registry is None:
            from ..registry import get_registry as _get_registry
            registry = _get_registry()
        return registry

    def get_config():
        if config_manager is not None:
            return config_manager
        return get_registry().config_manager

    def require_configured(name: str) -> None:
        if name not in get_config().list_agents():
            raise HTTPException(status_code=404, detail=f"Agent '{name}' is not configured")

    # ========================================================================
    # SYSTEM
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health():
        return HealthResponse(
            status="ok",
            version=API_VERSION,
            running_agents=len(get_registry().list_running()),
            scheduler_running=bool(scheduler is not None and scheduler.is_running),
        )

    @app.post("/config/reload", tags=["System"])
    async def reload_config():
        get_registry().reload_config()
        return {"status": "reloaded"}

    # ========================================================================
    # AGENTS
    # ========================================================================

    @app.get("/agents", response_model=List[AgentSummary], tags=["Agents"])
    async def list_agents():
        reg = get_registry()
        config = get_config()
        summaries = []
        for name in config.list_agents():
            cfg = config.load_agent(name)
            summaries.append(AgentSummary(
                name=name,
                status=reg.status(name).status.value or "NotStarted",
                schedule_mode=cfg.scheduler.mode if cfg.scheduler.enabled else None,
                within_schedule=scheduler.is_within_schedule(name, cfg) if scheduler is not None else None,
            ))
        return summaries

    @app.get("/agents/{name}/status", tags=["Agents"])
    async def agent_status(name: str):
        require_configured(name)
        return {"agent": name, **get_registry().status(name).to_dict()}

    @app.post("/agents/{name}/start", response_model=ActionResponse, tags=["Agents"])
    async def start_agent(name: str, request: Optional[StartAgentRequest] = None):
        request = request or StartAgentRequest()
        require_configured(name)
        reg = get_registry()

        if name in reg.list_running():
            raise HTTPException(status_code=409, detail=f"Agent '{name}' is already running")

        if scheduler is not None and not request.force and not request.manual:
            if not scheduler.is_within_schedule(name):
                next_start = scheduler.next_window_start(name)
                detail = f"Agent '{name}' is outside its schedule window"
                if next_start is not None:
                    detail += f"; next window opens at {next_start.isoformat()}"
                raise HTTPException(status_code=409, detail=detail)

        def _run():
            try:
                reg.start(name, request.attach, request.manual)
            except (AlreadyRunningError, UnknownAgentError) as e:
                logger.warning(f"API start of '{name}' rejected: {e}")

        threading.Thread(target=_run, daemon=True, name=f"api-start-{name}").start()
        return ActionResponse(agent=name, status="starting")

    @app.post("/agents/{name}/stop", response_model=ActionResponse, tags=["Agents"])
    def stop_agent(name: str):
        require_configured(name)
        reg = get_registry()
        if name not in reg.list_running():
            return ActionResponse(agent=name, status="not_running")
        reg.stop(name)
        return ActionResponse(agent=name, status="stopped")

    @app.post("/agents/{name}/pause", response_model=ActionResponse, tags=["Agents"])
    async def pause_agent(name: str):
        require_configured(name)
        paused = get_registry().toggle_pause(name)
        if paused is None:
            raise HTTPException(status_code=409, detail=f"Agent '{name}' is not running")
        return ActionResponse(agent=name, status="paused" if paused else "resumed")

    # ========================================================================
    # SCHEDULE
    # ========================================================================

    @app.get("/agents/{name}/schedule", response_model=ScheduleResponse, tags=["Schedule"])
    async def agent_schedule(name: str):
        require_configured(name)
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Scheduler is not configured")
        cfg = get_config().load_agent(name)
        next_start = scheduler.next_window_start(name, cfg)
        state = scheduler.get_state(name)
        return ScheduleResponse(
            agent=name,
            enabled=cfg.scheduler.enabled,
            mode=cfg.scheduler.mode,
            within_schedule=scheduler.is_within_schedule(name, cfg),
            next_window_start=next_start.isoformat() if next_start else None,
            state=state.to_dict() if state else None,
        )

    @app.get("/agents/{name}/schedule/history", response_model=HistoryResponse, tags=["Schedule"])
    async def agent_history(name: str):
        require_configured(name)
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Scheduler is not configured")
        return HistoryResponse(
            agent=name,
            history=[entry.to_dict() for entry in scheduler.get_history(name)],
        )

    return app
