"""
HTTP Input Plugin - REST API for triggers and scope status.

This plugin provides a FastAPI-based REST API for delivering machine events,
inspecting per-scope reconciliation status, resuming halted scopes, and
streaming reconciliation events.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from events import EventBus, ReconcileEvent
from plugins.inputs.base import InputPlugin, TriggerCallback
from reconciler import Trigger, TriggerReason

logger = logging.getLogger(__name__)


class TriggerRequest(BaseModel):
    """Request model for delivering a machine event."""

    reason: Literal["added", "updated", "deleted", "manual"] = "manual"
    machine_name: Optional[str] = Field(None, max_length=253)


class TriggerResponse(BaseModel):
    message: str
    scope_key: str
    reason: str


class ScopeStatusResponse(BaseModel):
    """Response model for a scope's dispatcher status."""

    scope_key: str
    pool_id: str
    halted: bool
    failures: int
    queued: bool
    processing: bool
    retry_scheduled: bool
    last_reconcile_time: Optional[datetime] = None
    next_retry_time: Optional[datetime] = None
    last_result: Optional[Dict[str, Any]] = None


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API over the controller.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._on_trigger: Optional[TriggerCallback] = None
        self._controller = None
        self._event_bus: Optional[EventBus] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").lower(),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = config.get("log_level", "info")

        self.app = FastAPI(
            title="Load Balancer Membership Operator API",
            description="Keeps control-plane machines registered with their "
            "load balancer pool",
            version="1.0.0",
        )

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_controller(self, controller) -> None:
        """Set the controller instance."""
        self._controller = controller

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming events."""
        self._event_bus = event_bus

    def _require_controller(self):
        if not self._controller:
            raise HTTPException(status_code=503, detail="Controller not available")
        return self._controller

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        Configures the following endpoints:
        - Health check: GET /
        - Scope status: GET /api/v1/scopes, GET /api/v1/scopes/{scope_key}
        - Triggers: POST /api/v1/scopes/{scope_key}/triggers
        - Resume: POST /api/v1/scopes/{scope_key}/resume
        - Event stream: GET /api/v1/events

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "lb-membership-operator"}

        # ==================== Scope Endpoints ====================

        @self.app.get("/api/v1/scopes", response_model=List[ScopeStatusResponse])
        async def list_scopes():
            """List the status of every scope."""
            controller = self._require_controller()
            return [ScopeStatusResponse(**status) for status in controller.status()]

        @self.app.get(
            "/api/v1/scopes/{scope_key}", response_model=ScopeStatusResponse
        )
        async def get_scope(scope_key: str):
            """Get the status of a single scope."""
            controller = self._require_controller()
            status = controller.get_status(scope_key)
            if status is None:
                raise HTTPException(status_code=404, detail="Scope not found")
            return ScopeStatusResponse(**status)

        @self.app.post(
            "/api/v1/scopes/{scope_key}/triggers",
            response_model=TriggerResponse,
            status_code=202,
        )
        async def deliver_trigger(scope_key: str, request: TriggerRequest):
            """Deliver a machine event or a manual trigger for a scope."""
            controller = self._require_controller()
            if not controller.has_scope(scope_key):
                raise HTTPException(status_code=404, detail="Scope not found")
            if controller.is_halted(scope_key):
                raise HTTPException(
                    status_code=409,
                    detail="Scope is halted; resume it before triggering",
                )

            trigger = Trigger(
                scope_key,
                TriggerReason(request.reason),
                machine_name=request.machine_name,
            )
            if self._on_trigger is not None:
                accepted = await self._on_trigger(trigger)
            else:
                accepted = controller.enqueue(trigger)

            if not accepted:
                raise HTTPException(status_code=409, detail="Trigger not accepted")

            logger.debug(
                f"Accepted {request.reason} trigger for {scope_key}"
                + (f" (machine {request.machine_name})" if request.machine_name else "")
            )
            return TriggerResponse(
                message="Reconciliation triggered",
                scope_key=scope_key,
                reason=request.reason,
            )

        @self.app.post("/api/v1/scopes/{scope_key}/resume")
        async def resume_scope(scope_key: str):
            """Clear a fatal halt and trigger a fresh pass."""
            controller = self._require_controller()
            if not controller.has_scope(scope_key):
                raise HTTPException(status_code=404, detail="Scope not found")

            resumed = await controller.resume(scope_key)
            return {
                "message": "Scope resumed" if resumed else "Scope was not halted",
                "scope_key": scope_key,
                "resumed": resumed,
            }

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_events(scope: Optional[str] = None):
            """SSE stream of reconciliation events.

            Optionally filter by scope key.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            if scope:
                scope_key = scope

                def filter_fn(event: ReconcileEvent) -> bool:
                    return event.scope_key == scope_key

            else:
                filter_fn = None

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self, on_trigger: TriggerCallback) -> None:
        """Start the HTTP server."""
        self._on_trigger = on_trigger
        self._setup_routes()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
