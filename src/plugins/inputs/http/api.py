"""
HTTP Input Plugin - status API for the secretsync operator.

Provides a FastAPI-based API to check health, read the sync status of
external secrets, trigger a reconcile by hand and watch events over SSE.
Declarations themselves are managed by the host platform, not here.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from events import EventBus, ResourceEvent
from plugins.inputs.base import InputPlugin

logger = logging.getLogger(__name__)


class ConditionResponse(BaseModel):
    """A status condition of an external secret."""

    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    observed_generation: Optional[int] = Field(
        default=None, alias="observedGeneration"
    )
    last_transition_time: Optional[str] = Field(
        default=None, alias="lastTransitionTime"
    )

    model_config = ConfigDict(populate_by_name=True)


class ExternalSecretStatusResponse(BaseModel):
    """Response model for the status of an external secret."""

    namespace: str
    name: str
    status: str
    status_message: Optional[str] = None
    generation: int
    observed_generation: int
    retry_count: int = 0
    conditions: List[ConditionResponse] = []
    refresh_time: Optional[datetime] = None
    last_reconcile_time: Optional[datetime] = None
    next_reconcile_time: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PluginInfo(BaseModel):
    """Response model for plugin information."""

    name: str
    version: str


def _status_response(row: Dict[str, Any]) -> ExternalSecretStatusResponse:
    return ExternalSecretStatusResponse(
        namespace=row["namespace"],
        name=row["name"],
        status=row.get("status", "pending"),
        status_message=row.get("status_message"),
        generation=row.get("generation", 1),
        observed_generation=row.get("observed_generation", 0),
        retry_count=row.get("retry_count", 0) or 0,
        conditions=[
            ConditionResponse.model_validate(c) for c in row.get("conditions") or []
        ],
        refresh_time=row.get("refresh_time"),
        last_reconcile_time=row.get("last_reconcile_time"),
        next_reconcile_time=row.get("next_reconcile_time"),
    )


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that serves the status API.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.server = None
        self._db_manager = None
        self._event_bus: Optional[EventBus] = None
        self._controller = None
        self._registry = None
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
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin and its routes."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)

        self.app = FastAPI(
            title="secretsync API",
            description="Sync status of external secrets",
            version=self.version,
        )
        if config.get("cors_enabled"):
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=config.get("cors_origins", ["*"]),
                allow_methods=["GET", "POST"],
                allow_headers=["*"],
            )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming events."""
        self._event_bus = event_bus

    def set_controller(self, controller) -> None:
        """Set the controller used for manual reconcile triggers."""
        self._controller = controller

    def set_registry(self, registry) -> None:
        """Set the plugin registry listed by the discovery endpoints."""
        self._registry = registry

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        Configures the following endpoints:
        - Liveness and readiness: GET /healthz, GET /readyz
        - Status: GET /api/v1/externalsecrets[/{namespace}/{name}]
        - Reconcile: POST /api/v1/externalsecrets/{namespace}/{name}/reconcile
        - Plugin discovery: GET /api/v1/plugins/{providers,auth}
        - Events: GET /api/v1/events (SSE)

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/healthz")
        async def healthz():
            """Liveness endpoint."""
            return {"status": "ok", "service": "secretsync"}

        @self.app.get("/readyz")
        async def readyz():
            """Readiness endpoint: database reachable and controller running."""
            checks = {
                "database": bool(self._db_manager and await self._db_manager.ping()),
                "controller": bool(self._controller and self._controller.running),
            }
            ready = all(checks.values())
            return JSONResponse(
                status_code=200 if ready else 503,
                content={"status": "ok" if ready else "unavailable", "checks": checks},
            )

        # ==================== External Secret Endpoints ====================

        @self.app.get(
            "/api/v1/externalsecrets",
            response_model=List[ExternalSecretStatusResponse],
        )
        async def list_external_secrets(
            namespace: Optional[str] = None,
            status: Optional[str] = None,
            limit: int = 100,
        ):
            """List external secrets with their sync status."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                rows = await self._db_manager.list_external_secrets(
                    namespace=namespace, status=status, limit=limit
                )
                return [_status_response(row) for row in rows]
            except Exception as e:
                logger.error(f"Error listing external secrets: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/externalsecrets/{namespace}/{name}",
            response_model=ExternalSecretStatusResponse,
        )
        async def get_external_secret(namespace: str, name: str):
            """Get the sync status of one external secret."""
            if not self._db_manager:
                raise HTTPException(status_code=503, detail="Database not available")

            try:
                row = await self._db_manager.get_external_secret(namespace, name)
            except Exception as e:
                logger.error(f"Error getting external secret: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if not row:
                raise HTTPException(
                    status_code=404, detail="External secret not found"
                )
            return _status_response(row)

        @self.app.post(
            "/api/v1/externalsecrets/{namespace}/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger reconciliation of an external secret."""
            if not self._controller:
                raise HTTPException(status_code=503, detail="Controller not available")

            try:
                found = await self._controller.trigger_reconciliation(namespace, name)
            except Exception as e:
                logger.error(f"Error triggering reconciliation: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if not found:
                raise HTTPException(
                    status_code=404, detail="External secret not found"
                )
            return {
                "message": "Reconciliation triggered",
                "namespace": namespace,
                "name": name,
            }

        # ==================== Plugin Discovery Endpoints ====================

        @self.app.get("/api/v1/plugins/providers", response_model=List[PluginInfo])
        async def list_provider_plugins():
            """List registered provider plugins."""
            if not self._registry:
                return []
            return [
                PluginInfo(**self._registry.get_provider_plugin_info(name))
                for name in self._registry.list_provider_plugins()
            ]

        @self.app.get("/api/v1/plugins/auth", response_model=List[str])
        async def list_auth_strategies():
            """List registered auth strategies."""
            if not self._registry:
                return []
            return self._registry.list_auth_strategies()

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_events(
            namespace: Optional[str] = None, kind: Optional[str] = None
        ):
            """SSE stream of events, optionally filtered by namespace and kind."""
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(event: ResourceEvent) -> bool:
                if namespace is not None and event.namespace != namespace:
                    return False
                if kind is not None and event.kind != kind:
                    return False
                return True

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

    async def start(self) -> None:
        """Start the HTTP server."""
        if not self.app:
            raise RuntimeError("App not initialized")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=str(self._config.get("log_level", "info")).lower(),
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
