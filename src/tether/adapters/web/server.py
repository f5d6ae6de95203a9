"""FastAPI-based Web adapter exposing conversation orchestration over HTTP.

This module provides REST endpoints for starting, stopping and inspecting
conversations, resolving permission requests, and a Server-Sent Events
stream per run. All components are obtained from a ``ServiceContainer``
that is initialized in the application lifespan.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field

from tether import __version__
from tether.core.broadcaster import QueueSink
from tether.core.services import ServiceContainer, Services
from tether.schemas.messages import (
    ConversationDetails,
    ConversationDetailsMetadata,
    ConversationListResponse,
    PermissionDecisionRequest,
    PermissionDecisionResponse,
    PermissionListResponse,
    PermissionNotifyRequest,
    PermissionNotifyResponse,
    PermissionStatus,
    StartConversationRequest,
    StartConversationResponse,
    StopConversationResponse,
    SystemStatusResponse,
)
from tether.utils.errors import (
    ConversationNotFoundError,
    InvalidRequestError,
    PermissionNotFoundError,
    RunNotFoundError,
    TetherError,
)
from tether.utils.telemetry import get_logger

PUBLIC_PATHS = ("/api/system/health", "/api/permissions")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Error message")
    details: dict[str, Any] | None = Field(
        default=None, description="Additional details"
    )


class WebAdapter:
    """FastAPI application over the conversation services."""

    def __init__(self, container: ServiceContainer):
        """Initialize Web adapter.

        Args:
            container: Composition root; initialized on startup and shut
                down on application exit
        """
        self.container = container
        self.config = container.config
        self.logger = get_logger("tether.web_adapter")

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
            await self.container.initialize()
            self.logger.info(
                "Web adapter started",
                host=self.config.server.host,
                port=self.config.server.port,
            )
            yield
            await self.container.shutdown()
            self.logger.info("Web adapter stopped")

        self.app = FastAPI(
            title="Tether Conversation API",
            description="REST and SSE API for supervised agent conversations",
            version=__version__,
            lifespan=lifespan,
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.server.allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        if self.config.metrics.enabled:
            self.app.mount(self.config.metrics.path, make_asgi_app())

        self._setup_error_handlers()
        self._setup_routes()

    @property
    def services(self) -> Services:
        return self.container.services

    def _setup_error_handlers(self) -> None:
        @self.app.exception_handler(TetherError)
        async def handle_tether_error(request: Request, exc: TetherError) -> JSONResponse:
            if exc.status_code >= 500:
                self.logger.error(
                    "Request failed",
                    path=request.url.path,
                    error_code=exc.code,
                    error=exc.message,
                )
            return _error_response(exc.status_code, exc.code, exc.message)

        @self.app.exception_handler(Exception)
        async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
            self.logger.error(
                "Unhandled error",
                path=request.url.path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return _error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "INTERNAL_ERROR",
                "Internal server error",
            )

    def _setup_routes(self) -> None:
        """Set up API routes."""
        security = HTTPBearer(auto_error=False)

        async def check_auth(
            request: Request,
            credentials: HTTPAuthorizationCredentials | None = Depends(security),
        ) -> None:
            """Enforce the configured bearer token outside public paths."""
            expected = self.config.server.auth_token
            if not expected or request.url.path.startswith(PUBLIC_PATHS):
                return
            if credentials is None or credentials.credentials != expected:
                raise TetherError(
                    "Invalid authentication token",
                    code="UNAUTHORIZED",
                    status_code=status.HTTP_401_UNAUTHORIZED,
                )

        self.app.router.dependencies.append(Depends(check_auth))

        # System

        @self.app.get("/api/system/health")
        async def health_check() -> dict[str, str]:
            return {"status": "ok"}

        @self.app.get("/api/system/status", response_model=SystemStatusResponse)
        async def system_status() -> SystemStatusResponse:
            services = self.services
            return SystemStatusResponse(
                version=__version__,
                active_conversations=services.orchestrator.active_run_count,
                active_subscribers=services.broadcaster.total_client_count,
            )

        # Conversations

        @self.app.post(
            "/api/conversations/start", response_model=StartConversationResponse
        )
        async def start_conversation(
            body: StartConversationRequest,
        ) -> StartConversationResponse:
            run = await self.services.orchestrator.start_run(body)
            init = run.init_event
            return StartConversationResponse(
                streaming_id=run.streaming_id,
                stream_url=run.stream_url,
                session_id=init.session_id,
                cwd=init.cwd,
                tools=init.tools,
                mcp_servers=init.mcp_servers,
                model=init.model,
                permission_mode=init.permission_mode,
                api_key_source=init.api_key_source,
            )

        @self.app.post(
            "/api/conversations/{streaming_id}/stop",
            response_model=StopConversationResponse,
        )
        async def stop_conversation(streaming_id: str) -> StopConversationResponse:
            stopped = await self.services.orchestrator.stop_run(streaming_id)
            return StopConversationResponse(success=stopped)

        @self.app.get("/api/conversations", response_model=ConversationListResponse)
        async def list_conversations(
            limit: int | None = Query(default=None, ge=1),
            offset: int = Query(default=0, ge=0),
            project_path: str | None = Query(default=None, alias="projectPath"),
        ) -> ConversationListResponse:
            services = self.services
            registry = services.status_registry

            listing = await services.history.list_conversations(
                limit=limit, offset=offset, project_path=project_path
            )

            conversations = []
            for summary in listing.conversations:
                conversation_status = registry.get_conversation_status(summary.session_id)
                update: dict[str, Any] = {"status": conversation_status}
                if conversation_status == "ongoing":
                    update["streaming_id"] = registry.get_streaming_id(summary.session_id)
                conversations.append(summary.model_copy(update=update))

            known = {summary.session_id for summary in listing.conversations}
            active_only = registry.get_conversations_not_in_history(known)

            try:
                await services.session_info.sync_missing_sessions(sorted(known))
            except Exception as e:
                self.logger.warning("Session info sync failed", error=str(e))

            return ConversationListResponse(
                conversations=conversations + active_only,
                total=listing.total + len(active_only),
            )

        @self.app.get(
            "/api/conversations/{session_id}", response_model=ConversationDetails
        )
        async def get_conversation(session_id: str) -> ConversationDetails:
            services = self.services
            try:
                messages = await services.history.fetch_conversation(session_id)
            except ConversationNotFoundError:
                details = services.status_registry.get_active_conversation_details(
                    session_id
                )
                if details is None:
                    raise
                return details

            metadata = await services.history.get_conversation_metadata(session_id)
            if metadata is None:
                return ConversationDetails(messages=messages)
            return ConversationDetails(
                messages=messages,
                summary=metadata.summary,
                project_path=metadata.project_path,
                metadata=ConversationDetailsMetadata(
                    total_duration=metadata.total_duration, model=metadata.model
                ),
            )

        # Streaming

        @self.app.get("/api/stream/{streaming_id}")
        async def stream_events(streaming_id: str) -> StreamingResponse:
            services = self.services
            if not services.orchestrator.is_run_active(streaming_id):
                raise RunNotFoundError(streaming_id)

            broadcaster = services.broadcaster
            sink = QueueSink(self.config.broadcaster.max_pending_frames)
            subscription = broadcaster.attach(streaming_id, sink)

            async def frames() -> AsyncIterator[bytes]:
                try:
                    async for frame in sink.frames():
                        yield frame
                finally:
                    broadcaster.detach(subscription)

            return StreamingResponse(
                frames(), media_type="text/event-stream", headers=SSE_HEADERS
            )

        # Permissions

        @self.app.get("/api/permissions", response_model=PermissionListResponse)
        async def list_permissions(
            streaming_id: str | None = Query(default=None, alias="streamingId"),
            permission_status: PermissionStatus | None = Query(
                default=None, alias="status"
            ),
        ) -> PermissionListResponse:
            permissions = self.services.permissions.get_permission_requests(
                streaming_id=streaming_id, status=permission_status
            )
            return PermissionListResponse(permissions=permissions)

        @self.app.post("/api/permissions/notify", response_model=PermissionNotifyResponse)
        async def notify_permission(
            body: PermissionNotifyRequest,
        ) -> PermissionNotifyResponse:
            if not body.tool_name:
                raise InvalidRequestError("MISSING_TOOL_NAME", "toolName is required")

            services = self.services
            request = services.permissions.add_permission_request(
                body.tool_name, body.tool_input, body.streaming_id
            )
            try:
                await services.notifier.permission_requested(request)
            except Exception as e:
                self.logger.warning(
                    "Permission notification failed", request_id=request.id, error=str(e)
                )
            return PermissionNotifyResponse(success=True, id=request.id)

        @self.app.post(
            "/api/permissions/{request_id}/decision",
            response_model=PermissionDecisionResponse,
        )
        async def decide_permission(
            request_id: str, body: PermissionDecisionRequest
        ) -> PermissionDecisionResponse:
            if body.action not in ("approve", "deny"):
                raise InvalidRequestError(
                    "INVALID_ACTION", 'action must be "approve" or "deny"'
                )

            permissions = self.services.permissions
            existing = permissions.get_permission_request(request_id)
            if existing is None or existing.status != "pending":
                raise PermissionNotFoundError(request_id)

            approved = body.action == "approve"
            updated = permissions.update_permission_status(
                request_id,
                "approved" if approved else "denied",
                modified_input=body.modified_input if approved else None,
                deny_reason=None if approved else body.deny_reason,
            )
            if not updated:
                raise TetherError(
                    "Failed to update permission status",
                    code="UPDATE_FAILED",
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                )

            self.logger.info(
                "Permission decided",
                request_id=request_id,
                streaming_id=existing.streaming_id,
                action=body.action,
            )
            return PermissionDecisionResponse(
                success=True,
                message=f"Permission {'approved' if approved else 'denied'} successfully",
            )


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": ErrorResponse(error=code, message=message).model_dump()},
    )


def create_web_adapter(container: ServiceContainer | None = None) -> WebAdapter:
    """Create a Web adapter instance.

    Args:
        container: Service container (defaults to one built from default config)

    Returns:
        WebAdapter instance
    """
    return WebAdapter(container or ServiceContainer())
