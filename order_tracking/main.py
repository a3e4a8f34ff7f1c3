"""
FastAPI Application Entry Point

Admin console API for the order notification pipeline. Hosts one
notification session and one background agent for the process lifetime.
Supports both the mock data service (development) and Supabase
(staging/production).

Endpoints:
    - GET  /health: System health check
    - GET  /api/session: Client identity and viewer
    - POST /api/session/login | /api/session/logout: Switch viewer credentials
    - GET  /api/orders: Orders tracked for the viewer (?active=true)
    - GET  /api/notifications: Unread notifications, alert state and errors
    - POST /api/notifications/mark-read: Acknowledge everything
    - POST /api/notifications/test: Insert a test notification
    - GET  /api/alerts | POST /api/alerts/toggle | PUT /api/alerts/sound
    - POST /api/background/enable: Turn on background notifications
    - DELETE /api/errors/{kind}: Dismiss an error
    - POST /webhook/push: Push payload for the background agent
    - GET  /api/agent/alerts | POST /api/agent/alerts/{alert_id}/click

Run:
    uvicorn order_tracking.main:app --port 8001

Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from order_tracking.core.config import get_settings, setup_logging
from order_tracking.core.errors import ErrorKind, PipelineException, WorkerRegistrationError
from order_tracking.core.scheduling import AsyncioScheduler
from order_tracking.schemas import (
    AcknowledgementResponse,
    AlertStateResponse,
    HealthResponse,
    LoginRequest,
    NotificationListResponse,
    OrderListResponse,
    PipelineErrorResponse,
    SessionResponse,
    SoundSettingRequest,
    TestNotificationRequest,
    TestNotificationResponse,
)
from order_tracking.services.acknowledgement import AcknowledgementResult
from order_tracking.services.alerts import get_audio_backend
from order_tracking.services.background import BackgroundAgent, build_background_agent
from order_tracking.services.data import get_data_service
from order_tracking.session import NotificationSession

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    data_service = get_data_service()
    audio = get_audio_backend()
    scheduler = AsyncioScheduler()
    logger.info(f"✅ Data Service: {data_service.provider_name}")
    logger.info(f"✅ Audio: {audio.name}")

    agent: Optional[BackgroundAgent] = None
    if settings.background_agent_enabled:
        # The agent caches its shell from this application in-process
        agent = build_background_agent(
            audio, scheduler, settings, transport=httpx.ASGITransport(app=app)
        )

    session = NotificationSession(data_service, audio, settings, scheduler, agent=agent)
    app.state.session = session
    app.state.agent = agent
    await session.start()

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await session.close()
    if agent is not None:
        await agent.close()
    await data_service.close()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order notification and tracking pipeline for the restaurant admin console. "
        "Live change feed with polling fallback, alerting and background delivery."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES & HELPERS
# =============================================================================

def get_session(request: Request) -> NotificationSession:
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Notification session not started")
    return session


def get_agent(request: Request) -> BackgroundAgent:
    agent = getattr(request.app.state, "agent", None)
    if agent is None or not agent.is_running:
        raise HTTPException(status_code=503, detail="Background agent is not running")
    return agent


def pipeline_http_error(exc: PipelineException) -> HTTPException:
    """Permission problems are 403, anything else from the data service is 502."""
    status_code = 403 if exc.kind == ErrorKind.PERMISSION else 502
    return HTTPException(status_code=status_code, detail=exc.message)


def alert_state(session: NotificationSession) -> AlertStateResponse:
    return AlertStateResponse(
        **session.engine.snapshot(),
        unread_count=session.notifications.unread_count,
    )


def session_response(session: NotificationSession) -> SessionResponse:
    return SessionResponse(
        client_id=session.identity.client_id,
        client_created_at=session.identity.created_at,
        identity_persisted=session.identity.persisted,
        authenticated_user_id=session.viewer.authenticated_user_id,
        feed_status=session.feed.status.value,
        background_agent=session.agent_status,
        background_notifications_enabled=session.background_notifications_enabled,
    )


def acknowledgement_response(
    session: NotificationSession, result: AcknowledgementResult
) -> AcknowledgementResponse:
    return AcknowledgementResponse(
        success=result.success,
        message=result.message,
        unread_count=session.notifications.unread_count,
        alert=alert_state(session),
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🔔 Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    session: NotificationSession = Depends(get_session),
) -> HealthResponse:
    """Verify all pipeline components are operational."""
    data_status = "healthy" if await session.data.health_check() else "unhealthy"
    feed_status = session.feed.status.value

    overall = "operational" if data_status == "healthy" and feed_status == "subscribed" else "degraded"

    return HealthResponse(
        status=overall,
        data_service=data_status,
        feed_status=feed_status,
        polling_active=session.feed.polling_active,
        alert_phase=session.engine.state.phase.value,
        background_agent=session.agent_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# SESSION ENDPOINTS
# =============================================================================

@app.get("/api/session", response_model=SessionResponse, tags=["Session"])
async def get_session_info(
    session: NotificationSession = Depends(get_session),
) -> SessionResponse:
    """Client identity, viewer credentials and pipeline status."""
    return session_response(session)


@app.post("/api/session/login", response_model=SessionResponse, tags=["Session"])
async def login(
    request: LoginRequest,
    session: NotificationSession = Depends(get_session),
) -> SessionResponse:
    """Switch to authenticated credentials. Orders tracked so far are kept."""
    await session.login(request.user_id)
    return session_response(session)


@app.post("/api/session/logout", response_model=SessionResponse, tags=["Session"])
async def logout(
    session: NotificationSession = Depends(get_session),
) -> SessionResponse:
    """Fall back to the anonymous client identity."""
    await session.logout()
    return session_response(session)


# =============================================================================
# ORDER & NOTIFICATION ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Tracked Orders",
)
async def list_orders(
    active: bool = Query(False, description="Only orders still in progress"),
    session: NotificationSession = Depends(get_session),
) -> OrderListResponse:
    """Orders of the current viewer, newest first."""
    orders = session.active_orders() if active else session.orders.orders()
    return OrderListResponse(total=len(orders), orders=orders)


@app.get(
    "/api/notifications",
    response_model=NotificationListResponse,
    tags=["Notifications"],
)
async def list_notifications(
    session: NotificationSession = Depends(get_session),
) -> NotificationListResponse:
    """Unread notifications with the alert state and active errors."""
    return NotificationListResponse(
        unread_count=session.notifications.unread_count,
        notifications=session.notifications.unread(),
        alert=alert_state(session),
        feed_status=session.feed.status.value,
        errors=[PipelineErrorResponse(**e.to_dict()) for e in session.errors.active()],
    )


@app.post(
    "/api/notifications/mark-read",
    response_model=AcknowledgementResponse,
    tags=["Notifications"],
)
async def mark_all_read(
    session: NotificationSession = Depends(get_session),
) -> AcknowledgementResponse:
    """Stop the alert and mark every unread notification read."""
    result = await session.mark_all_read()
    if not result.success:
        raise HTTPException(status_code=502, detail=result.message)
    return acknowledgement_response(session, result)


@app.post(
    "/api/notifications/test",
    response_model=TestNotificationResponse,
    status_code=201,
    tags=["Notifications"],
)
async def create_test_notification(
    request: TestNotificationRequest,
    session: NotificationSession = Depends(get_session),
) -> TestNotificationResponse:
    """Insert an unread test notification; it arrives through the change feed."""
    try:
        notification = await session.data.insert_notification(
            title=request.title,
            message=request.message or f"Test notification created at {datetime.now():%H:%M:%S}",
            notification_type="test",
            metadata={"customer_name": "Test Customer"},
        )
    except PipelineException as e:
        session.errors.report_exception(e)
        raise pipeline_http_error(e)

    logger.info(f"🧪 Test notification {notification.id} created")
    return TestNotificationResponse(success=True, notification=notification)


# =============================================================================
# ALERT ENDPOINTS
# =============================================================================

@app.get("/api/alerts", response_model=AlertStateResponse, tags=["Alerts"])
async def get_alert_state(
    session: NotificationSession = Depends(get_session),
) -> AlertStateResponse:
    return alert_state(session)


@app.post("/api/alerts/toggle", response_model=AcknowledgementResponse, tags=["Alerts"])
async def toggle_sound(
    session: NotificationSession = Depends(get_session),
) -> AcknowledgementResponse:
    """Stop and acknowledge while alerting; resume when silent with unread left."""
    result = await session.toggle_sound()
    return acknowledgement_response(session, result)


@app.put("/api/alerts/sound", response_model=AlertStateResponse, tags=["Alerts"])
async def set_sound(
    request: SoundSettingRequest,
    session: NotificationSession = Depends(get_session),
) -> AlertStateResponse:
    await session.set_sound_enabled(request.enabled)
    return alert_state(session)


@app.delete("/api/errors/{kind}", tags=["Alerts"])
async def dismiss_error(
    kind: str,
    session: NotificationSession = Depends(get_session),
) -> dict[str, Any]:
    """Dismiss the active error of one kind."""
    try:
        error_kind = ErrorKind(kind)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid error kind. Options: {[k.value for k in ErrorKind]}"
        )
    if not session.errors.dismiss(error_kind):
        raise HTTPException(status_code=404, detail=f"No {kind} error to dismiss")
    return {"success": True, "dismissed": kind}


# =============================================================================
# BACKGROUND AGENT ENDPOINTS
# =============================================================================

@app.post("/api/background/enable", tags=["Background"])
async def enable_background_notifications(
    session: NotificationSession = Depends(get_session),
) -> dict[str, Any]:
    """Request platform alert permission and start background sync."""
    try:
        permission = await session.enable_background_notifications()
    except WorkerRegistrationError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return {
        "permission": permission.value,
        "background_notifications_enabled": session.background_notifications_enabled,
    }


@app.post("/webhook/push", tags=["Background"])
async def push_webhook(
    request: Request,
    agent: BackgroundAgent = Depends(get_agent),
) -> dict[str, Any]:
    """Deliver a push payload to the background agent."""
    body = await request.body()
    alert = await agent.handle_push(body)
    return {"shown": alert is not None, "alert": alert.to_dict() if alert else None}


@app.get("/api/agent/alerts", tags=["Background"])
async def list_agent_alerts(
    agent: BackgroundAgent = Depends(get_agent),
) -> dict[str, Any]:
    """Platform alerts currently shown by the agent."""
    alerts = agent.alerts.visible()
    return {"total": len(alerts), "alerts": [a.to_dict() for a in alerts]}


@app.post("/api/agent/alerts/{alert_id}/click", tags=["Background"])
async def click_agent_alert(
    alert_id: str,
    action: Optional[str] = Query(None, description="'view', 'dismiss' or empty for the default action"),
    agent: BackgroundAgent = Depends(get_agent),
) -> dict[str, Any]:
    if agent.alerts.get(alert_id) is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    url = agent.handle_alert_click(alert_id, action)
    return {"success": True, "action": action or "default", "url": url}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
