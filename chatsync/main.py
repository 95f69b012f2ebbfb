import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatsync.config import settings
from chatsync.contacts import ContactResolver
from chatsync.gateway import GatewayClient, build_http_client
from chatsync.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from chatsync.media import BlobStorageError, LocalBlobStore, MediaPipeline
from chatsync.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from chatsync.schemas import (
    CancelResponse,
    ContactResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    SyncProgressResponse,
    SyncStateResponse,
    SyncTriggerResponse,
    WebhookEnvelope,
    WebhookResponse,
)
from chatsync.storage import (
    SessionLocal,
    check_db_health,
    get_channel_session,
    get_contacts,
    get_db,
    get_messages,
    init_db,
)
from chatsync.sync import (
    RateLimitPolicy,
    SessionNotConnectedError,
    SessionNotFoundError,
    SyncAlreadyRunningError,
    SyncOrchestrator,
)
from chatsync.sync_state import SyncStatus, SyncType, get_sync_state, reset_interrupted_syncs
from chatsync.utils import verify_hmac_signature
from chatsync.webhook import WebhookProcessor
from chatsync.writer import MessageWriter


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, fail syncs interrupted by a restart, wire services
    - Shutdown: cancel running syncs, drain media tasks, close HTTP clients

    Tests may preset ``app.state.gateway_transport``, ``app.state.media_transport``
    and ``app.state.sync_sleep`` before entering the lifespan.
    """
    # Startup
    init_db()
    with SessionLocal() as db:
        reset_interrupted_syncs(db)

    gateway_http = build_http_client(settings, transport=getattr(app.state, "gateway_transport", None))
    # Attachment URLs point at third-party hosts; never send them the gateway key
    media_http = httpx.AsyncClient(
        timeout=settings.GATEWAY_TIMEOUT,
        follow_redirects=True,
        transport=getattr(app.state, "media_transport", None),
    )

    gateway = GatewayClient(gateway_http, max_messages_per_chat=settings.SYNC_MAX_MESSAGES_PER_CHAT)
    blob_store = LocalBlobStore(
        base_dir=settings.MEDIA_ROOT,
        base_url=settings.MEDIA_BASE_URL,
        signing_secret=settings.MEDIA_SIGNING_SECRET,
        default_expires_in=settings.MEDIA_URL_EXPIRES_IN,
    )
    media = MediaPipeline(blob_store, SessionLocal, gateway=gateway, http=media_http)
    resolver = ContactResolver()
    writer = MessageWriter(media)
    orchestrator = SyncOrchestrator(
        gateway,
        SessionLocal,
        resolver,
        writer,
        policy=RateLimitPolicy.from_settings(settings),
        sleep=getattr(app.state, "sync_sleep", asyncio.sleep),
    )

    app.state.gateway = gateway
    app.state.blob_store = blob_store
    app.state.media = media
    app.state.orchestrator = orchestrator
    app.state.webhook_processor = WebhookProcessor(SessionLocal, resolver, writer, orchestrator)
    logger.info("Services started")

    yield

    # Shutdown
    await orchestrator.shutdown()
    await media.drain()
    await gateway_http.aclose()
    await media_http.aclose()
    logger.info("Services stopped")


app = FastAPI(
    title="Chat Sync Engine",
    description="Webhook ingestion and history sync for a messaging gateway",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and every
    table exists. Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
    }
)
async def webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> WebhookResponse:
    """
    Ingest one gateway event.

    - When WEBHOOK_SECRET is set, X-Signature must be the hex HMAC-SHA256
      of the raw body
    - Otherwise always answers 200 with {success, event, error}; the
      gateway must never see a processing failure as a delivery failure
    """
    raw_body = await request.body()
    logger.debug(f"Webhook request received: {len(raw_body)} bytes")

    if settings.WEBHOOK_SECRET:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
            logger.error("Missing or invalid X-Signature")
            record_webhook_outcome("", "invalid_signature")
            log_webhook_data(request=request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    try:
        envelope = WebhookEnvelope.model_validate(json.loads(raw_body))
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid webhook body: {e}")
        record_webhook_outcome("", "invalid_json")
        log_webhook_data(request=request, result="invalid_json")
        return WebhookResponse(success=False, event="", error="Invalid JSON body")

    processor: WebhookProcessor = request.app.state.webhook_processor
    outcome = await processor.process(envelope.event_type, envelope.channel_id, envelope.payload)

    log_webhook_data(
        request=request,
        event=outcome.event,
        channel_id=envelope.channel_id,
        result=outcome.result,
    )
    return WebhookResponse(success=outcome.success, event=outcome.event, error=outcome.error)


# =============================================================================
# Sync Routes
# =============================================================================

def _start_sync(request: Request, session_id: str, sync_type: str) -> SyncTriggerResponse:
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    try:
        orchestrator.start(session_id, sync_type)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (SessionNotConnectedError, SyncAlreadyRunningError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return SyncTriggerResponse(
        message=f"{sync_type} sync started",
        session_id=session_id,
        sync_type=sync_type,
    )


_SYNC_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Unknown session"},
    409: {"model": ErrorResponse, "description": "Session not connected or already syncing"},
}


@app.post(
    "/sessions/{session_id}/sync/initial",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SyncTriggerResponse,
    responses=_SYNC_RESPONSES,
)
async def trigger_initial_sync(session_id: str, request: Request) -> SyncTriggerResponse:
    """Start a full bounded history backfill in the background."""
    logger.info(f"Initial sync requested: session={session_id}")
    return _start_sync(request, session_id, SyncType.INITIAL.value)


@app.post(
    "/sessions/{session_id}/sync/gap-fill",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SyncTriggerResponse,
    responses=_SYNC_RESPONSES,
)
async def trigger_gap_fill_sync(session_id: str, request: Request) -> SyncTriggerResponse:
    """Start a backfill of messages newer than the session watermark."""
    logger.info(f"Gap-fill sync requested: session={session_id}")
    return _start_sync(request, session_id, SyncType.GAP_FILL.value)


@app.post(
    "/sessions/{session_id}/sync/cancel",
    response_model=CancelResponse,
    responses={404: {"model": ErrorResponse, "description": "No running sync"}},
)
async def cancel_sync(session_id: str, request: Request) -> CancelResponse:
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    if not orchestrator.cancel(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No running sync for this session")
    return CancelResponse(success=True, message="Cancellation requested")


@app.get(
    "/sessions/{session_id}/sync/status",
    response_model=SyncStateResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown session"}},
)
async def sync_status(session_id: str, request: Request, db: Session = Depends(get_db)) -> SyncStateResponse:
    """
    Current sync state of a session.

    Sessions that never synced report IDLE. ``progress`` is included while
    a run is in flight.
    """
    session = get_channel_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    state = get_sync_state(db, session_id)
    if state is None:
        response = SyncStateResponse(session_id=session_id, status=SyncStatus.IDLE.value)
    else:
        response = SyncStateResponse.model_validate(state)
    response.last_message_timestamp = session.last_message_timestamp

    task = request.app.state.orchestrator.get_task(session_id)
    if task is not None and task.progress is not None:
        response.progress = SyncProgressResponse(
            chats_total=task.progress.chats_total,
            chats_done=task.progress.chats_done,
            messages_done=task.progress.messages_done,
            current_chat=task.progress.current_chat,
        )
    return response


# =============================================================================
# Read Routes
# =============================================================================

@app.get(
    "/sessions/{session_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown session"}},
)
async def list_messages(
    session_id: str,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    contact_id: Annotated[int | None, Query(description="Filter by chat contact")] = None,
    since: Annotated[int | None, Query(description="Filter messages with timestamp >= since (unix seconds)")] = None,
    q: Annotated[str | None, Query(description="Free-text search in message body (case-insensitive)")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List canonical messages of a session, ordered by timestamp then id.
    """
    if get_channel_session(db, session_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    messages, total = get_messages(
        db=db,
        session_id=session_id,
        limit=limit,
        offset=offset,
        contact_id=contact_id,
        since=since,
        q=q,
    )

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get(
    "/sessions/{session_id}/contacts",
    response_model=list[ContactResponse],
    responses={404: {"model": ErrorResponse, "description": "Unknown session"}},
)
async def list_contacts(session_id: str, db: Session = Depends(get_db)) -> list[ContactResponse]:
    if get_channel_session(db, session_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return [ContactResponse.model_validate(contact) for contact in get_contacts(db, session_id)]


# =============================================================================
# Media Route
# =============================================================================

@app.get("/media/{path:path}")
async def serve_media(
    path: str,
    request: Request,
    expires: Annotated[int, Query()],
    signature: Annotated[str, Query()],
) -> FileResponse:
    """Serve a stored attachment behind a signed, expiring URL."""
    blob_store: LocalBlobStore = request.app.state.blob_store
    if not blob_store.verify(path, expires, signature):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid or expired signature")

    try:
        full_path = blob_store.resolve_path(path)
    except BlobStorageError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    if not full_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    return FileResponse(full_path)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
