import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Any, Optional

from fastapi import BackgroundTasks, FastAPI, Response, Request, Depends, Header, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from guestcomms import storage
from guestcomms.claim_loop import ClaimLoop
from guestcomms.config import settings
from guestcomms.delivery import ConversationNotFoundError, DeliveryExecutor, ListingCache
from guestcomms.logging_utils import setup_logging, RequestLoggingMiddleware, add_log_fields
from guestcomms.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from guestcomms.providers import Tenant
from guestcomms.scheduler import MessageScheduler
from guestcomms.schemas import (
    CancelPendingRequest,
    CancelResponse,
    ConversationMessagesResponse,
    ConversationResponse,
    ConversationStatusRequest,
    ErrorResponse,
    HealthResponse,
    HumanReplyRequest,
    HumanReplyResponse,
    ScheduleReservationRequest,
    ScheduleReservationResponse,
    StatsResponse,
    StatusResponse,
    WebhookResponse,
    conversation_response,
    message_response,
)
from guestcomms.storage import init_db, check_db_health, get_db
from guestcomms.utils import read_record, read_string, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ACCOUNT_ID_PATHS = (
    "accountId", "account_id", "clientId", "client_id",
    "hostawayAccountId", "data.accountId", "data.account_id",
)


@dataclass
class Pipeline:
    """The wired scheduling pipeline for one set of collaborators."""

    tenants: Any
    executor: DeliveryExecutor
    scheduler: MessageScheduler
    claim_loop: ClaimLoop


def build_pipeline(
    tenants,
    pms,
    templates,
    direct_messenger=None,
    reply_generator=None,
    session_factory=None,
) -> Pipeline:
    """
    Wire executor, scheduler and claim loop from the configured settings.

    Install the result with ``app.state.pipeline = build_pipeline(...)``
    before the application starts serving.
    """
    session_factory = session_factory or storage.SessionLocal
    executor = DeliveryExecutor(
        session_factory,
        tenants,
        pms,
        templates,
        direct_messenger=direct_messenger,
        listing_cache=ListingCache(settings.LISTING_CACHE_TTL_SECONDS),
    )
    scheduler = MessageScheduler(
        session_factory,
        tenants,
        pms,
        executor,
        reply_generator=reply_generator,
        followup_hours=settings.POST_BOOKING_FOLLOWUP_HOURS,
    )
    claim_loop = ClaimLoop(
        session_factory,
        executor,
        batch_size=settings.CLAIM_BATCH_SIZE,
        max_iterations=settings.CLAIM_MAX_ITERATIONS,
        lease_seconds=settings.PROCESSING_LEASE_SECONDS,
    )
    return Pipeline(tenants=tenants, executor=executor, scheduler=scheduler, claim_loop=claim_loop)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, start the claim loop when a pipeline is installed
    - Shutdown: Stop the claim loop and wait for the running tick
    """
    init_db()

    stop_event = asyncio.Event()
    task = None
    pipeline = getattr(app.state, "pipeline", None)
    if settings.RUN_CLAIM_LOOP and pipeline is not None:
        task = asyncio.create_task(
            pipeline.claim_loop.run_forever(settings.CLAIM_INTERVAL_SECONDS, stop_event)
        )
    elif settings.RUN_CLAIM_LOOP:
        logger.warning("No pipeline installed, claim loop not started")

    yield

    stop_event.set()
    if task is not None:
        await task


app = FastAPI(
    title="Guest Communications API",
    description="Scheduling and delivery of automated guest messages",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.pipeline = None

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Messaging pipeline not configured"
        )
    return pipeline


def _get_tenant(pipeline: Pipeline, tenant_id: str) -> Tenant:
    try:
        tenant = pipeline.tenants.get_tenant_by_id(tenant_id)
    except LookupError:
        tenant = None
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


def _get_conversation(db: Session, tenant_id: str, conversation_id: str):
    conversation = storage.get_conversation(db, tenant_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. A messaging pipeline is installed

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if getattr(request.app.state, "pipeline", None) is None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Messaging pipeline not configured"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

def _normalize_event(payload: dict) -> dict:
    """Flatten the PMS envelope ({event, data}) into the shape the scheduler reads."""
    event = read_string(payload, "event") or "unknown"
    data = read_record(payload, "data") or {}

    if event == "message.received" or read_string(payload, "object") == "conversationMessage":
        return {**data, "event": "message.received"}
    if event.startswith("reservation."):
        return {**data, "event": event}
    return payload


@app.post(
    "/webhooks/hostaway",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown or missing account"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def hostaway_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Accept a PMS webhook and hand the event to the scheduler.

    - Validates the HMAC-SHA256 X-Signature header when WEBHOOK_SECRET is set
    - Routes the event to the tenant owning the account id in the payload
    - Processing runs after the response; failures are logged, never returned
    """
    raw_body = await request.body()
    logger.debug(f"Webhook request body size: {len(raw_body)} bytes")

    if settings.WEBHOOK_SECRET:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
            logger.error("Missing or invalid webhook signature")
            record_webhook_outcome("invalid_signature")
            add_log_fields(request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("validation_error")
        add_log_fields(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )
    if not isinstance(payload, dict):
        record_webhook_outcome("validation_error")
        add_log_fields(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Webhook body must be a JSON object"
        )

    event = read_string(payload, "event") or "unknown"
    account_id = read_string(payload, *ACCOUNT_ID_PATHS)
    if not account_id:
        record_webhook_outcome("unknown_tenant")
        add_log_fields(request, event=event, result="unknown_tenant")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unable to identify account in webhook payload"
        )

    tenant = await run_in_threadpool(pipeline.tenants.find_tenant_by_account_id, account_id)
    if tenant is None:
        logger.warning(f"Webhook for unknown account {account_id} (event {event})")
        record_webhook_outcome("unknown_tenant")
        add_log_fields(request, event=event, result="unknown_tenant")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unknown account identifier"
        )

    background_tasks.add_task(pipeline.scheduler.handle_event, tenant.id, _normalize_event(payload))

    logger.info(f"Webhook {event} accepted for tenant {tenant.id}")
    record_webhook_outcome("accepted")
    add_log_fields(request, event=event, tenant_id=tenant.id, result="accepted")
    return WebhookResponse(status="ok")


# =============================================================================
# Reservation Routes
# =============================================================================

@app.post(
    "/tenants/{tenant_id}/reservations/schedule",
    response_model=ScheduleReservationResponse,
)
async def schedule_reservation(
    tenant_id: str,
    payload: ScheduleReservationRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> ScheduleReservationResponse:
    """Plan and enqueue proactive messages for one reservation (idempotent)."""
    tenant = await run_in_threadpool(_get_tenant, pipeline, tenant_id)
    message_ids = await run_in_threadpool(
        pipeline.scheduler.schedule_reservation,
        tenant,
        payload.reservation,
        payload.initial_sync,
    )
    logger.info(f"Scheduled {len(message_ids)} messages for tenant {tenant_id}")
    return ScheduleReservationResponse(message_ids=message_ids)


@app.post(
    "/tenants/{tenant_id}/reservations/{reservation_id}/cancel",
    response_model=CancelResponse,
)
async def cancel_reservation(
    tenant_id: str,
    reservation_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> CancelResponse:
    tenant = await run_in_threadpool(_get_tenant, pipeline, tenant_id)
    cancelled = await run_in_threadpool(
        pipeline.scheduler.cancel_reservation_messages, tenant, reservation_id
    )
    return CancelResponse(cancelled=cancelled)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get(
    "/tenants/{tenant_id}/conversations/{conversation_id}/messages",
    response_model=ConversationMessagesResponse,
)
async def list_conversation_messages(
    tenant_id: str,
    conversation_id: str,
    db: Session = Depends(get_db)
) -> ConversationMessagesResponse:
    """
    Message history of one conversation.

    Ordering:
        - Ascending by scheduled send time, falling back to actual send time
          and creation time
    """
    conversation = _get_conversation(db, tenant_id, conversation_id)
    entries = storage.list_conversation_messages(db, tenant_id, conversation_id)
    logger.debug(f"Conversation {conversation_id}: {len(entries)} messages")
    return ConversationMessagesResponse(
        conversation=conversation_response(conversation),
        data=[message_response(entry) for entry in entries],
    )


@app.put(
    "/tenants/{tenant_id}/conversations/{conversation_id}/status",
    response_model=ConversationResponse,
)
async def update_conversation_status(
    tenant_id: str,
    conversation_id: str,
    payload: ConversationStatusRequest,
    db: Session = Depends(get_db)
) -> ConversationResponse:
    """Pause (paused_by_human) or resume (automated) automation."""
    if not storage.set_conversation_status(db, tenant_id, conversation_id, payload.status):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation_response(_get_conversation(db, tenant_id, conversation_id))


@app.post(
    "/tenants/{tenant_id}/conversations/{conversation_id}/messages/cancel-pending",
    response_model=CancelResponse,
)
async def cancel_pending_messages(
    tenant_id: str,
    conversation_id: str,
    payload: Optional[CancelPendingRequest] = None,
    db: Session = Depends(get_db)
) -> CancelResponse:
    _get_conversation(db, tenant_id, conversation_id)
    cancelled = storage.cancel_all_pending_messages(
        db, tenant_id, conversation_id, payload.reason if payload else None
    )
    return CancelResponse(cancelled=cancelled)


@app.post(
    "/tenants/{tenant_id}/conversations/{conversation_id}/messages/{message_id}/cancel",
    response_model=StatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Not found or already processed"}},
)
async def cancel_message(
    tenant_id: str,
    conversation_id: str,
    message_id: str,
    db: Session = Depends(get_db)
) -> StatusResponse:
    """Cancel one pending job. Losing the race against the claim loop is a 404."""
    if not storage.cancel_pending_message(db, tenant_id, conversation_id, message_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found or already processed"
        )
    return StatusResponse(status="ok")


@app.post(
    "/tenants/{tenant_id}/conversations/{conversation_id}/reply",
    response_model=HumanReplyResponse,
    responses={502: {"model": ErrorResponse, "description": "Provider send failed"}},
)
async def send_human_reply(
    tenant_id: str,
    conversation_id: str,
    payload: HumanReplyRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> HumanReplyResponse:
    tenant = await run_in_threadpool(_get_tenant, pipeline, tenant_id)
    try:
        entry_id = await run_in_threadpool(
            pipeline.executor.send_human_reply, tenant, conversation_id, payload.message
        )
    except ConversationNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except Exception as e:
        logger.error(f"Human reply in conversation {conversation_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return HumanReplyResponse(id=entry_id)


# =============================================================================
# Stats Route
# =============================================================================

@app.get(
    "/stats",
    response_model=StatsResponse,
)
async def get_statistics(
    db: Session = Depends(get_db)
) -> StatsResponse:
    """
    Job-level analytics.

    Response:
        - total_messages: Total count of log entries
        - messages_by_status: Count per status
        - conversations_count / paused_conversations
        - next_scheduled_send_at: Earliest pending send time (null if none)
    """
    stats = storage.get_stats(db)
    logger.info(f"GET /stats: returned stats for {stats['total_messages']} messages")
    return StatsResponse(**stats)


@app.get(
    "/tenants/{tenant_id}/stats",
    response_model=StatsResponse,
)
async def get_tenant_statistics(
    tenant_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
) -> StatsResponse:
    """Same figures as /stats, limited to one tenant's conversations and messages."""
    _get_tenant(pipeline, tenant_id)
    stats = storage.get_stats(db, tenant_id=tenant_id)
    logger.info(f"GET /tenants/{tenant_id}/stats: returned stats for {stats['total_messages']} messages")
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP request counts and latency, webhook outcomes, and the
    scheduling, claim and settlement counters.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
