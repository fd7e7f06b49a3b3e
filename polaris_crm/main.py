import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from polaris_crm import storage
from polaris_crm.completion import MistralClient, parse_suggestions
from polaris_crm.config import Settings, get_settings
from polaris_crm.contacts import ContactResolver
from polaris_crm.errors import (
    BadGateway,
    Conflict,
    Forbidden,
    MethodNotAllowed,
    NotFound,
    ServiceUnavailable,
    Unauthorized,
    ValidationFailed,
    register_exception_handlers,
)
from polaris_crm.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from polaris_crm.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from polaris_crm.notifications import NotificationDispatcher
from polaris_crm.orchestrator import ReplyOrchestrator
from polaris_crm.schemas import (
    ActionResponse,
    AssistantImproveRequest,
    AssistantSentimentRequest,
    AssistantSuggestionsRequest,
    DailyWebhookStats,
    ErrorResponse,
    HealthResponse,
    ImprovedMessageResponse,
    MemberCreate,
    MemberResponse,
    MemberUpdate,
    MessageResponse,
    MessagesListResponse,
    SegmentCreate,
    SegmentDetailResponse,
    SegmentMemberAdd,
    SegmentResponse,
    SegmentUpdate,
    SentimentAnalysis,
    StatsResponse,
    SuggestionsResponse,
    TransportCheckResponse,
    WebhookAck,
)
from polaris_crm.storage import check_db_health, get_db, init_db
from polaris_crm.utils import verify_hmac_signature
from polaris_crm.webhook import WebhookProcessor, count_message_changes, verify_subscription
from polaris_crm.whatsapp import WhatsAppClient


# Setup structured JSON logging
setup_logging(get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, report configuration gaps
    """
    init_db()
    for warning in get_settings().validate_settings():
        logger.warning(f"Configuration: {warning}")
    yield


app = FastAPI(
    title="Polaris CRM",
    description="Member CRM with a WhatsApp Business webhook and AI-assisted replies",
    version=get_settings().APP_VERSION,
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Conflict"},
}

SettingsDep = Annotated[Settings, Depends(get_settings)]


# =============================================================================
# External Collaborators (overridden in tests)
# =============================================================================

def get_transport(settings: SettingsDep) -> WhatsAppClient:
    return WhatsAppClient(settings)


def get_completion_provider(settings: SettingsDep) -> MistralClient:
    return MistralClient(settings)


def get_webhook_processor(
    settings: SettingsDep,
    transport=Depends(get_transport),
    provider=Depends(get_completion_provider),
) -> WebhookProcessor:
    """Wire resolver, notifier and orchestrator for one webhook delivery."""
    orchestrator = ReplyOrchestrator(
        settings,
        transport=transport,
        provider=provider,
        notifier=NotificationDispatcher(settings, transport),
    )
    return WebhookProcessor(settings, storage.SessionLocal, ContactResolver(settings), orchestrator)


def _member_or_404(db: Session, member_id: int):
    member = storage.get_member(db, member_id)
    if member is None:
        raise NotFound(f"Member {member_id} not found")
    return member


def _segment_or_404(db: Session, segment_id: int):
    row = storage.get_segment(db, segment_id)
    if row is None:
        raise NotFound(f"Segment {segment_id} not found")
    return row


def _segment_response(segment, member_count: int) -> SegmentResponse:
    return SegmentResponse(
        id=segment.id,
        name=segment.name,
        description=segment.description or "",
        created_at=segment.created_at,
        member_count=member_count,
    )


def _message_response(message, member) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        member_id=message.member_id,
        kind=message.kind,
        content=message.content,
        status=message.status,
        external_message_id=message.external_message_id,
        metadata=message.meta or {},
        created_at=message.created_at,
        updated_at=message.updated_at,
        member_first_name=member.first_name,
        member_last_name=member.last_name,
        member_phone=member.phone,
    )


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
async def health_ready(response: Response, settings: SettingsDep) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WEBHOOK_VERIFY_TOKEN is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_VERIFY_TOKEN not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

def run_webhook_job(processor: WebhookProcessor, payload: dict) -> None:
    """Background task body; the response has already been sent."""
    try:
        processor.process_envelope(payload)
    except Exception as e:
        logger.error(f"Webhook processing aborted: {e}", exc_info=True)


@app.get("/webhook", response_class=PlainTextResponse, responses={403: {"model": ErrorResponse}})
async def verify_webhook(request: Request, settings: SettingsDep) -> PlainTextResponse:
    """
    Meta subscription handshake.

    Accepts hub.mode/hub.verify_token/hub.challenge (as sent by Meta) and the
    underscore spellings. Echoes the challenge when the token matches.
    """
    params = request.query_params
    mode = params.get("hub.mode") or params.get("hub_mode")
    token = params.get("hub.verify_token") or params.get("hub_verify_token")
    challenge = params.get("hub.challenge") or params.get("hub_challenge") or ""

    if verify_subscription(settings, mode, token):
        logger.info("Webhook verification succeeded")
        record_webhook_outcome("verified")
        log_webhook_data(request, result="verified")
        return PlainTextResponse(challenge)

    logger.warning(f"Webhook verification failed (mode={mode})")
    record_webhook_outcome("verification_failed")
    log_webhook_data(request, result="verification_failed")
    raise Forbidden("Webhook verification failed")


@app.post(
    "/webhook",
    response_model=WebhookAck,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid JSON"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        503: {"model": ErrorResponse, "description": "Webhook disabled"},
    },
)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: SettingsDep,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
) -> WebhookAck:
    """
    Receive WhatsApp notifications.

    - Acknowledges with 200 {"status": "ok"} before any processing
    - Processing (statuses, inbound messages, auto replies) runs as a background task
    - Optional X-Hub-Signature-256 check when WEBHOOK_SIGNATURE_VERIFICATION is on
    """
    if not settings.WEBHOOK_ENABLED:
        record_webhook_outcome("disabled")
        log_webhook_data(request, result="disabled")
        raise ServiceUnavailable("Webhook is disabled")

    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if settings.WEBHOOK_SIGNATURE_VERIFICATION:
        if not verify_hmac_signature(raw_body, x_hub_signature_256, settings.WHATSAPP_APP_SECRET):
            logger.error("Invalid X-Hub-Signature-256")
            record_webhook_outcome("invalid_signature")
            log_webhook_data(request, result="invalid_signature")
            raise Unauthorized("Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Invalid webhook JSON: {e}")
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, result="invalid_json")
        raise ValidationFailed("Invalid JSON")

    if not isinstance(payload, dict):
        record_webhook_outcome("invalid_json")
        log_webhook_data(request, result="invalid_json")
        raise ValidationFailed("Webhook body must be a JSON object")

    events = count_message_changes(payload)
    background_tasks.add_task(run_webhook_job, processor, payload)

    record_webhook_outcome("accepted")
    log_webhook_data(request, result="accepted", events=events)
    return WebhookAck(status="ok")


@app.api_route("/webhook", methods=["PUT", "PATCH", "DELETE"], include_in_schema=False)
async def webhook_method_not_allowed(request: Request):
    raise MethodNotAllowed(f"Method {request.method} not allowed on /webhook")


@app.get("/webhook/stats", response_model=DailyWebhookStats)
async def webhook_stats(db: Session = Depends(get_db)) -> DailyWebhookStats:
    """Webhook activity since midnight UTC."""
    return DailyWebhookStats(**storage.get_daily_webhook_stats(db))


# =============================================================================
# Member Routes
# =============================================================================

@app.get("/members", response_model=list[MemberResponse])
async def list_members(db: Session = Depends(get_db)):
    return storage.list_members(db)


@app.get("/members/search", response_model=list[MemberResponse])
async def search_members(
    q: Annotated[str, Query(description="Substring of first name, last name or phone")] = "",
    db: Session = Depends(get_db),
):
    """Search members; an empty query lists everyone."""
    q = q.strip()
    if not q:
        return storage.list_members(db)
    return storage.search_members(db, q)


@app.get("/members/{member_id}", response_model=MemberResponse, responses=ERROR_RESPONSES)
async def get_member(member_id: int, db: Session = Depends(get_db)):
    return _member_or_404(db, member_id)


@app.post(
    "/members",
    response_model=MemberResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_member(body: MemberCreate, db: Session = Depends(get_db)):
    """
    Create a member.

    The phone is stored digits-only; 409 if another member already has it.
    """
    if storage.find_member_by_phone(db, body.phone) is not None:
        raise Conflict("A member with this phone number already exists")
    try:
        return storage.create_member(
            db, first_name=body.first_name, last_name=body.last_name, phone=body.phone
        )
    except IntegrityError:
        db.rollback()
        raise Conflict("A member with this phone number already exists")


@app.put("/members/{member_id}", response_model=MemberResponse, responses=ERROR_RESPONSES)
async def update_member(member_id: int, body: MemberUpdate, db: Session = Depends(get_db)):
    member = _member_or_404(db, member_id)

    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationFailed("No fields to update")

    if "phone" in changes:
        owner = storage.find_member_by_phone(db, changes["phone"])
        if owner is not None and owner.id != member_id:
            raise Conflict("Another member already uses this phone number")

    try:
        return storage.update_member(db, member, **changes)
    except IntegrityError:
        db.rollback()
        raise Conflict("Another member already uses this phone number")


@app.delete("/members/{member_id}", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def delete_member(member_id: int, db: Session = Depends(get_db)) -> ActionResponse:
    """Delete a member with their segment memberships and messages."""
    member = _member_or_404(db, member_id)
    storage.delete_member(db, member)
    return ActionResponse(message="Member deleted")


@app.get(
    "/members/{member_id}/messages",
    response_model=list[MessageResponse],
    responses=ERROR_RESPONSES,
)
async def member_messages(
    member_id: int,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    db: Session = Depends(get_db),
):
    """A member's messages, newest first."""
    _member_or_404(db, member_id)
    rows, _ = storage.get_messages(db, limit=limit, member_id=member_id)
    return [_message_response(message, member) for message, member in rows]


# =============================================================================
# Segment Routes
# =============================================================================

@app.get("/segments", response_model=list[SegmentResponse])
async def list_segments(db: Session = Depends(get_db)):
    return [_segment_response(segment, count) for segment, count in storage.list_segments(db)]


@app.get("/segments/{segment_id}", response_model=SegmentDetailResponse, responses=ERROR_RESPONSES)
async def get_segment(segment_id: int, db: Session = Depends(get_db)):
    segment, count = _segment_or_404(db, segment_id)
    return SegmentDetailResponse(
        **_segment_response(segment, count).model_dump(),
        members=[
            MemberResponse.model_validate(m)
            for m in storage.get_segment_members(db, segment_id)
        ],
    )


@app.post(
    "/segments",
    response_model=SegmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_segment(body: SegmentCreate, db: Session = Depends(get_db)):
    if storage.find_segment_by_name(db, body.name) is not None:
        raise Conflict("A segment with this name already exists")
    try:
        segment = storage.create_segment(db, name=body.name, description=body.description)
    except IntegrityError:
        db.rollback()
        raise Conflict("A segment with this name already exists")
    return _segment_response(segment, 0)


@app.put("/segments/{segment_id}", response_model=SegmentResponse, responses=ERROR_RESPONSES)
async def update_segment(segment_id: int, body: SegmentUpdate, db: Session = Depends(get_db)):
    _segment_or_404(db, segment_id)

    if body.name is None and body.description is None:
        raise ValidationFailed("No fields to update")

    if body.name is not None:
        existing = storage.find_segment_by_name(db, body.name)
        if existing is not None and existing.id != segment_id:
            raise Conflict("A segment with this name already exists")

    try:
        storage.update_segment(db, segment_id, name=body.name, description=body.description)
    except IntegrityError:
        db.rollback()
        raise Conflict("A segment with this name already exists")

    segment, count = storage.get_segment(db, segment_id)
    return _segment_response(segment, count)


@app.delete("/segments/{segment_id}", response_model=ActionResponse, responses=ERROR_RESPONSES)
async def delete_segment(segment_id: int, db: Session = Depends(get_db)) -> ActionResponse:
    _segment_or_404(db, segment_id)
    storage.delete_segment(db, segment_id)
    return ActionResponse(message="Segment deleted")


@app.post(
    "/segments/{segment_id}/members",
    response_model=ActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def add_segment_member(
    segment_id: int,
    body: SegmentMemberAdd,
    db: Session = Depends(get_db),
) -> ActionResponse:
    _segment_or_404(db, segment_id)
    _member_or_404(db, body.member_id)
    try:
        storage.add_member_to_segment(db, segment_id, body.member_id)
    except IntegrityError:
        db.rollback()
        raise Conflict("Member is already in this segment")
    return ActionResponse(message="Member added to segment")


@app.delete(
    "/segments/{segment_id}/members/{member_id}",
    response_model=ActionResponse,
    responses=ERROR_RESPONSES,
)
async def remove_segment_member(
    segment_id: int,
    member_id: int,
    db: Session = Depends(get_db),
) -> ActionResponse:
    if not storage.remove_member_from_segment(db, segment_id, member_id):
        raise NotFound("Member is not in this segment")
    return ActionResponse(message="Member removed from segment")


# =============================================================================
# Messages Route
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    member_id: Annotated[int | None, Query(description="Filter by member")] = None,
    kind: Annotated[str | None, Query(description="Filter by message kind")] = None,
    status_param: Annotated[str | None, Query(alias="status", description="Filter by status")] = None,
    q: Annotated[str | None, Query(description="Free-text search in content (case-insensitive)")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List stored messages with pagination and filtering.

    Ordering:
        - Newest first (created_at DESC, id DESC)

    Response:
        - data: messages joined with their member's name and phone
        - total: count matching filters (ignoring limit/offset)
    """
    logger.info(
        f"GET /messages: limit={limit}, offset={offset}, member_id={member_id}, "
        f"kind={kind}, status={status_param}, q={q}"
    )

    rows, total = storage.get_messages(
        db,
        limit=limit,
        offset=offset,
        member_id=member_id,
        kind=kind,
        status=status_param,
        q=q,
    )

    return MessagesListResponse(
        data=[_message_response(message, member) for message, member in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/messages/{message_id}", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def get_message(message_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    """One stored message with its member's name and phone."""
    message = storage.get_message(db, message_id)
    if message is None:
        raise NotFound(f"Message {message_id} not found")
    return _message_response(message, storage.get_member(db, message.member_id))


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """Store-wide counters: members, segments, messages by status."""
    stats = storage.get_stats(db)
    logger.debug(f"Stats result: {stats}")
    return StatsResponse(**stats)


# =============================================================================
# Assistant Routes
# =============================================================================

def _require_ai(settings: Settings) -> None:
    if not settings.ai_available:
        raise ServiceUnavailable("AI assistance is not available")


@app.post(
    "/assistant/improve",
    response_model=ImprovedMessageResponse,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def improve_message(
    body: AssistantImproveRequest,
    settings: SettingsDep,
    provider: MistralClient = Depends(get_completion_provider),
) -> ImprovedMessageResponse:
    """Rewrite an operator draft for grammar, tone and clarity."""
    _require_ai(settings)
    result = provider.improve_message(body.text)
    if not result.success or not result.text:
        raise BadGateway(f"Completion provider failed: {result.error or 'empty answer'}")
    return ImprovedMessageResponse(text=result.text)


@app.post(
    "/assistant/suggestions",
    response_model=SuggestionsResponse,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def reply_suggestions(
    body: AssistantSuggestionsRequest,
    settings: SettingsDep,
    provider: MistralClient = Depends(get_completion_provider),
) -> SuggestionsResponse:
    """Short reply suggestions for a member message."""
    _require_ai(settings)
    result = provider.suggest_replies(body.text, count=body.count)
    if not result.success:
        raise BadGateway(f"Completion provider failed: {result.error}")
    return SuggestionsResponse(suggestions=parse_suggestions(result.text, body.count))


@app.post(
    "/assistant/sentiment",
    response_model=SentimentAnalysis,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def message_sentiment(
    body: AssistantSentimentRequest,
    settings: SettingsDep,
    provider: MistralClient = Depends(get_completion_provider),
) -> SentimentAnalysis:
    """Sentiment, confidence and emotions of a member message."""
    _require_ai(settings)
    analysis = provider.analyze_sentiment(body.text)
    if analysis is None:
        raise BadGateway("Completion provider returned no usable sentiment analysis")
    return analysis


# =============================================================================
# Diagnostics Route
# =============================================================================

@app.get("/diagnostics/whatsapp", response_model=TransportCheckResponse)
def check_whatsapp(transport: WhatsAppClient = Depends(get_transport)) -> TransportCheckResponse:
    """
    Check the configured WhatsApp token against the Graph API.

    Always 200; `valid` and `error` carry the result.
    """
    result = transport.verify_credentials()
    if not result["valid"]:
        logger.warning(f"WhatsApp credential check failed: {result.get('error')}")
    return TransportCheckResponse(**result)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP, webhook, auto-reply, escalation and provider counters.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
