import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Form, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import HTMLResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_relay import approval_pages, storage, voice
from sms_relay.approval import EDIT
from sms_relay.config import settings
from sms_relay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from sms_relay.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from sms_relay.rate_limit import enforce_read_api
from sms_relay.reminders import ReminderValidationError
from sms_relay.schemas import (
    ErrorResponse,
    HealthResponse,
    InboundSms,
    MessageSearchItem,
    MessageSearchResponse,
    ReminderCreate,
    ReminderListResponse,
    ReminderResponse,
    SimulateRequest,
    SimulateResponse,
    TelegramAck,
    VoiceModeRequest,
    VoiceModeResponse,
)
from sms_relay.services import Services, get_services
from sms_relay.storage import check_db_health, get_db, init_db
from sms_relay.telegram import parse_callback_data
from sms_relay.telephony import empty_twiml, parse_incoming_message
from sms_relay.utils import escape_html, sanitize_phone_number, verify_api_key, verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
TWIML_MEDIA_TYPE = "text/xml"


async def _reconcile_loop(services: Services, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await services.learner.reconcile_unpromoted()
        except SQLAlchemyError as exc:
            logger.error(f"Rule reconciliation failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, start the reminder checker and rule reconciliation
    - Shutdown: stop background loops and let pending rule extractions finish
    """
    init_db()
    services = app.dependency_overrides.get(get_services, get_services)()

    config = services.settings
    if config.REMINDER_CHECKER_ENABLED:
        services.reminders.start()
    reconcile_task = None
    if config.RECONCILE_ENABLED:
        reconcile_task = asyncio.create_task(_reconcile_loop(services, config.RECONCILE_INTERVAL_SECONDS))

    yield

    await services.reminders.stop()
    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass
    await services.learner.drain()


app = FastAPI(
    title="SMS Relay",
    description="Inbound SMS drafting with human approval before every send",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def _twiml(content: str, status_code: int = 200) -> Response:
    return Response(content=content, media_type=TWIML_MEDIA_TYPE, status_code=status_code)


async def _verified_form(request: Request, services: Services) -> Optional[dict]:
    """Form body of a Twilio webhook, or None when the signature check fails in production."""
    form = {key: str(value) for key, value in (await request.form()).items()}
    if not services.settings.is_production:
        return form
    url = f"{services.settings.PUBLIC_BASE_URL.rstrip('/')}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"
    signature = request.headers.get("x-twilio-signature")
    if not verify_twilio_signature(services.settings.TWILIO_AUTH_TOKEN, signature, url, form):
        return None
    return form


def require_api_key(request: Request, services: Services = Depends(get_services)) -> None:
    if not verify_api_key(request, services.settings.READ_API_KEY):
        logger.warning("Unauthorized reminder request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def search_guard(request: Request, services: Services = Depends(get_services)) -> None:
    enforce_read_api(
        request,
        services.search_limiter,
        services.settings.READ_API_KEY,
        services.settings.read_allowlist,
        "message search",
    )


def simulate_guard(request: Request, services: Services = Depends(get_services)) -> None:
    enforce_read_api(
        request,
        services.simulate_limiter,
        services.settings.READ_API_KEY,
        services.settings.read_allowlist,
        "simulation",
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health(response: Response) -> HealthResponse:
    """Returns 200 while the database is reachable, 503 otherwise."""
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable")
    return HealthResponse(status="ok")


# =============================================================================
# Inbound SMS Routes
# =============================================================================

@app.post("/incoming")
async def incoming_sms(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Response:
    """
    Twilio inbound SMS webhook.

    Always answers with empty TwiML so Twilio does not retry; the message is
    processed after the response is sent.
    """
    form = await _verified_form(request, services)
    if form is None:
        logger.warning("Invalid Twilio signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        return _twiml(empty_twiml(), status.HTTP_403_FORBIDDEN)

    message = parse_incoming_message(form)
    logger.info(f"Received SMS: from={message.from_number}, body={message.body[:50]}")
    log_webhook_data(request=request, message_sid=message.message_sid, result="accepted")

    background_tasks.add_task(services.processor.process, message)
    return _twiml(empty_twiml())


@app.post("/status")
async def delivery_status(request: Request, services: Services = Depends(get_services)) -> Response:
    """Twilio delivery status callback. Logged only; message state is not changed."""
    form = await _verified_form(request, services)
    if form is None:
        logger.warning("Invalid Twilio signature on status callback")
        return _twiml(empty_twiml(), status.HTTP_403_FORBIDDEN)

    sid = form.get("MessageSid")
    message_status = form.get("MessageStatus")
    logger.info(f"Delivery status update: sid={sid}, status={message_status}, to={form.get('To')}")
    if message_status in ("failed", "undelivered"):
        logger.error(f"SMS delivery failed: sid={sid}, to={form.get('To')}, error_code={form.get('ErrorCode')}")
    record_webhook_outcome(f"status_{message_status or 'unknown'}")
    return _twiml(empty_twiml())


# =============================================================================
# Approval Routes
# =============================================================================

@app.post(
    "/approval",
    response_model=TelegramAck,
    responses={401: {"model": ErrorResponse, "description": "Invalid secret token"}},
)
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Annotated[Optional[str], Header()] = None,
    services: Services = Depends(get_services),
) -> TelegramAck:
    """Telegram webhook: handles approve:<id> / reject:<id> button presses."""
    secret = services.settings.TELEGRAM_WEBHOOK_SECRET
    if secret and x_telegram_bot_api_secret_token != secret:
        logger.warning("Telegram webhook auth failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        update = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    callback = update.get("callback_query") if isinstance(update, dict) else None
    if not callback:
        return TelegramAck()

    action, message_id = parse_callback_data(callback.get("data"))
    await services.notifier.answer_callback(str(callback.get("id", "")))
    if action is None:
        logger.warning(f"Unknown callback data: {callback.get('data')}")
        return TelegramAck()

    logger.info(f"Callback received: action={action}, message_id={message_id}")
    telegram_message_id = (callback.get("message") or {}).get("message_id")
    outcome = await services.approval.decide(
        message_id,
        action,
        telegram_message_id=telegram_message_id,
        source="telegram",
    )
    if outcome.status == "already_processed" and telegram_message_id:
        await services.notifier.edit_message(
            telegram_message_id, f"Already processed ({escape_html(outcome.current_status or 'done')})"
        )
    return TelegramAck()


@app.get("/approval/{message_id}", response_class=HTMLResponse)
async def approval_form(message_id: int, db: Session = Depends(get_db)) -> HTMLResponse:
    """Browser approval page for one draft."""
    message = storage.get_message(db, message_id)
    if message is None or message.direction != "outbound":
        return HTMLResponse(approval_pages.not_found_page(), status_code=status.HTTP_404_NOT_FOUND)
    if message.status != "pending_approval":
        return HTMLResponse(approval_pages.already_processed_page(message.status))

    conversation = message.conversation
    page = approval_pages.approval_form_page(
        phone_number=conversation.phone_number,
        client_name=conversation.client_name,
        incoming_body=storage.get_last_inbound_body(db, conversation.id),
        draft_body=message.draft_body or "",
        calendar_context=message.calendar_context,
        action_summary=message.action_summary,
    )
    return HTMLResponse(page)


@app.post("/approval/{message_id}", response_class=HTMLResponse)
async def approval_decision(
    message_id: int,
    action: Annotated[str, Form()],
    edited_body: Annotated[Optional[str], Form()] = None,
    services: Services = Depends(get_services),
) -> HTMLResponse:
    """Apply an approve, edit or reject decision submitted from the approval page."""
    outcome = await services.approval.decide(
        message_id,
        action,
        edited_body=edited_body if action == EDIT else None,
        source="web",
    )
    logger.info(f"Web approval: message_id={message_id}, action={action}, outcome={outcome.status}")
    code, page = approval_pages.outcome_page(outcome)
    return HTMLResponse(page, status_code=code)


# =============================================================================
# Read API Routes
# =============================================================================

@app.get(
    "/messages/search",
    response_model=MessageSearchResponse,
    dependencies=[Depends(search_guard)],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
async def search_messages(
    q: Annotated[Optional[str], Query(description="Case-insensitive text search")] = None,
    phone: Annotated[Optional[str], Query(description="Conversation phone number")] = None,
    direction: Annotated[Optional[str], Query(description="inbound or outbound")] = None,
    limit: Annotated[int, Query(description="Maximum results, clamped to 1..50")] = 20,
    since: Annotated[Optional[datetime], Query(description="Only messages created at or after")] = None,
    db: Session = Depends(get_db),
) -> MessageSearchResponse:
    """Read-only search over stored messages, newest first. Requires q or phone."""
    q = (q or "").strip() or None
    phone = sanitize_phone_number(phone.strip()) if phone and phone.strip() else None
    if not q and not phone:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide q or phone")
    if direction and direction not in ("inbound", "outbound"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="direction must be inbound or outbound")
    limit = max(1, min(limit, 50))

    rows = storage.search_messages(db, query=q, phone=phone, direction=direction, limit=limit, since=since)
    data = [
        MessageSearchItem(
            id=row.id,
            conversation_id=row.conversation_id,
            phone_number=row.conversation.phone_number,
            client_name=row.conversation.client_name,
            direction=row.direction,
            status=row.status,
            body=row.body or "",
            draft_body=row.draft_body,
            created_at=row.created_at,
            sent_at=row.sent_at,
        )
        for row in rows
    ]
    logger.info(f"GET /messages/search: returned {len(data)} messages")
    return MessageSearchResponse(data=data, count=len(data))


@app.post(
    "/simulate",
    response_model=SimulateResponse,
    dependencies=[Depends(simulate_guard)],
)
async def simulate(payload: SimulateRequest, services: Services = Depends(get_services)) -> SimulateResponse:
    """
    Run the inbound pipeline for a fake message. The reviewer is only
    notified when sendApproval is true.
    """
    message = InboundSms(
        message_sid=f"sim_{int(datetime.now().timestamp() * 1000)}",
        from_number=payload.from_number,
        body=payload.message_text,
    )
    result = await services.processor.process(message, send_approval=payload.send_approval)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Simulation failed")
    return SimulateResponse(success=True, result=result)


# =============================================================================
# Reminder Routes
# =============================================================================

@app.post(
    "/reminders",
    response_model=ReminderResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_reminder(
    payload: ReminderCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> ReminderResponse:
    try:
        reminder = services.reminders.create(db, payload.message, payload.scheduled_for)
    except ReminderValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return ReminderResponse.model_validate(reminder)


@app.get("/reminders", response_model=ReminderListResponse, dependencies=[Depends(require_api_key)])
async def list_reminders(
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> ReminderListResponse:
    reminders = [ReminderResponse.model_validate(r) for r in services.reminders.list_pending(db)]
    return ReminderListResponse(data=reminders, count=len(reminders))


@app.delete("/reminders/{reminder_id}", response_model=ReminderResponse, dependencies=[Depends(require_api_key)])
async def cancel_reminder(
    reminder_id: str,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> ReminderResponse:
    """Cancel a reminder that has not been called yet."""
    if not _UUID.match(reminder_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid reminder ID format")
    reminder = services.reminders.cancel(db, reminder_id)
    if reminder is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reminder not found")
    return ReminderResponse.model_validate(reminder)


# =============================================================================
# Voice Routes
# =============================================================================

@app.post("/voice")
async def incoming_call(
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> Response:
    """Twilio voice webhook: dial the AI assistant or the owner depending on the stored mode."""
    form = await _verified_form(request, services)
    if form is None:
        logger.warning("Invalid Twilio signature on voice webhook")
        return _twiml(empty_twiml(), status.HTTP_403_FORBIDDEN)

    mode = voice.get_voice_mode(db)
    logger.info(f"Incoming voice call: mode={mode}, from={form.get('From')}")
    return _twiml(voice.route_call(mode, services.settings.VAPI_PHONE_NUMBER, services.settings.OWNER_PHONE_NUMBER))


@app.get("/voice/mode", response_model=VoiceModeResponse)
async def get_voice_mode(db: Session = Depends(get_db)) -> VoiceModeResponse:
    return VoiceModeResponse(mode=voice.get_voice_mode(db))


@app.post("/voice/mode", response_model=VoiceModeResponse, dependencies=[Depends(require_api_key)])
async def set_voice_mode(payload: VoiceModeRequest, db: Session = Depends(get_db)) -> VoiceModeResponse:
    return VoiceModeResponse(mode=voice.set_voice_mode(db, payload.mode))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including HTTP
    requests, webhook outcomes, drafts, approval decisions, context lookup
    failures and reminder calls.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
