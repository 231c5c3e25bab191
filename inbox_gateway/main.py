import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from inbox_gateway import journal
from inbox_gateway.auth import require_admin
from inbox_gateway.broadcast import MESSAGE_DELETED, MESSAGE_INCOMING, MESSAGE_OUTGOING, broadcaster
from inbox_gateway.config import get_settings, settings
from inbox_gateway.ingest import append_message, build_media, get_or_create_conversation, ingest_inbound, serialize_message
from inbox_gateway.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from inbox_gateway.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from inbox_gateway.provider import MetaProvider, ProviderError
from inbox_gateway.replies import ReplyValidationError, validate_reply_target
from inbox_gateway.routing import WebhookDispatchMiddleware
from inbox_gateway.runtime_config import (
    ConfigurationError,
    get_api_controls,
    get_custom_routes,
    get_default_instance,
    get_webhook_path_settings,
    load_webhook_path,
    save_default_instance,
    save_webhook_path,
    set_api_controls,
    set_custom_routes,
    webhook_path_config,
)
from inbox_gateway.schemas import (
    ApiControls,
    ApiControlsUpdate,
    ConversationEnvelope,
    ConversationResponse,
    CreateConversationRequest,
    CustomRouteSettings,
    CustomRoutesUpdate,
    DeleteMessageResponse,
    HealthResponse,
    InjectedMessageRequest,
    InjectedMessageResponse,
    OkResponse,
    ProviderInstanceEnvelope,
    ProviderInstanceUpdate,
    SendMessageRequest,
    SendMessageResponse,
    StatsResponse,
    WebhookEventList,
    WebhookEventResponse,
    WebhookPathEnvelope,
    WebhookPathSettings,
    WebhookPathUpdate,
    WebhookStatusFlags,
    WebhookStatusInstance,
    WebhookStatusResponse,
)
from inbox_gateway.storage import (
    SessionLocal,
    check_db_health,
    delete_conversation,
    delete_message,
    get_conversation_by_id,
    get_db,
    get_stats,
    init_db,
)
from inbox_gateway.utils import media_filename, resolve_public_media_url


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and load the persisted provider webhook path.
    """
    init_db()
    with SessionLocal() as db:
        load_webhook_path(db)
    yield


app = FastAPI(
    title="Inbox Gateway",
    description="WhatsApp Cloud API webhook ingestion, threading and realtime fan-out",
    version="1.0.0",
    lifespan=lifespan,
)

# Order matters: the last middleware added runs first, so request logging
# wraps the runtime webhook dispatcher.
app.add_middleware(WebhookDispatchMiddleware)
app.add_middleware(RequestLoggingMiddleware)

AdminDep = Depends(require_admin)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Generic 500 with a JSON body; details stay in the log."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Realtime Channel
# =============================================================================

@app.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """
    Push channel for message_incoming / message_outgoing / message_deleted.

    Client frames are read and ignored; they only keep the socket alive.
    """
    broadcaster.register(websocket)
    try:
        await websocket.accept()
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected")
    except Exception:
        logger.exception("Realtime connection error")
    finally:
        broadcaster.unregister(websocket)


# =============================================================================
# Test Injection Route
# =============================================================================

@app.post("/webhook/test", response_model=InjectedMessageResponse)
async def inject_test_message(
    request: Request,
    payload: InjectedMessageRequest,
    db: Session = Depends(get_db),
) -> InjectedMessageResponse:
    """
    Simulate an inbound message without a provider delivery.

    Disabled (403) when the testWebhookEnabled API control is off.
    """
    if not get_api_controls(db).test_webhook_enabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Test webhooks are disabled")

    phone = (payload.from_phone or "").strip()
    if not phone:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="'from' (phone) is required")

    raw = payload.model_dump(by_alias=True, exclude_none=True)
    message = ingest_inbound(db, phone=phone, body=payload.body, media=payload.media, raw=raw)
    data = serialize_message(message)

    journal.journal_request(request, 200, "ok", body=raw)
    record_webhook_outcome("test_injected")
    log_webhook_data(request, result="test_injected", events=1)

    await broadcaster.publish(MESSAGE_INCOMING, data)
    return InjectedMessageResponse(message=data)


# =============================================================================
# Conversation & Message Routes
# =============================================================================

@app.post("/api/conversations", response_model=ConversationEnvelope)
async def open_conversation(
    payload: CreateConversationRequest,
    db: Session = Depends(get_db),
) -> ConversationEnvelope:
    """Return the conversation for a phone number, creating it if needed."""
    phone = (payload.phone or "").strip()
    if not phone:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Phone number is required.")

    display_name = (payload.display_name or "").strip() or None
    conversation, _ = get_or_create_conversation(db, phone, display_name=display_name)
    return ConversationEnvelope(conversation=ConversationResponse.model_validate(conversation))


@app.delete("/api/conversations/{conversation_id}", response_model=OkResponse, dependencies=[AdminDep])
async def remove_conversation(conversation_id: str, db: Session = Depends(get_db)) -> OkResponse:
    """Delete a conversation and all of its messages."""
    if not delete_conversation(db, conversation_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return OkResponse()


@app.post("/api/message/send", response_model=SendMessageResponse)
async def send_message(
    request: Request,
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    """
    Send a message through the provider and store it.

    A provider failure does not fail the request: the message is stored
    with status "failed" and returned so the draft is never lost.
    """
    if not payload.conversation_id and not (payload.to or "").strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="conversationId or to is required.")
    if not payload.body and not payload.media_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="body or media_url is required.")

    if payload.conversation_id:
        conversation = get_conversation_by_id(db, payload.conversation_id)
        if conversation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found.")
    else:
        conversation, _ = get_or_create_conversation(db, payload.to.strip())

    if payload.reply_to_message_id:
        try:
            validate_reply_target(db, payload.reply_to_message_id, conversation.id)
        except ReplyValidationError as e:
            logger.warning(f"Rejected reply target {payload.reply_to_message_id}: {e}")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(
        f"message_send_attempt conversation={conversation.id} "
        f"reply_to={payload.reply_to_message_id} has_media={bool(payload.media_url)}"
    )

    message_status = "sent"
    provider_message_id: Optional[str] = None
    try:
        provider = MetaProvider.from_instance(get_default_instance(db))
        provider_media_url = None
        if payload.media_url:
            provider_media_url = resolve_public_media_url(
                payload.media_url,
                base_url=get_settings().PUBLIC_BASE_URL,
                host=request.headers.get("x-forwarded-host") or request.headers.get("host"),
                proto=request.headers.get("x-forwarded-proto") or request.url.scheme,
            )
        provider_message_id = await provider.send(conversation.phone, payload.body, provider_media_url)
    except (ConfigurationError, ProviderError) as e:
        logger.warning(f"Failed to send via provider, saving locally: {e}")
        message_status = "failed"

    media = None
    if payload.media_url:
        media = build_media(
            {"url": payload.media_url, "filename": media_filename(payload.media_url)},
            message_status,
        )

    message = append_message(
        db,
        conversation,
        direction="outbound",
        body=payload.body or None,
        media=media,
        provider_message_id=provider_message_id,
        status=message_status,
        reply_to_message_id=payload.reply_to_message_id,
    )
    data = serialize_message(message)

    await broadcaster.publish(MESSAGE_OUTGOING, data)
    return SendMessageResponse(message=data)


@app.delete("/api/messages/{message_id}", response_model=DeleteMessageResponse, dependencies=[AdminDep])
async def remove_message(message_id: str, db: Session = Depends(get_db)) -> DeleteMessageResponse:
    deleted = delete_message(db, message_id)
    if deleted is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")

    await broadcaster.publish(MESSAGE_DELETED, deleted)
    return DeleteMessageResponse(message_id=deleted["id"], conversation_id=deleted["conversationId"])


# =============================================================================
# Admin Configuration Routes
# =============================================================================

@app.get("/api/admin/webhook-config", response_model=WebhookPathEnvelope, dependencies=[AdminDep])
async def read_webhook_config(db: Session = Depends(get_db)) -> WebhookPathEnvelope:
    return WebhookPathEnvelope(config=WebhookPathSettings.model_validate(get_webhook_path_settings(db)))


@app.put("/api/admin/webhook-config", response_model=WebhookPathEnvelope, dependencies=[AdminDep])
async def update_webhook_config(
    payload: WebhookPathUpdate,
    db: Session = Depends(get_db),
) -> WebhookPathEnvelope:
    """Move the provider webhook to a new path; effective on the next request."""
    if not (payload.path or "").strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Path is required.")
    updated = save_webhook_path(db, payload.path)
    return WebhookPathEnvelope(config=WebhookPathSettings.model_validate(updated))


@app.get("/api/admin/whatsapp/default-instance", response_model=ProviderInstanceEnvelope, dependencies=[AdminDep])
async def read_default_instance(db: Session = Depends(get_db)) -> ProviderInstanceEnvelope:
    instance = get_default_instance(db)
    return ProviderInstanceEnvelope(instance=instance.to_response() if instance else None)


@app.put("/api/admin/whatsapp/default-instance", response_model=ProviderInstanceEnvelope, dependencies=[AdminDep])
async def update_default_instance(
    payload: ProviderInstanceUpdate,
    db: Session = Depends(get_db),
) -> ProviderInstanceEnvelope:
    try:
        instance = save_default_instance(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ProviderInstanceEnvelope(instance=instance.to_response())


@app.get("/api/admin/api-controls", response_model=ApiControls, dependencies=[AdminDep])
async def read_api_controls(db: Session = Depends(get_db)) -> ApiControls:
    return get_api_controls(db)


@app.post("/api/admin/api-controls", response_model=ApiControls, dependencies=[AdminDep])
async def update_api_controls(payload: ApiControlsUpdate, db: Session = Depends(get_db)) -> ApiControls:
    return set_api_controls(db, payload.test_webhook_enabled)


@app.get("/api/admin/custom-webhooks", response_model=CustomRouteSettings, dependencies=[AdminDep])
async def read_custom_webhooks(db: Session = Depends(get_db)) -> CustomRouteSettings:
    return get_custom_routes(db)


@app.put("/api/admin/custom-webhooks", response_model=CustomRouteSettings, dependencies=[AdminDep])
async def update_custom_webhooks(payload: CustomRoutesUpdate, db: Session = Depends(get_db)) -> CustomRouteSettings:
    """Replace the admin-defined routes; an empty list restores the defaults."""
    return set_custom_routes(db, payload.routes)


# =============================================================================
# Webhook Journal Routes
# =============================================================================

@app.get("/api/webhooks/events", response_model=WebhookEventList, dependencies=[AdminDep])
async def list_webhook_events(
    limit: Annotated[int, Query(ge=1, le=1000)] = journal.DEFAULT_EVENT_LIMIT,
    webhook_id: Annotated[Optional[str], Query(alias="webhookId")] = None,
    db: Session = Depends(get_db),
) -> WebhookEventList:
    """Newest-first journal entries."""
    items = journal.list_webhook_events(db, limit=limit, webhook_id=(webhook_id or "").strip() or None)
    return WebhookEventList(items=[WebhookEventResponse.model_validate(item) for item in items])


@app.delete("/api/webhooks/events", response_model=OkResponse, dependencies=[AdminDep])
async def purge_webhook_events(db: Session = Depends(get_db)) -> OkResponse:
    journal.delete_webhook_events(db)
    return OkResponse()


@app.post("/api/webhooks/clear", response_model=OkResponse, dependencies=[AdminDep])
async def clear_webhook_events(db: Session = Depends(get_db)) -> OkResponse:
    journal.delete_webhook_events(db)
    return OkResponse()


@app.delete("/api/webhooks/events/{event_id}", response_model=OkResponse, dependencies=[AdminDep])
async def remove_webhook_event(event_id: str, db: Session = Depends(get_db)) -> OkResponse:
    journal.delete_webhook_event(db, event_id)
    return OkResponse()


@app.get("/api/webhook/status", response_model=WebhookStatusResponse, dependencies=[AdminDep])
async def webhook_status(request: Request, db: Session = Depends(get_db)) -> WebhookStatusResponse:
    """Provider configuration summary and the ten most recent journal entries."""
    webhook_url = str(request.base_url).rstrip("/") + webhook_path_config.path
    instance = get_default_instance(db)

    if instance is not None:
        summary = WebhookStatusInstance(**instance.to_response().model_dump(), webhook_url=webhook_url)
    else:
        summary = WebhookStatusInstance(
            name="Default WhatsApp Instance",
            is_active=False,
            source="env",
            webhook_url=webhook_url,
        )

    recent = journal.list_webhook_events(db, limit=10)
    return WebhookStatusResponse(
        instance=summary,
        recent_events=[WebhookEventResponse.model_validate(item) for item in recent],
        status=WebhookStatusFlags(
            is_configured=bool(instance and instance.access_token and instance.phone_number_id),
            has_webhook_secret=bool(instance and instance.app_secret),
            has_verify_token=bool(instance and instance.webhook_verify_token),
            is_active=instance.is_active if instance else True,
            webhook_behavior=instance.webhook_behavior if instance else "auto",
        ),
    )


# =============================================================================
# Stats & Metrics Routes
# =============================================================================

@app.get("/api/statistics", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """Message totals, most active conversations and recent activity."""
    return StatsResponse.model_validate(get_stats(db))


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
