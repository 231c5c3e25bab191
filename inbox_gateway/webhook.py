"""
Handlers for the provider webhook and admin-defined webhook routes.

These are called by WebhookDispatchMiddleware rather than registered as
FastAPI routes, because their paths change at runtime. Each handler
always produces a response; errors are journaled and turned into 5xx.
"""

import hmac
import json
import logging
import traceback
from typing import Any, Optional

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse

from inbox_gateway import storage
from inbox_gateway.broadcast import MESSAGE_INCOMING, broadcaster
from inbox_gateway.ingest import ingest_inbound, serialize_message
from inbox_gateway.journal import journal_request
from inbox_gateway.logging_utils import log_webhook_data
from inbox_gateway.metrics import record_webhook_outcome
from inbox_gateway.parser import parse_incoming
from inbox_gateway.runtime_config import resolve_webhook_secrets
from inbox_gateway.schemas import CustomRoute
from inbox_gateway.templating import render_template
from inbox_gateway.utils import verify_hmac_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
HANDSHAKE_TEMPLATE = "{{query.hub.challenge}}"
ONLINE_TEXT = (
    "Meta webhook endpoint is online. To verify, Meta will call this URL with "
    "hub.mode=subscribe, hub.verify_token, and hub.challenge query parameters."
)
MISSING_VERIFY_TOKEN_TEXT = (
    "Verify token is not configured. Set META_VERIFY_TOKEN or update the Default WhatsApp Instance."
)


def decode_json(raw_body: bytes) -> Optional[Any]:
    """Decoded JSON body, or None when empty or not JSON."""
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None


def _finish(request: Request, result: str, events: Optional[int] = None) -> None:
    record_webhook_outcome(result)
    log_webhook_data(request, result=result, events=events)


# =============================================================================
# Provider Handshake (GET)
# =============================================================================

async def handle_handshake(request: Request) -> Response:
    """
    Answer the provider's subscription check.

    hub.mode=subscribe with a hub.challenge is a verification attempt; any
    other GET is treated as a health probe.
    """
    query = request.query_params
    mode = query.get("hub.mode")
    challenge = query.get("hub.challenge")
    provided_token = query.get("hub.verify_token") or ""

    if not (mode and mode.lower() == "subscribe" and challenge is not None):
        return PlainTextResponse(ONLINE_TEXT)

    try:
        with storage.SessionLocal() as db:
            instance = resolve_webhook_secrets(db)
        expected_token = instance.webhook_verify_token

        if not expected_token:
            logger.warning("Webhook verification attempted but no verify token is configured")
            journal_request(request, 500, "Missing verify token configuration")
            _finish(request, "handshake_unconfigured")
            return PlainTextResponse(MISSING_VERIFY_TOKEN_TEXT, status_code=500)

        if not hmac.compare_digest(provided_token.encode("utf-8"), expected_token.encode("utf-8")):
            logger.warning("Webhook verification failed: verify token mismatch")
            journal_request(request, 403, "Forbidden")
            _finish(request, "handshake_forbidden")
            return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)

        body = render_template(HANDSHAKE_TEMPLATE, query=dict(query))
        journal_request(request, 200, body)
        _finish(request, "handshake_ok")
        logger.info("Webhook verification succeeded")
        return PlainTextResponse(body)

    except Exception as e:
        logger.exception("Webhook verification error")
        journal_request(request, 500, str(e), error=traceback.format_exc())
        _finish(request, "error")
        return PlainTextResponse("Error", status_code=500)


# =============================================================================
# Provider Event Delivery (POST)
# =============================================================================

async def handle_event(request: Request) -> Response:
    """
    Verify, parse and ingest one provider delivery.

    Messages are ingested one after another in payload order; each gets
    its own journal row and realtime broadcast.
    """
    raw_body = await request.body()
    payload = decode_json(raw_body)
    logger.info(f"Webhook delivery received ({len(raw_body)} bytes)")

    try:
        with storage.SessionLocal() as db:
            instance = resolve_webhook_secrets(db)

            signature = request.headers.get(SIGNATURE_HEADER)
            if not verify_hmac_signature(raw_body, signature, instance.app_secret):
                logger.error("Invalid webhook signature")
                journal_request(request, 401, "Invalid signature", body=payload)
                _finish(request, "invalid_signature")
                return PlainTextResponse("Invalid signature", status_code=status.HTTP_401_UNAUTHORIZED)

            events = parse_incoming(payload)
            if not events:
                logger.warning("No events parsed from webhook payload")
                journal_request(request, 200, "ok - no events", body=payload)
                _finish(request, "no_events", events=0)
                return PlainTextResponse("ok - no events")

            for event in events:
                message = ingest_inbound(
                    db,
                    phone=event["from"],
                    body=event.get("body"),
                    media=event.get("media"),
                    raw=event["raw"],
                )
                journal_request(request, 200, "ok", body=event["raw"])
                await broadcaster.publish(MESSAGE_INCOMING, serialize_message(message))

        _finish(request, "processed", events=len(events))
        logger.info(f"Webhook processed {len(events)} message(s)")
        return PlainTextResponse("ok")

    except Exception as e:
        logger.exception("Webhook processing failed")
        journal_request(request, 500, str(e), body=payload, error=traceback.format_exc())
        _finish(request, "error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )


# =============================================================================
# Admin-defined Routes
# =============================================================================

async def handle_custom_route(request: Request, route: CustomRoute) -> Response:
    """Render the route's template against this request."""
    raw_body = await request.body()
    body = decode_json(raw_body)
    if body is None and raw_body:
        body = raw_body.decode("utf-8", errors="replace")

    rendered = render_template(
        route.response.body,
        query=dict(request.query_params),
        body=body,
        headers=dict(request.headers),
    )

    media_type = "text/plain"
    if route.method == "POST" and decode_json(rendered.encode("utf-8")) is not None:
        media_type = "application/json"

    journal_request(request, route.response.status, rendered, body=body, route=route.path)
    _finish(request, "custom_route")
    return Response(content=rendered, status_code=route.response.status, media_type=media_type)
