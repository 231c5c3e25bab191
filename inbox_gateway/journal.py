"""
Webhook event journal.

Every webhook transaction (provider handshake, provider delivery, test
injection, admin-defined route) leaves one append-only row per outcome.
Writes use their own session and never raise: a broken journal must not
change what the provider receives.
"""

import logging
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from inbox_gateway import storage
from inbox_gateway.metrics import record_journal_failure
from inbox_gateway.models import WebhookEvent

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 200


def request_snapshot(request: Request) -> dict:
    """Headers and query of a request in JSON-storable form."""
    return {
        "headers": dict(request.headers),
        "query": dict(request.query_params),
    }


def record_webhook_event(
    headers: Optional[dict] = None,
    query: Optional[dict] = None,
    body: Any = None,
    response: Optional[dict] = None,
    webhook_id: Optional[str] = None,
) -> Optional[str]:
    """
    Append one journal row (best-effort).

    Returns:
        The new event id, or None if the write failed
    """
    try:
        with storage.SessionLocal() as db:
            row = WebhookEvent(
                webhook_id=webhook_id,
                headers=headers or {},
                query=query or {},
                body=body,
                response=response,
            )
            db.add(row)
            db.commit()
            return row.id
    except Exception:
        logger.exception("Failed to record webhook event")
        record_journal_failure()
        return None


def journal_request(
    request: Request,
    status: int,
    response_body: Any,
    body: Any = None,
    **extra: Any,
) -> Optional[str]:
    """Record a webhook event for `request` with the given response."""
    response = {"status": status, "body": response_body}
    response.update(extra)
    return record_webhook_event(body=body, response=response, **request_snapshot(request))


# =============================================================================
# Admin Queries
# =============================================================================

def list_webhook_events(
    db: Session,
    limit: int = DEFAULT_EVENT_LIMIT,
    webhook_id: Optional[str] = None,
) -> list:
    """Newest-first journal rows, optionally filtered by webhook id."""
    query = db.query(WebhookEvent)
    if webhook_id:
        query = query.filter(WebhookEvent.webhook_id == webhook_id)
    return query.order_by(WebhookEvent.created_at.desc()).limit(limit).all()


def delete_webhook_events(db: Session) -> int:
    count = db.query(WebhookEvent).delete()
    db.commit()
    logger.info(f"Purged {count} webhook events")
    return count


def delete_webhook_event(db: Session, event_id: str) -> bool:
    count = db.query(WebhookEvent).filter(WebhookEvent.id == event_id).delete()
    db.commit()
    return count > 0
