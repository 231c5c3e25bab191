"""
Conversation threading and message persistence.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inbox_gateway.replies import build_reply_summary
from inbox_gateway.schemas import MessageResponse
from inbox_gateway.storage import (
    create_conversation,
    create_message,
    get_conversation_by_phone,
    touch_conversation,
)
from inbox_gateway.utils import get_mime_type

logger = logging.getLogger(__name__)


def get_or_create_conversation(db: Session, phone: str, display_name: Optional[str] = None):
    """
    Return the conversation for `phone`, creating it on first contact.

    Two requests may race on a new phone. The loser of the insert hits the
    unique constraint and re-selects the winner's row.

    Returns:
        Tuple of (conversation, created)
    """
    conversation = get_conversation_by_phone(db, phone)
    if conversation is not None:
        return conversation, False

    try:
        return create_conversation(db, phone=phone, display_name=display_name), True
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation for {phone} created concurrently, re-selecting")
        conversation = get_conversation_by_phone(db, phone)
        if conversation is None:
            raise
        return conversation, False


def append_message(db: Session, conversation, **fields):
    """
    Persist a message in `conversation`, then advance its activity time.

    The activity update is a separate, repeatable statement.
    """
    message = create_message(db, conversation_id=conversation.id, **fields)
    touch_conversation(db, conversation.id, message.created_at)
    return message


def build_media(media: Optional[dict], status: str) -> Optional[dict]:
    """Complete a {url, filename?} media reference with type and status."""
    if not media or not media.get("url"):
        return None
    filename = media.get("filename")
    return {
        "url": media["url"],
        "filename": filename,
        "type": media.get("type") or get_mime_type(filename or ""),
        "status": status,
    }


def ingest_inbound(
    db: Session,
    phone: str,
    body: Optional[str] = None,
    media: Optional[dict] = None,
    raw=None,
):
    """
    Store one inbound message for `phone`.

    Args:
        db: Database session
        phone: Sender phone number (conversation identity)
        body: Text or caption
        media: {url, filename?} reference
        raw: Verbatim provider message, kept for replay

    Returns:
        The created Message
    """
    conversation, created = get_or_create_conversation(db, phone)
    if created:
        logger.info(f"New conversation for inbound sender {phone}: {conversation.id}")

    return append_message(
        db,
        conversation,
        direction="inbound",
        body=body or None,
        media=build_media(media, "received"),
        status="received",
        raw=raw,
    )


def serialize_message(message) -> dict:
    """Message as sent to REST and realtime clients (camelCase JSON)."""
    response = MessageResponse.model_validate(message)
    if message.reply_target is not None:
        response.reply_to = build_reply_summary(message.reply_target)
    return response.model_dump(mode="json", by_alias=True)
