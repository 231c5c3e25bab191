"""
Reply-target rules for outbound messages.
"""

import logging

from sqlalchemy.orm import Session

from inbox_gateway.schemas import ReplySummary
from inbox_gateway.storage import get_message_by_id

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 120


class ReplyValidationError(Exception):
    """The requested reply target is not allowed. Maps to HTTP 400."""


def validate_reply_target(db: Session, target_id: str, conversation_id: str):
    """
    Load the message being replied to and check it may be replied to.

    Args:
        db: Database session
        target_id: replyToMessageId from the send request
        conversation_id: Conversation the new message will belong to

    Returns:
        The target Message

    Raises:
        ReplyValidationError: target missing, in another conversation, or outbound
    """
    target = get_message_by_id(db, target_id)

    if target is None:
        raise ReplyValidationError("Reply target not found.")
    if target.conversation_id != conversation_id:
        raise ReplyValidationError("Reply target belongs to a different conversation.")
    if target.direction != "inbound":
        raise ReplyValidationError("You can only reply to incoming messages.")

    return target


def _snippet(message) -> str:
    text = (message.body or "").strip()
    if not text:
        media = message.media or {}
        return media.get("filename") or "Attachment"
    if len(text) > SNIPPET_LENGTH:
        return text[:SNIPPET_LENGTH - 1].rstrip() + "…"
    return text


def build_reply_summary(message) -> ReplySummary:
    """Short description of `message` for rendering a quoted reply."""
    if message.direction == "inbound":
        conversation = message.conversation
        sender = (conversation.display_name or conversation.phone) if conversation else "Contact"
    else:
        sender = "You"

    return ReplySummary(
        id=message.id,
        snippet=_snippet(message),
        sender_label=sender,
        created_at=message.created_at,
    )
