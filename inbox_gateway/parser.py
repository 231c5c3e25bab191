"""
Normalization of Meta WhatsApp Cloud API webhook payloads.

The provider nests messages as entry[] -> changes[] -> value.messages[].
Each supported message becomes one canonical event:

    {"from": str, "body": str | None, "media": {"url", "filename"?} | None, "raw": dict}
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

CAPTIONED_MEDIA_TYPES = ("image", "video")


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _media_url(media: dict) -> Optional[str]:
    return media.get("link") or media.get("id")


def parse_message(msg: dict) -> Optional[dict]:
    """
    Convert one provider message into a canonical event.

    Returns:
        The event dict, or None for unsupported message types
    """
    msg_type = msg.get("type")
    event = {"from": str(msg.get("from")), "body": None, "media": None, "raw": msg}

    if msg_type == "text":
        event["body"] = _as_dict(msg.get("text")).get("body")
    elif msg_type in CAPTIONED_MEDIA_TYPES:
        media = _as_dict(msg.get(msg_type))
        event["media"] = {"url": _media_url(media)}
        event["body"] = media.get("caption")
    elif msg_type == "document":
        document = _as_dict(msg.get("document"))
        event["media"] = {"url": _media_url(document), "filename": document.get("filename")}
        event["body"] = document.get("caption")
    elif msg_type == "audio":
        event["media"] = {"url": _media_url(_as_dict(msg.get("audio")))}
    else:
        logger.info(f"Skipping unsupported message type: {msg_type}")
        return None

    if event["media"] is not None and not event["media"]["url"]:
        logger.warning(f"Skipping {msg_type} message without media link or id")
        return None

    return event


def parse_incoming(payload: Any) -> list:
    """
    Extract canonical message events from a webhook payload.

    Missing or malformed entry/changes/messages levels contribute nothing;
    the function never raises and performs no I/O.

    Args:
        payload: Decoded JSON body of the webhook POST

    Returns:
        Events in payload order
    """
    events = []

    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(_as_dict(change).get("value"))
            for msg in _as_list(value.get("messages")):
                if not isinstance(msg, dict) or not msg.get("from"):
                    continue
                event = parse_message(msg)
                if event is not None:
                    events.append(event)

    logger.debug(f"Parsed {len(events)} events from webhook payload")
    return events
