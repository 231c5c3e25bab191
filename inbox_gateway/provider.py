"""
Outbound client for the Meta WhatsApp Cloud API.
"""

import logging
import re
from typing import Optional

import httpx

from inbox_gateway.config import get_settings
from inbox_gateway.runtime_config import ConfigurationError, ProviderInstanceConfig
from inbox_gateway.utils import media_extension, media_filename

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi", ".mkv", ".webm")
AUDIO_EXTENSIONS = (".mp3", ".mpeg", ".ogg", ".wav", ".aac")


class ProviderError(Exception):
    """The provider rejected the request or could not be reached."""


def build_send_payload(to: str, body: Optional[str] = None, media_url: Optional[str] = None) -> dict:
    """
    Build the /messages request body.

    Media type is picked from the URL extension; anything that is not an
    image, video or audio file is sent as a document. Audio has no caption.
    """
    payload = {
        "messaging_product": "whatsapp",
        "to": re.sub(r"\D", "", to),
    }

    if media_url:
        extension = media_extension(media_url)
        if extension in IMAGE_EXTENSIONS:
            kind, media = "image", {"link": media_url}
        elif extension in VIDEO_EXTENSIONS:
            kind, media = "video", {"link": media_url}
        elif extension in AUDIO_EXTENSIONS:
            kind, media = "audio", {"link": media_url}
        else:
            kind, media = "document", {"link": media_url, "filename": media_filename(media_url)}

        if body and kind != "audio":
            media["caption"] = body
        payload["type"] = kind
        payload[kind] = media
    elif body:
        payload["type"] = "text"
        payload["text"] = {"body": body}

    return payload


class MetaProvider:
    """Sends messages through the Graph API for one phone number."""

    def __init__(self, access_token: str, phone_number_id: str, base_url: Optional[str] = None) -> None:
        settings = get_settings()
        self._access_token = access_token
        self._phone_number_id = phone_number_id
        self._base_url = (base_url or settings.META_GRAPH_API_URL).rstrip("/")
        self._timeout = settings.PROVIDER_TIMEOUT_SECONDS

    @classmethod
    def from_instance(cls, instance: Optional[ProviderInstanceConfig]) -> "MetaProvider":
        """
        Raises:
            ConfigurationError: no usable credentials
        """
        if instance is None:
            raise ConfigurationError(
                "Meta credentials not configured. Set META_TOKEN and META_PHONE_NUMBER_ID "
                "or save the Default WhatsApp Instance."
            )
        if not instance.is_active:
            raise ConfigurationError("Default WhatsApp instance is disabled.")
        if not instance.access_token or not instance.phone_number_id:
            raise ConfigurationError("Default WhatsApp instance is missing required credentials.")
        return cls(instance.access_token, instance.phone_number_id)

    async def send(self, to: str, body: Optional[str] = None, media_url: Optional[str] = None) -> Optional[str]:
        """
        Send one message.

        Returns:
            The provider message id (may be None if the response omits it)

        Raises:
            ProviderError: non-2xx response or transport failure
        """
        url = f"{self._base_url}/{self._phone_number_id}/messages"
        payload = build_send_payload(to, body, media_url)
        headers = {"Authorization": f"Bearer {self._access_token}"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Meta API request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(f"Meta API error: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Meta API returned a non-JSON body: {response.text[:200]}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"Meta API returned an unexpected body: {response.text[:200]}")

        messages = data.get("messages")
        first = messages[0] if isinstance(messages, list) and messages else {}
        provider_id = first.get("id") if isinstance(first, dict) else None
        logger.info(f"Provider accepted message: provider_id={provider_id}, type={payload.get('type')}")
        return provider_id
