"""
Utility functions for the inbox gateway.

- Webhook signature verification (X-Hub-Signature-256)
- Webhook path normalization
- Media helpers (filename, MIME type, public URL)
"""

import hashlib
import hmac
import logging
import posixpath
import re
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

WEBHOOK_NAMESPACE = "/webhook"
DEFAULT_WEBHOOK_PATH = "/webhook/meta"
SIGNATURE_PREFIX = "sha256="

_REPEATED_SLASHES = re.compile(r"/{2,}")


# =============================================================================
# Signature Verification
# =============================================================================

def verify_hmac_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify the provider's HMAC-SHA256 signature over the raw request body.

    Policy:
        - no secret configured: always passes, header or not
        - secret configured, header missing: fails
        - secret configured, header present: passes iff digests match

    Args:
        body: Raw request body bytes, exactly as received
        signature: X-Hub-Signature-256 header value ("sha256=<hex>")
        secret: App secret, or None when not configured

    Returns:
        True if the request is accepted, False otherwise
    """
    if not secret:
        if signature:
            logger.debug("No app secret configured, ignoring provided signature")
        return True

    if not signature:
        logger.warning("Missing X-Hub-Signature-256 header")
        return False

    provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature

    expected = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


# =============================================================================
# Path Normalization
# =============================================================================

def collapse_path(path: Optional[str]) -> str:
    """
    Trim, force a leading slash, collapse repeated slashes and strip the
    trailing slash (root stays "/").
    """
    value = (path or "").strip()
    if not value.startswith("/"):
        value = "/" + value
    value = _REPEATED_SLASHES.sub("/", value)
    if len(value) > 1 and value.endswith("/"):
        value = value.rstrip("/") or "/"
    return value


def normalize_webhook_path(path: Optional[str]) -> str:
    """
    Standardize a configured webhook path.

    Blank input falls back to DEFAULT_WEBHOOK_PATH. Paths not starting
    with /webhook get it as a prefix. Idempotent.

    >>> normalize_webhook_path("//meta//inbound/")
    '/webhook/meta/inbound'
    """
    if path is None or not str(path).strip():
        return DEFAULT_WEBHOOK_PATH

    value = collapse_path(str(path))
    if in_webhook_namespace(value):
        return value
    if value == "/":
        return WEBHOOK_NAMESPACE
    return WEBHOOK_NAMESPACE + value


def in_webhook_namespace(path: Optional[str]) -> bool:
    """
    Plain prefix test: /webhooks/meta and /webhookx count as inside the
    namespace and are left as they are.
    """
    return collapse_path(path).startswith(WEBHOOK_NAMESPACE)


def paths_match(left: Optional[str], right: Optional[str]) -> bool:
    """Compare two request paths after collapsing slashes on both."""
    return collapse_path(left) == collapse_path(right)


# =============================================================================
# Media Helpers
# =============================================================================

DEFAULT_MIME = "application/octet-stream"

MIME_MAP = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv; charset=utf-8",
    "txt": "text/plain; charset=utf-8",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}


def get_mime_type(filename_or_ext: Optional[str]) -> str:
    """Map a filename or bare extension to a MIME type."""
    normalized = (filename_or_ext or "").strip().lower()
    if not normalized:
        return DEFAULT_MIME
    ext = normalized.rsplit(".", 1)[-1]
    return MIME_MAP.get(ext, DEFAULT_MIME)


def media_filename(media_url: str) -> str:
    """Last path segment of a media URL, ignoring query and fragment."""
    path = media_url.split("?", 1)[0].split("#", 1)[0]
    if "://" in path:
        path = urlsplit(path).path
    return posixpath.basename(path) or "attachment"


def media_extension(media_url: str) -> str:
    """Lower-cased extension (with dot) of a media URL, or ''."""
    return posixpath.splitext(media_filename(media_url))[1].lower()


def resolve_public_media_url(
    media_path: str,
    base_url: Optional[str] = None,
    host: Optional[str] = None,
    proto: Optional[str] = None,
) -> str:
    """
    Turn a relative media path (e.g. /uploads/x.png) into an absolute URL
    the provider can fetch. Absolute http(s) URLs are returned unchanged.

    Args:
        media_path: URL or path as stored on the message
        base_url: Configured public base URL, preferred when set
        host: Request host (X-Forwarded-Host or Host)
        proto: Request scheme (first X-Forwarded-Proto value or request scheme)
    """
    if not media_path or re.match(r"^https?://", media_path, re.IGNORECASE):
        return media_path

    path = media_path if media_path.startswith("/") else "/" + media_path

    if base_url:
        return base_url.rstrip("/") + path

    if not host:
        return media_path

    scheme = (proto or "http").split(",")[0].strip().rstrip(":").lower() or "http"
    return f"{scheme}://{host}{path}"
