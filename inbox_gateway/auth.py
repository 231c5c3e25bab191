"""Admin gate for configuration and destructive endpoints."""

import hmac
import logging
from typing import Annotated, Optional

from fastapi import Header, HTTPException, status

from inbox_gateway.config import get_settings

logger = logging.getLogger(__name__)


async def require_admin(
    x_admin_token: Annotated[Optional[str], Header(alias="X-Admin-Token")] = None,
) -> None:
    """
    Allow the request only when X-Admin-Token matches ADMIN_TOKEN.

    With no ADMIN_TOKEN configured every admin call is refused.
    """
    expected = get_settings().ADMIN_TOKEN
    if not expected:
        logger.warning("Admin endpoint called but ADMIN_TOKEN is not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access is not configured")

    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
