"""
Admin-editable configuration kept in the settings store.

- provider webhook path (mirrored into a live in-process object)
- default provider instance (credentials, verify token, app secret)
- admin-defined webhook routes with response templates
- API controls (feature flags)

Everything except the webhook path is re-read from the store on each
request, so admin changes apply without a restart.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from inbox_gateway.config import get_settings
from inbox_gateway.schemas import (
    ApiControls,
    CustomRoute,
    CustomRouteSettings,
    ProviderInstanceResponse,
    ProviderInstanceUpdate,
)
from inbox_gateway.storage import get_app_setting, set_app_setting
from inbox_gateway.utils import DEFAULT_WEBHOOK_PATH, normalize_webhook_path, paths_match

logger = logging.getLogger(__name__)

META_WEBHOOK_KEY = "metaWebhook"
DEFAULT_INSTANCE_KEY = "defaultWhatsappInstance"
CUSTOM_ROUTES_KEY = "customWebhookResponse"
API_CONTROLS_KEY = "apiControls"

DEFAULT_INSTANCE_NAME = "Default WhatsApp Instance"
WEBHOOK_BEHAVIORS = ("auto", "accept", "reject")


class ConfigurationError(Exception):
    """Provider configuration is missing or disabled."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Provider Webhook Path
# =============================================================================

class WebhookPathConfig:
    """
    Live provider-webhook path.

    The dispatcher compares every request against `path`; the admin
    endpoint replaces it in place, so the next request sees the change.
    """

    def __init__(self, path: str = DEFAULT_WEBHOOK_PATH) -> None:
        self.path = normalize_webhook_path(path)

    def update(self, path: str) -> str:
        self.path = normalize_webhook_path(path)
        logger.info(f"Provider webhook path set to {self.path}")
        return self.path

    def matches(self, request_path: str) -> bool:
        return paths_match(request_path, self.path)


webhook_path_config = WebhookPathConfig()


def get_webhook_path_settings(db: Session) -> dict:
    stored = get_app_setting(db, META_WEBHOOK_KEY) or {}
    return {
        "path": normalize_webhook_path(stored.get("path")),
        "updatedAt": stored.get("updatedAt"),
    }


def load_webhook_path(db: Session) -> str:
    """Copy the persisted path into the live config (startup)."""
    return webhook_path_config.update(get_webhook_path_settings(db)["path"])


def save_webhook_path(db: Session, path: str) -> dict:
    normalized = normalize_webhook_path(path)
    set_app_setting(db, META_WEBHOOK_KEY, {"path": normalized, "updatedAt": _now_iso()})
    webhook_path_config.update(normalized)
    return get_webhook_path_settings(db)


# =============================================================================
# Provider Instance
# =============================================================================

class ProviderInstanceConfig(BaseModel):
    """Credentials and webhook secrets of the provider instance."""
    id: str = "default"
    name: str = DEFAULT_INSTANCE_NAME
    phone_number_id: str = ""
    access_token: str = ""
    webhook_verify_token: Optional[str] = None
    app_secret: Optional[str] = None
    webhook_behavior: str = "auto"
    is_active: bool = True
    updated_at: Optional[str] = None
    source: str = "custom"

    def to_response(self) -> ProviderInstanceResponse:
        return ProviderInstanceResponse(
            id=self.id,
            name=self.name,
            phone_number_id=self.phone_number_id,
            webhook_behavior=self.webhook_behavior,
            is_active=self.is_active,
            source=self.source,
            updated_at=self.updated_at,
            access_token_configured=bool(self.access_token),
            webhook_verify_token_configured=bool(self.webhook_verify_token),
            app_secret_configured=bool(self.app_secret),
        )


def get_default_instance(db: Session) -> Optional[ProviderInstanceConfig]:
    """
    Stored instance if one was saved, else one built from META_* env vars,
    else None.
    """
    stored = get_app_setting(db, DEFAULT_INSTANCE_KEY)
    if stored:
        return ProviderInstanceConfig(
            name=stored.get("name") or DEFAULT_INSTANCE_NAME,
            phone_number_id=stored.get("phoneNumberId") or "",
            access_token=stored.get("accessToken") or "",
            webhook_verify_token=stored.get("webhookVerifyToken"),
            app_secret=stored.get("appSecret"),
            webhook_behavior=stored.get("webhookBehavior") or "auto",
            is_active=stored.get("isActive") if isinstance(stored.get("isActive"), bool) else True,
            updated_at=stored.get("updatedAt"),
            source="custom",
        )

    settings = get_settings()
    if settings.META_TOKEN or settings.META_PHONE_NUMBER_ID:
        return ProviderInstanceConfig(
            phone_number_id=settings.META_PHONE_NUMBER_ID or "",
            access_token=settings.META_TOKEN or "",
            webhook_verify_token=settings.META_VERIFY_TOKEN,
            app_secret=settings.META_APP_SECRET,
            source="env",
        )

    return None


def resolve_webhook_secrets(db: Session) -> ProviderInstanceConfig:
    """
    Instance whose verify token / app secret apply to the provider webhook.

    Falls back to the META_* env vars when nothing is configured.

    Raises:
        ConfigurationError: a stored instance is disabled or lacks credentials
    """
    instance = get_default_instance(db)

    if instance is None:
        settings = get_settings()
        return ProviderInstanceConfig(
            webhook_verify_token=settings.META_VERIFY_TOKEN,
            app_secret=settings.META_APP_SECRET,
            source="env",
        )

    if not instance.is_active:
        raise ConfigurationError("Default WhatsApp instance is disabled.")

    if instance.source == "custom" and not (instance.access_token and instance.phone_number_id):
        raise ConfigurationError("Default WhatsApp instance is missing required credentials.")

    return instance


def _clean_secret(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def save_default_instance(db: Session, update: ProviderInstanceUpdate) -> ProviderInstanceConfig:
    """
    Merge `update` into the current instance and persist it.

    Raises:
        ValueError: with a user-facing message when the result is unusable
    """
    current = get_default_instance(db)
    provided = update.model_fields_set

    name = (update.name or "").strip() or (current.name if current else "") or DEFAULT_INSTANCE_NAME
    phone_number_id = (update.phone_number_id or "").strip() or (current.phone_number_id if current else "")
    if not phone_number_id:
        raise ValueError("Phone Number ID is required.")

    if update.access_token is not None and not update.access_token.strip():
        raise ValueError("Access token cannot be empty.")
    access_token = (update.access_token or "").strip() or (current.access_token if current else "")
    if not access_token:
        raise ValueError("Access token is required.")

    verify_token = current.webhook_verify_token if current else None
    if "webhook_verify_token" in provided:
        verify_token = _clean_secret(update.webhook_verify_token)

    app_secret = current.app_secret if current else None
    if "app_secret" in provided:
        app_secret = _clean_secret(update.app_secret)

    behavior = update.webhook_behavior if update.webhook_behavior in WEBHOOK_BEHAVIORS else None
    behavior = behavior or (current.webhook_behavior if current else "auto")

    is_active = update.is_active if update.is_active is not None else (current.is_active if current else True)

    set_app_setting(db, DEFAULT_INSTANCE_KEY, {
        "id": "default",
        "name": name,
        "phoneNumberId": phone_number_id,
        "accessToken": access_token,
        "webhookVerifyToken": verify_token,
        "appSecret": app_secret,
        "webhookBehavior": behavior,
        "isActive": is_active,
        "updatedAt": _now_iso(),
    })
    return get_default_instance(db)


# =============================================================================
# Custom Webhook Routes
# =============================================================================

def default_custom_routes() -> list:
    return [
        CustomRoute(method="GET", path=DEFAULT_WEBHOOK_PATH,
                    response={"status": 200, "body": "{{query.hub.challenge}}"}),
        CustomRoute(method="POST", path="/webhook/custom",
                    response={"status": 200, "body": "{{json body}}"}),
    ]


def _sanitize_route(route: CustomRoute) -> CustomRoute:
    return CustomRoute(
        method=route.method,
        path=normalize_webhook_path(route.path),
        response=route.response,
    )


def get_custom_routes(db: Session) -> CustomRouteSettings:
    stored = get_app_setting(db, CUSTOM_ROUTES_KEY)
    if not stored or not isinstance(stored.get("routes"), list):
        return CustomRouteSettings(routes=default_custom_routes())

    routes = []
    for raw in stored["routes"]:
        try:
            routes.append(_sanitize_route(CustomRoute.model_validate(raw)))
        except ValueError as e:
            logger.warning(f"Ignoring invalid stored custom route {raw!r}: {e}")

    return CustomRouteSettings(
        routes=routes or default_custom_routes(),
        updated_at=stored.get("updatedAt"),
    )


def set_custom_routes(db: Session, routes: list) -> CustomRouteSettings:
    sanitized = [_sanitize_route(route) for route in routes] or default_custom_routes()
    set_app_setting(db, CUSTOM_ROUTES_KEY, {
        "routes": [route.model_dump() for route in sanitized],
        "updatedAt": _now_iso(),
    })
    return get_custom_routes(db)


def find_custom_route(db: Session, method: str, path: str) -> Optional[CustomRoute]:
    """First configured route whose method and path match the request."""
    for route in get_custom_routes(db).routes:
        if route.method == method.upper() and paths_match(route.path, path):
            return route
    return None


# =============================================================================
# API Controls
# =============================================================================

def get_api_controls(db: Session) -> ApiControls:
    stored = get_app_setting(db, API_CONTROLS_KEY) or {}
    enabled = stored.get("testWebhookEnabled")
    return ApiControls(test_webhook_enabled=enabled if isinstance(enabled, bool) else True)


def set_api_controls(db: Session, test_webhook_enabled: Optional[bool]) -> ApiControls:
    current = get_api_controls(db)
    if test_webhook_enabled is not None:
        current.test_webhook_enabled = test_webhook_enabled
    set_app_setting(db, API_CONTROLS_KEY, current.model_dump(by_alias=True))
    return current
