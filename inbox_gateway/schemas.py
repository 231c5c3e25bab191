"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for REST and test-injection endpoints
- Response models (camelCase on the wire)
- Admin configuration models
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Message / Conversation Models
# =============================================================================

class MediaInfo(BaseModel):
    """Attachment metadata stored on a message."""
    url: Optional[str] = None
    filename: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class ReplySummary(CamelModel):
    """Denormalized view of the message being replied to."""
    id: str
    snippet: str
    sender_label: str
    created_at: Optional[datetime] = None


class MessageResponse(CamelModel):
    id: str
    conversation_id: str
    direction: Literal["inbound", "outbound"]
    body: Optional[str] = None
    media: Optional[MediaInfo] = None
    provider_message_id: Optional[str] = None
    status: str
    reply_to_message_id: Optional[str] = None
    reply_to: Optional[ReplySummary] = None
    created_at: Optional[datetime] = None


class ConversationResponse(CamelModel):
    id: str
    phone: str
    display_name: Optional[str] = None
    archived: bool = False
    last_activity_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SendMessageRequest(CamelModel):
    """
    Outbound send request.

    Either `to` or `conversationId` identifies the destination, and at
    least one of `body` / `media_url` must be present.
    """
    to: Optional[str] = None
    body: Optional[str] = None
    media_url: Optional[str] = Field(default=None, alias="media_url")
    conversation_id: Optional[str] = None
    reply_to_message_id: Optional[str] = None


class SendMessageResponse(BaseModel):
    ok: bool = True
    message: MessageResponse


class CreateConversationRequest(CamelModel):
    phone: Optional[str] = None
    display_name: Optional[str] = None


class ConversationEnvelope(BaseModel):
    conversation: ConversationResponse


class InjectedMessageRequest(BaseModel):
    """Simulated inbound message for local testing."""
    from_phone: Optional[str] = Field(default=None, alias="from")
    body: Optional[str] = None
    media: Optional[dict] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class InjectedMessageResponse(BaseModel):
    ok: bool = True
    message: MessageResponse


class DeleteMessageResponse(CamelModel):
    ok: bool = True
    message_id: str
    conversation_id: str


class OkResponse(BaseModel):
    ok: bool = True


# =============================================================================
# Journal Models
# =============================================================================

class WebhookEventResponse(CamelModel):
    id: str
    webhook_id: Optional[str] = None
    headers: Optional[dict] = None
    query: Optional[dict] = None
    body: Any = None
    response: Optional[dict] = None
    created_at: Optional[datetime] = None


class WebhookEventList(BaseModel):
    items: list[WebhookEventResponse] = Field(default_factory=list)


# =============================================================================
# Admin Configuration Models
# =============================================================================

class WebhookPathUpdate(BaseModel):
    path: Optional[str] = None


class WebhookPathSettings(CamelModel):
    path: str
    updated_at: Optional[str] = None


class WebhookPathEnvelope(BaseModel):
    config: WebhookPathSettings


class ApiControls(CamelModel):
    test_webhook_enabled: bool = True


class ApiControlsUpdate(CamelModel):
    test_webhook_enabled: Optional[bool] = None


class CustomRouteResponseConfig(BaseModel):
    status: int = Field(default=200, ge=100, le=599)
    body: str = ""


class CustomRoute(BaseModel):
    method: Literal["GET", "POST"] = "GET"
    path: str
    response: CustomRouteResponseConfig = Field(default_factory=CustomRouteResponseConfig)


class CustomRouteSettings(CamelModel):
    routes: list[CustomRoute] = Field(default_factory=list)
    updated_at: Optional[str] = None


class CustomRoutesUpdate(BaseModel):
    routes: list[CustomRoute] = Field(default_factory=list)


class ProviderInstanceUpdate(CamelModel):
    """
    Partial update of the provider instance.

    Omitted fields keep their current value; verify token and app secret
    may be cleared by sending null or an empty string.
    """
    name: Optional[str] = None
    phone_number_id: Optional[str] = None
    access_token: Optional[str] = None
    webhook_verify_token: Optional[str] = None
    app_secret: Optional[str] = None
    webhook_behavior: Optional[str] = None
    is_active: Optional[bool] = None


class ProviderInstanceResponse(CamelModel):
    """Provider instance as shown to admins. Secrets are never returned."""
    id: str = "default"
    name: str
    phone_number_id: str = ""
    webhook_behavior: str = "auto"
    is_active: bool = True
    source: str = "custom"
    updated_at: Optional[str] = None
    access_token_configured: bool = False
    webhook_verify_token_configured: bool = False
    app_secret_configured: bool = False


class ProviderInstanceEnvelope(BaseModel):
    instance: Optional[ProviderInstanceResponse] = None


class WebhookStatusFlags(CamelModel):
    is_configured: bool
    has_webhook_secret: bool
    has_verify_token: bool
    is_active: bool
    webhook_behavior: str


class WebhookStatusInstance(ProviderInstanceResponse):
    webhook_url: str


class WebhookStatusResponse(CamelModel):
    instance: WebhookStatusInstance
    recent_events: list[WebhookEventResponse] = Field(default_factory=list)
    status: WebhookStatusFlags


# =============================================================================
# Stats / Health Models
# =============================================================================

class StatsTotals(BaseModel):
    conversations: int = Field(..., ge=0)
    messages: int = Field(..., ge=0)
    incoming: int = Field(..., ge=0)
    outgoing: int = Field(..., ge=0)


class TopConversation(CamelModel):
    phone: str
    display_name: Optional[str] = None
    message_count: int = Field(..., ge=0)


class RecentActivity(CamelModel):
    id: str
    direction: str
    body: Optional[str] = None
    created_at: Optional[str] = None
    phone: Optional[str] = None
    display_name: Optional[str] = None


class StatsResponse(CamelModel):
    """Response model for GET /api/statistics."""
    totals: StatsTotals
    top_conversations: list[TopConversation] = Field(default_factory=list)
    recent_activity: list[RecentActivity] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
