"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the members, segments and assistant routes
- Response models for API responses
- Typed webhook envelope items (status updates, inbound messages)
- Structured completion outputs (intent classification, sentiment)
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from polaris_crm.utils import canonical_phone


PHONE_MIN_DIGITS = 9
PHONE_MAX_DIGITS = 15


def _required_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{field_name} is required")
    return str(value).strip()


def _valid_phone(value: str) -> str:
    digits = canonical_phone(value)
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise ValueError(
            f"phone must contain between {PHONE_MIN_DIGITS} and {PHONE_MAX_DIGITS} digits"
        )
    return digits


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MemberCreate(BaseModel):
    """
    Body of POST /members.

    Validates:
    - first_name, last_name: non-blank
    - phone: 9 to 15 digits once separators are stripped (stored digits-only)
    """
    first_name: str
    last_name: str
    phone: str

    @field_validator("first_name", "last_name", "phone", mode="before")
    @classmethod
    def validate_required(cls, v, info) -> str:
        return _required_text(v, info.field_name)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _valid_phone(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"first_name": "Awa", "last_name": "Ndiaye", "phone": "+221 77 123 45 67"}
            ]
        }
    }


class MemberUpdate(BaseModel):
    """Body of PUT /members/{id}. Omitted fields are left unchanged."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("first_name", "last_name", "phone", mode="before")
    @classmethod
    def validate_not_blank(cls, v, info):
        if v is None:
            return None
        return _required_text(v, info.field_name)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _valid_phone(v)


class SegmentCreate(BaseModel):
    name: str
    description: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v) -> str:
        return _required_text(v, "name")

    @field_validator("description", mode="before")
    @classmethod
    def normalize_description(cls, v) -> str:
        return "" if v is None else str(v).strip()


class SegmentUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v):
        if v is None:
            return None
        return _required_text(v, "name")


class SegmentMemberAdd(BaseModel):
    member_id: int = Field(..., ge=1)


class AssistantImproveRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)


class AssistantSuggestionsRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)
    count: int = Field(default=3, ge=1, le=5)


class AssistantSentimentRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookAck(BaseModel):
    """Acknowledgement returned before any webhook processing happens."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Uniform error body for every 4xx/5xx response."""
    error: str = Field(..., description="HTTP reason phrase")
    message: str = Field(..., description="Error description")
    code: int = Field(..., description="HTTP status code")


class ActionResponse(BaseModel):
    message: str


class MemberResponse(BaseModel):
    id: int
    first_name: str
    last_name: str
    phone: str
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class SegmentResponse(BaseModel):
    id: int
    name: str
    description: str = ""
    created_at: str
    member_count: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)


class SegmentDetailResponse(SegmentResponse):
    members: list[MemberResponse] = Field(default_factory=list)


class MessageResponse(BaseModel):
    """
    A stored message joined with its member.
    metadata is the free-form JSON recorded with the message.
    """
    id: int
    member_id: int
    kind: str
    content: str
    status: str
    external_message_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: str
    updated_at: str
    member_first_name: Optional[str] = None
    member_last_name: Optional[str] = None
    member_phone: Optional[str] = None


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.

    Contains:
    - data: list of messages matching filters
    - total: total count of messages matching filters (ignoring pagination)
    - limit: number of messages per page
    - offset: starting position
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.

    sent_messages counts everything that left the service
    (sent, delivered and read).
    """
    members_count: int = Field(..., ge=0)
    segments_count: int = Field(..., ge=0)
    messages_count: int = Field(..., ge=0)
    pending_messages: int = Field(..., ge=0)
    sent_messages: int = Field(..., ge=0)
    failed_messages: int = Field(..., ge=0)


class DailyWebhookStats(BaseModel):
    """Webhook activity since midnight UTC."""
    messages_today: int = Field(..., ge=0)
    auto_replies_today: int = Field(..., ge=0)
    urgent_messages_today: int = Field(..., ge=0)
    new_members_today: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ImprovedMessageResponse(BaseModel):
    text: str


class SuggestionsResponse(BaseModel):
    suggestions: list[str] = Field(default_factory=list)


class TransportCheckResponse(BaseModel):
    """Result of checking the WhatsApp credentials against the Graph API."""
    valid: bool
    phone_number: Optional[str] = None
    verified_name: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Webhook Envelope Items
# =============================================================================

class StatusEvent(BaseModel):
    """One entry of value.statuses[]: a delivery receipt for an outbound message."""
    id: str = Field(..., min_length=1)
    status: Literal["sent", "delivered", "read", "failed"]
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: Optional[list[dict]] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, v):
        return None if v is None else str(v)


class InboundMessageEvent(BaseModel):
    """
    One entry of value.messages[].

    Only the payload matching `type` is expected to be present.
    """
    id: str = Field(..., min_length=1)
    from_address: str = Field(..., alias="from", min_length=1)
    timestamp: Optional[str] = None
    type: str = Field(..., min_length=1)

    text: Optional[dict] = None
    button: Optional[dict] = None
    interactive: Optional[dict] = None
    image: Optional[dict] = None
    video: Optional[dict] = None
    sticker: Optional[dict] = None
    document: Optional[dict] = None
    audio: Optional[dict] = None
    voice: Optional[dict] = None
    location: Optional[dict] = None
    contacts: Optional[list[dict]] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, v):
        return None if v is None else str(v)


# =============================================================================
# Completion Outputs
# =============================================================================

_URGENCY_ALIASES = {
    "basse": "low",
    "faible": "low",
    "moyenne": "medium",
    "normale": "medium",
    "haute": "high",
    "elevee": "high",
    "élevée": "high",
    "urgent": "high",
}

_SENTIMENT_ALIASES = {
    "positif": "positive",
    "neutre": "neutral",
    "negatif": "negative",
    "négatif": "negative",
}


class IntentClassification(BaseModel):
    """Structured result of intent detection on one inbound message."""
    intent: str = "general"
    urgency: Literal["low", "medium", "high"]
    category: str = "general"
    requires_human: bool = False
    suggested_action: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("urgency", mode="before")
    @classmethod
    def normalize_urgency(cls, v: Any):
        if isinstance(v, str):
            label = v.strip().lower()
            return _URGENCY_ALIASES.get(label, label)
        return v

    @field_validator("intent", "category", "suggested_action", mode="before")
    @classmethod
    def coerce_text(cls, v: Any):
        return "" if v is None else str(v)


class SentimentAnalysis(BaseModel):
    sentiment: Literal["positive", "neutral", "negative"]
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    emotions: list[str] = Field(default_factory=list)
    summary: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("sentiment", mode="before")
    @classmethod
    def normalize_sentiment(cls, v: Any):
        if isinstance(v, str):
            label = v.strip().lower()
            return _SENTIMENT_ALIASES.get(label, label)
        return v
