"""
Pydantic schemas for request/response validation.

This module contains:
- Parsed inbound SMS models
- Request models for the simulation, reminder and voice endpoints
- Response models for API responses
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# =============================================================================
# Inbound SMS
# =============================================================================

class MediaItem(BaseModel):
    url: str
    content_type: Optional[str] = None


class InboundSms(BaseModel):
    """An inbound SMS as delivered by the telephony webhook."""
    message_sid: Optional[str] = Field(None, description="Provider message id, used for deduplication")
    from_number: str = Field(..., description="Sender phone number")
    to_number: str = Field("", description="Our receiving number")
    body: str = Field("", description="Message text")
    media: list[MediaItem] = Field(default_factory=list)

    @property
    def media_urls(self) -> list[str]:
        return [item.url for item in self.media]


# =============================================================================
# Request Models
# =============================================================================

class SimulateRequest(BaseModel):
    """
    Run the inbound pipeline without the telephony provider.

    Either body or text carries the message. Approval notifications are
    off unless send_approval is true.
    """
    from_number: str = Field(..., alias="from", min_length=1, description="Sender phone number")
    body: Optional[str] = Field(None, max_length=1600)
    text: Optional[str] = Field(None, max_length=1600)
    send_approval: bool = Field(False, alias="sendApproval")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def require_message_text(self) -> "SimulateRequest":
        if not (self.body or self.text or "").strip():
            raise ValueError("Missing required fields: from, body")
        return self

    @property
    def message_text(self) -> str:
        return (self.body or self.text or "").strip()


class ReminderCreate(BaseModel):
    """Schedule a reminder call. The time must be in the future."""
    message: str = Field(..., min_length=1, max_length=500, description="What the call should say")
    scheduled_for: datetime = Field(..., description="When to call (ISO-8601, timezone aware)")

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be empty")
        return v


class VoiceModeRequest(BaseModel):
    mode: Literal["ai", "forward"]


# =============================================================================
# Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ProcessResult(BaseModel):
    """Outcome of running one inbound message through the pipeline."""
    success: bool
    duplicate: bool = False
    draft_id: Optional[int] = None
    draft_reply: Optional[str] = None
    draft_mode: Optional[str] = None
    approval_sent: bool = False
    auto_approved: bool = False
    action: Optional[str] = None
    action_status: Optional[str] = None
    action_summary: Optional[str] = None
    action_message: Optional[str] = None
    error: Optional[str] = None


class SimulateResponse(BaseModel):
    success: bool = True
    result: ProcessResult


class MessageSearchItem(BaseModel):
    id: int
    conversation_id: int
    phone_number: str
    client_name: Optional[str] = None
    direction: str
    status: str
    body: str
    draft_body: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None


class MessageSearchResponse(BaseModel):
    data: list[MessageSearchItem] = Field(default_factory=list)
    count: int = Field(..., ge=0, description="Number of messages returned")


class ReminderResponse(BaseModel):
    id: str
    message: str
    scheduled_for: datetime
    status: str
    retry_count: int
    call_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReminderListResponse(BaseModel):
    data: list[ReminderResponse] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class VoiceModeResponse(BaseModel):
    mode: Literal["ai", "forward"]


class TelegramAck(BaseModel):
    ok: bool = True
