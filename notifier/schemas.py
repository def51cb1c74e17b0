"""
Pydantic schemas for request/response validation.

This module contains:
- Inbound WhatsApp Cloud API webhook shapes (button replies, statuses)
- Response models for API responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Inbound Webhook Models
# =============================================================================

class ButtonReply(BaseModel):
    """Quick-reply button pressed on a template message."""
    model_config = ConfigDict(extra="ignore")

    payload: Optional[str] = None
    text: Optional[str] = None

    @property
    def token(self) -> str:
        return self.payload or self.text or ""


class InteractiveButtonReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: Optional[str] = None


class Interactive(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    button_reply: Optional[InteractiveButtonReply] = None


class MessageContext(BaseModel):
    """Reference to the outbound message being replied to."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None


class InboundMessage(BaseModel):
    """
    One entry of value.messages in a webhook envelope.

    Only button-type replies are acted on; other types are ignored.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # Note: 'from' is a reserved word in Python, so we use alias
    from_msisdn: str = Field(..., alias="from", min_length=1)
    id: Optional[str] = None
    type: str
    context: Optional[MessageContext] = None
    button: Optional[ButtonReply] = None
    interactive: Optional[Interactive] = None

    @property
    def reply_token(self) -> Optional[str]:
        """Button token for button and interactive button replies, else None."""
        if self.type == "button" and self.button is not None:
            return self.button.token
        if (
            self.type == "interactive"
            and self.interactive is not None
            and self.interactive.button_reply is not None
        ):
            reply = self.interactive.button_reply
            return reply.title or reply.id or ""
        return None

    @property
    def context_id(self) -> Optional[str]:
        return self.context.id if self.context is not None else None


class StatusEvent(BaseModel):
    """One entry of value.statuses: a delivery-status callback."""
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    recipient_id: Optional[str] = None
    timestamp: Optional[str] = None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class UploadResponse(BaseModel):
    success: bool = True
    batch_id: int = Field(..., description="Identifier of the created batch")
    total_records: int = Field(..., ge=0, description="Accepted records in the file")


class DispatchResponse(BaseModel):
    success: bool = True
    message: str = Field(default="Processamento iniciado")


class BatchSummary(BaseModel):
    """
    Message counts for one batch.

    - awaiting_reply: SENT and no confirmation yet
    - replies_received: confirmation recorded
    """
    total: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    sent: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    awaiting_reply: int = Field(..., ge=0)
    replies_received: int = Field(..., ge=0)


class BatchListItem(BatchSummary):
    id: int
    source_name: str
    total_records: int = Field(..., ge=0)
    created_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    """Single message as shown on the dashboard."""
    id: int
    batch_id: int
    name: str
    phone: str
    kind: str
    scheduled_date: str
    scheduled_time: str
    location: str
    provider_name: str
    note: str
    status: str
    provider_message_id: Optional[str] = None
    error_detail: Optional[str] = None
    sent_at: Optional[datetime] = None
    confirmation_status: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DashboardResponse(BaseModel):
    summary: BatchSummary
    messages: list[MessageResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
