"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the operator and scheduling routes
- Response models for API responses
- The originator -> legacy direction mapping used when serializing messages
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from guestcomms.models import ConversationStatus, Originator


# Legacy clients read "direction" instead of the originator
DIRECTION_BY_ORIGINATOR = {
    Originator.GUEST.value: "guest",
    Originator.HUMAN.value: "staff",
    Originator.AI.value: "ai",
    Originator.SYSTEM.value: "ai",
}


def direction_for(originator: str) -> str:
    return DIRECTION_BY_ORIGINATOR.get(originator, "ai")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ScheduleReservationRequest(BaseModel):
    """Reservation snapshot to plan and enqueue messages for."""
    reservation: Dict[str, Any] = Field(
        ...,
        description="PMS reservation object (id, check-in/out, timezone, guest)"
    )
    initial_sync: bool = Field(
        False,
        description="Bulk import mode: skips event-only message types"
    )


class ConversationStatusRequest(BaseModel):
    status: ConversationStatus = Field(
        ...,
        description="automated to resume, paused_by_human to pause automation"
    )


class HumanReplyRequest(BaseModel):
    message: str = Field(
        ...,
        min_length=1,
        max_length=4096,
        description="Reply text sent to the guest"
    )


class CancelPendingRequest(BaseModel):
    reason: Optional[str] = Field(
        None,
        max_length=500,
        description="Failure reason recorded on the cancelled jobs"
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not healthy")


class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Processing status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error message")


class ConversationResponse(BaseModel):
    id: str
    tenant_id: str
    booking_id: str
    external_thread_id: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    """A single message log entry."""
    id: str
    conversation_id: str
    originator: str = Field(..., description="guest, human, ai or system")
    direction: str = Field(..., description="Legacy view of originator: guest, staff or ai")
    status: str
    body: str
    scheduled_send_at: Optional[datetime] = None
    actual_sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ConversationMessagesResponse(BaseModel):
    conversation: ConversationResponse
    data: List[MessageResponse] = Field(..., description="Messages in send order")


class ScheduleReservationResponse(BaseModel):
    message_ids: List[str] = Field(..., description="Created or already queued job ids, in plan order")


class CancelResponse(BaseModel):
    cancelled: int = Field(..., description="Number of jobs cancelled")


class StatusResponse(BaseModel):
    status: str = Field(default="ok")


class HumanReplyResponse(BaseModel):
    id: str = Field(..., description="Id of the logged human reply")


class StatsResponse(BaseModel):
    """Response model for the /stats endpoint."""
    total_messages: int = Field(..., description="Total number of message log entries")
    messages_by_status: Dict[str, int] = Field(..., description="Entry count per status")
    conversations_count: int = Field(..., description="Number of conversations")
    paused_conversations: int = Field(..., description="Conversations paused by a human")
    next_scheduled_send_at: Optional[datetime] = Field(
        None,
        description="Earliest send time among pending jobs (null if none)"
    )


def conversation_response(conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        tenant_id=conversation.tenant_id,
        booking_id=conversation.booking_id,
        external_thread_id=conversation.external_thread_id,
        status=conversation.status,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def message_response(entry) -> MessageResponse:
    return MessageResponse(
        id=entry.id,
        conversation_id=entry.conversation_id,
        originator=entry.originator,
        direction=direction_for(entry.originator),
        status=entry.status,
        body=entry.body,
        scheduled_send_at=entry.scheduled_send_at,
        actual_sent_at=entry.actual_sent_at,
        error_message=entry.error_message,
        metadata=entry.meta or {},
        created_at=entry.created_at,
    )
