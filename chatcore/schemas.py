"""
Pydantic schemas for store records and wire payloads.

This module contains:
- Status enums and the message status ordering
- Record models returned by the local store
- Wire payload models for inbound events and outbound intents
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Statuses
# =============================================================================

class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAIL = "fail"
    SUCCESS = "success"


# failed ranks below sent: a later retry may still get the message through
STATUS_RANK = {
    MessageStatus.SENDING.value: 0,
    MessageStatus.FAILED.value: 1,
    MessageStatus.SENT.value: 2,
    MessageStatus.DELIVERED.value: 3,
    MessageStatus.READ.value: 4,
}


def advance_status(current: Optional[str], new: Optional[str]) -> Optional[str]:
    """
    Return whichever of two message statuses is further along.

    Message status only ever moves forward, so a late or duplicate event
    carrying an older status leaves the stored one in place.
    """
    current = getattr(current, "value", current)
    new = getattr(new, "value", new)
    if current is None:
        return new
    if new is None:
        return current
    return new if STATUS_RANK[new] > STATUS_RANK[current] else current


# =============================================================================
# Record Models
# =============================================================================

class RecordModel(BaseModel):
    """Base for records returned by the local store."""

    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        populate_by_name=True,
    )


class UserSchema(RecordModel):
    id: int
    name: str
    profile_photo_url: Optional[str] = None


class ConversationSchema(RecordModel):
    id: int
    name: str


class MessageSchema(RecordModel):
    """
    A chat message.

    id and created_at may be omitted for locally created messages; the store
    assigns them on insert.
    """
    id: Optional[int] = None
    content: str
    status: MessageStatus
    created_at: Optional[int] = Field(None, description="Epoch milliseconds")
    sender_id: int
    conversation_id: int


class ConversationUserSchema(RecordModel):
    conversation_id: int
    user_id: int


class DraftMessageSchema(RecordModel):
    id: Optional[int] = None
    content: str = ""
    conversation_id: int


class SendMessageRequestSchema(RecordModel):
    id: Optional[int] = None
    message_id: int
    status: RequestStatus
    last_sent_at: int = Field(..., description="Epoch milliseconds")
    fail_count: int = Field(0, ge=0)


class AppMetadataSchema(RecordModel):
    key: str
    value: Any = None


# =============================================================================
# Wire Payload Models
# =============================================================================

class NewMessage(BaseModel):
    """Fields a caller supplies when sending a message."""
    conversation_id: int
    sender_id: int
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class MessageEvent(BaseModel):
    """Payload of message_sent, message_delivered and message_failed."""
    message_id: int = Field(..., alias="messageId")

    model_config = ConfigDict(populate_by_name=True)


class SyncRequest(BaseModel):
    """Payload of the outbound request_sync intent."""
    last_sync_timestamp: int = Field(0, alias="lastSyncTimestamp", ge=0)

    model_config = ConfigDict(populate_by_name=True)


class SyncPayload(BaseModel):
    """
    Server snapshot carried by sync / sync_response.

    Entries stay raw here and are validated one by one inside the merge
    transaction, so a bad entry aborts the whole merge.
    """
    messages: list[dict[str, Any]] = Field(default_factory=list)
    conversations: list[dict[str, Any]] = Field(default_factory=list)
    users: list[dict[str, Any]] = Field(default_factory=list)
    conversation_users: list[dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
