from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from enum import Enum
from typing import Optional

from drip_engine.clock import utcnow


class MessageStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"
    BOUNCED = "bounced"


# Forward order of the delivery lifecycle; failed/bounced sit outside it.
STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.QUEUED: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.OPENED: 4,
    MessageStatus.CLICKED: 5,
}

TERMINAL_FAILURE_STATUS = {
    "sms": MessageStatus.FAILED,
    "email": MessageStatus.BOUNCED,
}


class Message(Document):
    journey_id: PydanticObjectId
    campaign_id: str
    lead_id: str
    step_number: int
    channel: str
    recipient: str = ""
    subject: Optional[str] = None
    content: str
    status: MessageStatus = MessageStatus.PENDING
    scheduled_at: datetime
    attempt_count: int = 0
    last_error: Optional[str] = None
    provider_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "messages"
        indexes = [
            IndexModel([("journey_id", ASCENDING), ("step_number", ASCENDING)], unique=True, name="journey_step_unique"),
            IndexModel([("channel", ASCENDING), ("status", ASCENDING), ("scheduled_at", ASCENDING)], name="due_messages"),
            IndexModel([("provider_id", ASCENDING)], name="provider_id"),
        ]
