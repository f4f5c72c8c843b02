from beanie import Document, PydanticObjectId
from pydantic import Field
from datetime import datetime
from typing import Optional, Literal

from drip_engine.clock import utcnow


class DeliveryEvent(Document):
    """A verified provider callback and what the reconciler did with it."""
    provider: str = Field(..., example="sendgrid")
    provider_message_id: Optional[str] = Field(default=None, example="sg_14c5d75c")
    correlation_id: Optional[str] = None
    event_type: str = Field(..., example="opened")
    raw_event: str = Field(..., example="open")
    occurred_at: datetime
    received_at: datetime = Field(default_factory=utcnow)
    outcome: Literal["applied", "ignored", "unknown_message"] = "ignored"
    message_id: Optional[PydanticObjectId] = None
    error: Optional[str] = None

    class Settings:
        name = "delivery_events"
