from beanie import Document, PydanticObjectId
from pydantic import Field
from datetime import datetime
from typing import Optional

from drip_engine.clock import utcnow


class JourneyJournal(Document):
    """
    Represents a single event or state transition in a lead's journey.
    Used for auditing and debugging drip sequences.
    """
    journey_id: PydanticObjectId
    campaign_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    step_number: Optional[int] = None
    message_id: Optional[PydanticObjectId] = None
    details: Optional[dict] = None

    class Settings:
        name = "journey_journal"
