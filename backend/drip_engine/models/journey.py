from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from typing import Dict, Optional, Literal

from drip_engine.clock import utcnow


JourneyStatus = Literal["active", "completed", "paused", "failed"]


class LeadContact(BaseModel):
    """Snapshot of the lead taken when the journey starts; templates render against it."""
    lead_id: str = Field(..., example="lead_8f2c")
    first_name: str = Field(default="", example="John")
    last_name: str = Field(default="", example="Doe")
    email: Optional[str] = Field(default=None, example="john@example.com")
    phone: Optional[str] = Field(default=None, example="+14155552671")
    company: Optional[str] = None
    custom_fields: Dict[str, str] = Field(default_factory=dict)

    def template_context(self) -> dict:
        return {
            **self.custom_fields,
            "lead_id": self.lead_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email or "",
            "phone": self.phone or "",
            "company": self.company or "",
        }


class LeadJourney(Document):
    lead_id: str
    campaign_id: str
    contact: LeadContact
    # Number of steps completed so far; 0 means no step has completed yet
    current_step: int = Field(default=0, ge=0)
    status: JourneyStatus = "active"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    error_message: Optional[str] = None
    total_sms_sent: int = 0
    total_emails_sent: int = 0
    total_delivered: int = 0
    total_opens: int = 0
    total_clicks: int = 0
    conversion_event: Optional[str] = None
    converted_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "lead_journeys"
        indexes = [
            IndexModel([("lead_id", ASCENDING), ("campaign_id", ASCENDING)], unique=True, name="lead_campaign_unique"),
            IndexModel([("status", ASCENDING)]),
        ]
