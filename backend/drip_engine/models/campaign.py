from beanie import Document, Indexed
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime, timedelta

from drip_engine.clock import utcnow


Channel = Literal["sms", "email"]
FailurePolicy = Literal["fail_journey", "skip_step"]


class DripStep(BaseModel):
    step_number: int = Field(..., ge=1, example=1)
    channel: Channel = Field(..., example="email")
    # Measured from the previous step's completion, or from journey start for step 1
    delay_minutes: int = Field(default=0, ge=0, example=1440)
    content_template: str = Field(..., example="Hi {{ first_name }}, thanks for reaching out!")
    subject_template: Optional[str] = Field(default=None, example="Welcome, {{ first_name }}")

    @property
    def delay(self) -> timedelta:
        return timedelta(minutes=self.delay_minutes)


class DripCampaign(Document):
    campaign_id: Indexed(str, unique=True) = Field(..., example="drip_welcome")
    name: str = Field(..., example="Welcome Sequence")
    active: bool = True
    trigger_type: str = Field(default="lead_captured")
    failure_policy: FailurePolicy = "fail_journey"
    conversion_events: List[str] = Field(default_factory=list)
    steps: List[DripStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "drip_campaigns"

    @field_validator("steps")
    @classmethod
    def steps_form_dense_sequence(cls, steps: List[DripStep]) -> List[DripStep]:
        steps = sorted(steps, key=lambda s: s.step_number)
        numbers = [s.step_number for s in steps]
        if numbers != list(range(1, len(steps) + 1)):
            raise ValueError(f"step numbers must be 1..{len(steps)} without gaps, got {numbers}")
        return steps

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def get_step(self, step_number: int) -> Optional[DripStep]:
        if 1 <= step_number <= len(self.steps):
            return self.steps[step_number - 1]
        return None
