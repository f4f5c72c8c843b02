import logging
from datetime import datetime
from typing import Optional, Union

from beanie import PydanticObjectId
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from drip_engine.clock import Clock, utcnow
from drip_engine.exceptions import CampaignNotFoundError, InvalidCampaignError
from drip_engine.models.campaign import DripCampaign
from drip_engine.models.journey import LeadContact, LeadJourney
from drip_engine.models.message import Message, MessageStatus
from drip_engine.services.journey_store import JourneyStore
from drip_engine.services.templates import render_template

logger = logging.getLogger(__name__)


class JourneyCompleted(BaseModel):
    journey_id: PydanticObjectId
    completed_at: datetime


class StepScheduler:
    """
    Turns a campaign's ordered step list into time-scheduled pending messages.

    Scheduling is relative to a reference time supplied by the caller: the
    trigger time for step 1, the moment the previous step was sent for the
    rest. Processor latency therefore never shifts a sequence.
    """

    def __init__(self, store: Optional[JourneyStore] = None, clock: Clock = utcnow):
        self.clock = clock
        self.store = store or JourneyStore(clock=clock)

    async def load_campaign(self, campaign_id: str) -> DripCampaign:
        campaign = await DripCampaign.find_one(DripCampaign.campaign_id == campaign_id)
        if not campaign:
            logger.error(f"[SCHEDULER] Campaign {campaign_id} not found in database")
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def start_journey(self, campaign_id: str, contact: LeadContact,
                            trigger_time: Optional[datetime] = None) -> LeadJourney:
        """
        Lead captured: create the journey and schedule its first step.
        A repeated trigger for the same (lead, campaign) returns the existing journey.
        """
        trigger_time = trigger_time or self.clock()
        campaign = await self.load_campaign(campaign_id)
        if not campaign.active:
            raise InvalidCampaignError(f"Campaign {campaign_id} is paused and accepts no new journeys")

        journey, created = await self.store.create(campaign_id, contact, trigger_time)
        if created:
            await self.schedule_next_step(journey, reference_time=trigger_time, campaign=campaign)
        return journey

    async def schedule_next_step(self, journey: LeadJourney, reference_time: Optional[datetime] = None,
                                 campaign: Optional[DripCampaign] = None) -> Union[Message, JourneyCompleted]:
        """
        Materialise the message for step current_step + 1, or complete the journey
        when no such step exists. Idempotent per (journey, step).
        """
        reference_time = reference_time or self.clock()
        campaign = campaign or await self.load_campaign(journey.campaign_id)

        if journey.current_step > campaign.total_steps:
            raise InvalidCampaignError(
                f"Journey {journey.id} is at step {journey.current_step} but campaign "
                f"{campaign.campaign_id} has only {campaign.total_steps} steps"
            )

        next_number = journey.current_step + 1
        step = campaign.get_step(next_number)
        if step is None:
            if await self.store.mark_completed(journey.id, reference_time):
                logger.info(f"[SCHEDULER] Journey {journey.id} completed after step {journey.current_step}")
                await self.store.journal(journey, "Journey completed.", step_number=journey.current_step)
            return JourneyCompleted(journey_id=journey.id, completed_at=reference_time)

        context = journey.contact.template_context()
        recipient = journey.contact.phone if step.channel == "sms" else journey.contact.email
        message = Message(
            journey_id=journey.id,
            campaign_id=journey.campaign_id,
            lead_id=journey.lead_id,
            step_number=step.step_number,
            channel=step.channel,
            recipient=(recipient or "").strip(),
            subject=render_template(step.subject_template, context) if step.channel == "email" else None,
            content=render_template(step.content_template, context),
            status=MessageStatus.PENDING,
            scheduled_at=reference_time + step.delay,
            created_at=reference_time,
            updated_at=reference_time,
        )
        try:
            await message.insert()
        except DuplicateKeyError:
            existing = await Message.find_one(
                Message.journey_id == journey.id,
                Message.step_number == step.step_number,
            )
            logger.info(f"[SCHEDULER] Step {step.step_number} already scheduled for journey {journey.id}")
            return existing

        logger.info(
            f"[SCHEDULER] Scheduled step {step.step_number} ({step.channel}) for journey {journey.id} "
            f"at {message.scheduled_at.isoformat()}"
        )
        await self.store.journal(
            journey,
            f"Step {step.step_number} scheduled.",
            step_number=step.step_number,
            message_id=message.id,
            details={"channel": step.channel, "scheduled_at": message.scheduled_at.isoformat()},
        )
        return message
