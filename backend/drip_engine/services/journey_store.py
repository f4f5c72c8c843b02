import logging
from datetime import datetime
from typing import Optional, Tuple

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError

from drip_engine.clock import Clock, utcnow
from drip_engine.exceptions import JourneyNotFoundError
from drip_engine.models.journey import LeadContact, LeadJourney
from drip_engine.models.journey_journal import JourneyJournal

logger = logging.getLogger(__name__)

SENT_COUNTERS = {
    "sms": "total_sms_sent",
    "email": "total_emails_sent",
}

# A paused journey still records the outcome of a send already in flight
LIVE_STATUSES = ["active", "paused"]

INTERACTION_COUNTERS = {
    "delivered": "total_delivered",
    "opened": "total_opens",
    "clicked": "total_clicks",
}


class JourneyStore:
    """
    Durable record of each lead's progress through a campaign.

    Every write is a single-document update guarded on the journey's current
    state, so concurrent processor runs and webhook handlers never need a lock.
    A guarded write that matches nothing returns False and changes nothing.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    @staticmethod
    def _collection():
        return LeadJourney.get_motor_collection()

    async def _guarded_update(self, journey_id: PydanticObjectId, guard: dict, update: dict) -> bool:
        update.setdefault("$set", {})["updated_at"] = self.clock()
        result = await self._collection().update_one({"_id": journey_id, **guard}, update)
        return result.modified_count == 1

    async def journal(self, journey: LeadJourney, message: str, step_number: Optional[int] = None,
                      message_id: Optional[PydanticObjectId] = None, details: Optional[dict] = None):
        try:
            await JourneyJournal(
                journey_id=journey.id,
                campaign_id=journey.campaign_id,
                timestamp=self.clock(),
                message=message,
                step_number=step_number,
                message_id=message_id,
                details=details,
            ).insert()
        except Exception as e:
            logger.error(f"[JOURNAL_ERROR] Failed to add journal entry for journey {journey.id}: {e}", exc_info=True)

    async def create(self, campaign_id: str, contact: LeadContact, started_at: datetime) -> Tuple[LeadJourney, bool]:
        """Create the journey for (lead, campaign); returns (journey, created)."""
        journey = LeadJourney(
            lead_id=contact.lead_id,
            campaign_id=campaign_id,
            contact=contact,
            started_at=started_at,
            last_interaction_at=started_at,
            updated_at=started_at,
        )
        try:
            await journey.insert()
        except DuplicateKeyError:
            existing = await LeadJourney.find_one(
                LeadJourney.lead_id == contact.lead_id,
                LeadJourney.campaign_id == campaign_id,
            )
            logger.info(f"[JOURNEY] Journey already exists for lead {contact.lead_id} in campaign {campaign_id}")
            return existing, False

        logger.info(f"[JOURNEY] Journey {journey.id} created for lead {contact.lead_id} in campaign {campaign_id}")
        await self.journal(journey, "Journey started.", step_number=0)
        return journey, True

    async def get(self, journey_id: PydanticObjectId) -> LeadJourney:
        journey = await LeadJourney.get(journey_id)
        if journey is None:
            raise JourneyNotFoundError(f"Journey {journey_id} not found")
        return journey

    async def advance_step(self, journey_id: PydanticObjectId, completed_step: int) -> bool:
        # Moves current_step from completed_step - 1 to completed_step and nowhere else
        return await self._guarded_update(
            journey_id,
            {"current_step": completed_step - 1, "status": {"$in": LIVE_STATUSES}},
            {"$set": {"current_step": completed_step}},
        )

    async def mark_completed(self, journey_id: PydanticObjectId, at: datetime) -> bool:
        return await self._guarded_update(
            journey_id,
            {"status": {"$in": LIVE_STATUSES}},
            {"$set": {"status": "completed", "completed_at": at}},
        )

    async def mark_failed(self, journey_id: PydanticObjectId, error: str) -> bool:
        return await self._guarded_update(
            journey_id,
            {"status": {"$in": LIVE_STATUSES}},
            {"$set": {"status": "failed", "error_message": error}},
        )

    async def pause(self, journey_id: PydanticObjectId) -> bool:
        return await self._guarded_update(journey_id, {"status": "active"}, {"$set": {"status": "paused"}})

    async def resume(self, journey_id: PydanticObjectId) -> bool:
        return await self._guarded_update(journey_id, {"status": "paused"}, {"$set": {"status": "active"}})

    async def increment_sent(self, journey_id: PydanticObjectId, channel: str) -> bool:
        return await self._guarded_update(journey_id, {}, {"$inc": {SENT_COUNTERS[channel]: 1}})

    async def record_interaction(self, journey_id: PydanticObjectId, event_type: str, at: datetime) -> bool:
        return await self._guarded_update(
            journey_id,
            {},
            {"$inc": {INTERACTION_COUNTERS[event_type]: 1}, "$set": {"last_interaction_at": at}},
        )

    async def mark_converted(self, journey_id: PydanticObjectId, conversion_event: str, at: datetime) -> bool:
        return await self._guarded_update(
            journey_id,
            {"status": {"$in": LIVE_STATUSES}},
            {"$set": {
                "status": "completed",
                "conversion_event": conversion_event,
                "converted_at": at,
                "completed_at": at,
                "last_interaction_at": at,
            }},
        )
