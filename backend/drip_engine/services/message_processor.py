import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel, Field

from drip_engine import config
from drip_engine.clock import Clock, utcnow
from drip_engine.models.campaign import DripCampaign
from drip_engine.models.journey import LeadJourney
from drip_engine.models.message import Message, MessageStatus, TERMINAL_FAILURE_STATUS
from drip_engine.services.channels import ChannelAdapter, SendResult
from drip_engine.services.journey_store import JourneyStore, LIVE_STATUSES
from drip_engine.services.step_scheduler import StepScheduler

logger = logging.getLogger(__name__)

CHANNELS = ("sms", "email")


class ProcessorConfig(BaseModel):
    batch_size: int = Field(default=config.DRIP_BATCH_SIZE, ge=1)
    max_retries: int = Field(default=config.DRIP_MAX_RETRIES, ge=0)
    backoff_base_seconds: float = Field(default=config.DRIP_BACKOFF_BASE_SECONDS, ge=0)
    backoff_cap_seconds: float = Field(default=config.DRIP_BACKOFF_CAP_SECONDS, ge=0)
    batch_delay_seconds: float = Field(default=config.DRIP_BATCH_DELAY_SECONDS, ge=0)
    send_timeout_seconds: float = Field(default=config.DRIP_SEND_TIMEOUT_SECONDS, gt=0)

    def backoff(self, attempt_count: int) -> timedelta:
        """Delay before retry number attempt_count (1-based): base * 2^(n-1), capped."""
        seconds = self.backoff_base_seconds * (2 ** max(attempt_count - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_cap_seconds))


class ChannelRunStats(BaseModel):
    selected: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    conflicts: int = 0


class ProcessorRunSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    channels: Dict[str, ChannelRunStats] = Field(default_factory=dict)

    @property
    def sent(self) -> int:
        return sum(s.sent for s in self.channels.values())

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.channels.values())

    @property
    def retried(self) -> int:
        return sum(s.retried for s in self.channels.values())


class MessageProcessor:
    """
    Batch job that claims due messages, hands them to channel adapters and
    advances journeys.

    Each run is a finite unit of work and may overlap with other runs. Overlap
    is safe because a message is only worked on by the run whose
    pending -> queued write matched; every later write is guarded on 'queued'.
    Persistence errors are not caught here: they abort the run and the next
    invocation picks up whatever is still pending.
    """

    def __init__(self, adapters: Dict[str, ChannelAdapter], processor_config: Optional[ProcessorConfig] = None,
                 clock: Clock = utcnow, scheduler: Optional[StepScheduler] = None,
                 store: Optional[JourneyStore] = None):
        self.adapters = adapters
        self.config = processor_config or ProcessorConfig()
        self.clock = clock
        self.store = store or JourneyStore(clock=clock)
        self.scheduler = scheduler or StepScheduler(store=self.store, clock=clock)

    @staticmethod
    def _collection():
        return Message.get_motor_collection()

    async def run(self) -> ProcessorRunSummary:
        summary = ProcessorRunSummary(started_at=self.clock())
        logger.info(f"[PROCESSOR] Run started at {summary.started_at.isoformat()}")

        for index, channel in enumerate(CHANNELS):
            if index and self.config.batch_delay_seconds:
                await asyncio.sleep(self.config.batch_delay_seconds)
            adapter = self.adapters.get(channel)
            if adapter is None:
                logger.warning(f"[PROCESSOR] No adapter configured for channel {channel}, skipping")
                continue
            summary.channels[channel] = await self.process_channel(channel, adapter)

        summary.finished_at = self.clock()
        per_channel = {channel: stats.model_dump() for channel, stats in summary.channels.items()}
        logger.info(
            f"[PROCESSOR] Run complete: sent={summary.sent} failed={summary.failed} "
            f"retried={summary.retried} channels={per_channel}"
        )
        return summary

    async def process_channel(self, channel: str, adapter: ChannelAdapter) -> ChannelRunStats:
        stats = ChannelRunStats()
        now = self.clock()
        campaigns: Dict[str, Optional[DripCampaign]] = {}

        cursor = self._collection().aggregate(self._due_pipeline(channel, now))
        due = [Message.model_validate(doc) for doc in await cursor.to_list(length=None)]
        stats.selected = len(due)
        logger.info(f"[PROCESSOR] Found {len(due)} due {channel} messages")

        for message in due:
            await self.process_message(message, adapter, now, stats, campaigns)
        return stats

    def _due_pipeline(self, channel: str, now: datetime) -> list:
        """
        Oldest due pending messages of one channel. Messages of paused journeys
        and inactive campaigns are joined out before the limit, so parked
        messages cannot starve due ones.
        """
        return [
            {"$match": {
                "channel": channel,
                "status": MessageStatus.PENDING.value,
                "scheduled_at": {"$lte": now},
            }},
            {"$sort": {"scheduled_at": 1}},
            {"$lookup": {
                "from": LeadJourney.get_motor_collection().name,
                "localField": "journey_id",
                "foreignField": "_id",
                "as": "_journey",
            }},
            {"$lookup": {
                "from": DripCampaign.get_motor_collection().name,
                "localField": "campaign_id",
                "foreignField": "campaign_id",
                "as": "_campaign",
            }},
            {"$match": {
                "_journey.status": {"$ne": "paused"},
                "_campaign.active": {"$ne": False},
            }},
            {"$limit": self.config.batch_size},
            {"$project": {"_journey": 0, "_campaign": 0}},
        ]

    async def _load_campaign(self, campaign_id: str, cache: Dict[str, Optional[DripCampaign]]) -> Optional[DripCampaign]:
        if campaign_id not in cache:
            cache[campaign_id] = await DripCampaign.find_one(DripCampaign.campaign_id == campaign_id)
        return cache[campaign_id]

    async def process_message(self, message: Message, adapter: ChannelAdapter, now: datetime,
                              stats: ChannelRunStats, campaigns: Dict[str, Optional[DripCampaign]]):
        journey = await LeadJourney.get(message.journey_id)
        campaign = await self._load_campaign(message.campaign_id, campaigns)

        if journey is None or campaign is None:
            await self._cancel(message, "journey or campaign missing")
            stats.skipped += 1
            return
        if journey.status in ("completed", "failed"):
            await self._cancel(message, f"journey {journey.status}")
            stats.skipped += 1
            return
        if journey.status != "active" or not campaign.active:
            logger.info(f"[PROCESSOR] Message {message.id} left pending: journey {journey.status}, campaign active={campaign.active}")
            stats.skipped += 1
            return

        if not await self.claim(message, now):
            logger.debug(f"[PROCESSOR] Message {message.id} already claimed by another run")
            stats.conflicts += 1
            return
        stats.claimed += 1

        if not adapter.validate(message.recipient):
            error = f"Invalid {message.channel} recipient: '{message.recipient}'"
            logger.warning(f"[PROCESSOR] Message {message.id}: {error}")
            await self._fail_terminally(message, journey, campaign, error, message.attempt_count)
            stats.failed += 1
            return

        result = await self._send(adapter, message)
        if result.ok:
            await self._mark_sent(message, journey, campaign, result.provider_id)
            stats.sent += 1
        elif result.retryable and message.attempt_count < self.config.max_retries:
            await self._requeue(message, result.error)
            stats.retried += 1
        else:
            await self._fail_terminally(message, journey, campaign, result.error, message.attempt_count + 1)
            stats.failed += 1

    async def claim(self, message: Message, now: datetime) -> bool:
        """pending -> queued, effective only for the one run whose write matches."""
        result = await self._collection().update_one(
            {"_id": message.id, "status": MessageStatus.PENDING.value, "scheduled_at": {"$lte": now}},
            {"$set": {"status": MessageStatus.QUEUED.value, "claimed_at": now, "updated_at": now}},
        )
        return result.modified_count == 1

    async def _send(self, adapter: ChannelAdapter, message: Message) -> SendResult:
        try:
            return await asyncio.wait_for(
                adapter.send(message.recipient, message.content, str(message.id), subject=message.subject),
                timeout=self.config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[PROCESSOR] Send timed out for message {message.id}")
            return SendResult.failure(f"Send timed out after {self.config.send_timeout_seconds}s", retryable=True)
        except Exception as e:
            logger.error(f"[PROCESSOR] Adapter raised for message {message.id}: {e}", exc_info=True)
            return SendResult.failure(str(e), retryable=True)

    async def _cancel(self, message: Message, reason: str):
        now = self.clock()
        await self._collection().update_one(
            {"_id": message.id, "status": MessageStatus.PENDING.value},
            {"$set": {
                "status": TERMINAL_FAILURE_STATUS[message.channel].value,
                "last_error": reason,
                "failed_at": now,
                "updated_at": now,
            }},
        )
        logger.info(f"[PROCESSOR] Message {message.id} cancelled: {reason}")

    async def _mark_sent(self, message: Message, journey: LeadJourney, campaign: DripCampaign, provider_id: str):
        sent_at = self.clock()
        result = await self._collection().update_one(
            {"_id": message.id, "status": MessageStatus.QUEUED.value},
            {"$set": {
                "status": MessageStatus.SENT.value,
                "provider_id": provider_id,
                "sent_at": sent_at,
                "last_error": None,
                "updated_at": sent_at,
            }},
        )
        if result.modified_count == 0:
            # A provider callback already moved the message past 'sent'
            await self._collection().update_one(
                {"_id": message.id},
                {"$set": {"provider_id": provider_id, "sent_at": sent_at, "updated_at": sent_at}},
            )
        logger.info(f"[PROCESSOR] Message {message.id} sent via {message.channel}: {provider_id}")

        await self.store.increment_sent(journey.id, message.channel)
        await self.store.journal(journey, f"Step {message.step_number} sent.", step_number=message.step_number,
                                 message_id=message.id, details={"provider_id": provider_id})
        await self._advance(journey, campaign, message.step_number, sent_at)

    async def _requeue(self, message: Message, error: Optional[str]):
        attempt_count = message.attempt_count + 1
        now = self.clock()
        retry_at = now + self.config.backoff(attempt_count)
        await self._collection().update_one(
            {"_id": message.id, "status": MessageStatus.QUEUED.value},
            {"$set": {
                "status": MessageStatus.PENDING.value,
                "attempt_count": attempt_count,
                "scheduled_at": retry_at,
                "last_error": error,
                "claimed_at": None,
                "updated_at": now,
            }},
        )
        logger.warning(
            f"[PROCESSOR] Message {message.id} attempt {attempt_count} failed ({error}); retrying at {retry_at.isoformat()}"
        )

    async def _fail_terminally(self, message: Message, journey: LeadJourney, campaign: DripCampaign,
                               error: Optional[str], attempt_count: int):
        now = self.clock()
        status = TERMINAL_FAILURE_STATUS[message.channel]
        await self._collection().update_one(
            {"_id": message.id, "status": MessageStatus.QUEUED.value},
            {"$set": {
                "status": status.value,
                "attempt_count": attempt_count,
                "last_error": error,
                "failed_at": now,
                "updated_at": now,
            }},
        )
        logger.error(f"[PROCESSOR] Message {message.id} terminally {status.value}: {error}")
        await self.store.journal(journey, f"Step {message.step_number} {status.value}.", step_number=message.step_number,
                                 message_id=message.id, details={"error": error, "attempt_count": attempt_count})

        if campaign.failure_policy == "skip_step":
            logger.info(f"[PROCESSOR] Skipping failed step {message.step_number} for journey {journey.id}")
            await self._advance(journey, campaign, message.step_number, now)
        elif await self.store.mark_failed(journey.id, f"Step {message.step_number} failed: {error}"):
            logger.info(f"[PROCESSOR] Journey {journey.id} failed at step {message.step_number}")
            await self.store.journal(journey, "Journey failed.", step_number=message.step_number, details={"error": error})

    async def _advance(self, journey: LeadJourney, campaign: DripCampaign, step_number: int, reference_time: datetime):
        if await self.store.advance_step(journey.id, step_number):
            journey.current_step = step_number
        else:
            journey = await self.store.get(journey.id)
            if journey.status not in LIVE_STATUSES or journey.current_step != step_number:
                logger.info(
                    f"[PROCESSOR] Journey {journey.id} not advanced past step {step_number} "
                    f"(status={journey.status}, current_step={journey.current_step})"
                )
                return None
        return await self.scheduler.schedule_next_step(journey, reference_time=reference_time, campaign=campaign)

    async def recover_stale_claims(self, older_than: timedelta) -> int:
        """Return messages stuck in 'queued' (worker died mid-send) to 'pending'."""
        now = self.clock()
        result = await self._collection().update_many(
            {"status": MessageStatus.QUEUED.value, "claimed_at": {"$lt": now - older_than}},
            {"$set": {"status": MessageStatus.PENDING.value, "claimed_at": None, "updated_at": now}},
        )
        if result.modified_count:
            logger.warning(f"[PROCESSOR] Released {result.modified_count} stale claims")
        return result.modified_count
