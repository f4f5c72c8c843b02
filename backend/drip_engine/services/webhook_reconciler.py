import hashlib
import logging
from typing import Dict, List, Optional

from bson import ObjectId
from itsdangerous import Signer
from pydantic import BaseModel

from drip_engine import config
from drip_engine.clock import Clock, utcnow
from drip_engine.exceptions import WebhookVerificationError
from drip_engine.models.campaign import DripCampaign
from drip_engine.models.delivery_event import DeliveryEvent
from drip_engine.models.message import Message, MessageStatus, STATUS_RANK, TERMINAL_FAILURE_STATUS
from drip_engine.services.journey_store import JourneyStore, INTERACTION_COUNTERS
from drip_engine.services.provider_events import ProviderEvent, parse_provider_payload

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Drip-Signature"

TIMESTAMP_FIELDS = {
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.OPENED: "opened_at",
    MessageStatus.CLICKED: "clicked_at",
    MessageStatus.FAILED: "failed_at",
    MessageStatus.BOUNCED: "failed_at",
}


def _signer(secret: str) -> Signer:
    # Raw HMAC-SHA256 of the body with the shared secret, base64url without padding
    return Signer(secret, key_derivation="none", digest_method=hashlib.sha256)


def signed_material(raw_body: bytes, correlation_id: Optional[str] = None) -> bytes:
    """Bytes a signature covers: the body, prefixed by a correlation id passed outside it."""
    if not correlation_id:
        return raw_body
    return correlation_id.encode("utf-8") + b"." + raw_body


def sign_payload(secret: str, raw_body: bytes, correlation_id: Optional[str] = None) -> str:
    """Signature a provider must send in the X-Drip-Signature header."""
    return _signer(secret).get_signature(signed_material(raw_body, correlation_id)).decode("ascii")


def allowed_sources(target: MessageStatus) -> List[str]:
    """Statuses a message may be in for an event moving it to target."""
    if target in (MessageStatus.FAILED, MessageStatus.BOUNCED):
        return [MessageStatus.QUEUED.value, MessageStatus.SENT.value]
    target_rank = STATUS_RANK[target]
    return [
        status.value for status, rank in STATUS_RANK.items()
        if rank < target_rank and status != MessageStatus.PENDING
    ]


class IngestResult(BaseModel):
    applied: int = 0
    ignored: int = 0
    unknown: int = 0


class WebhookReconciler:
    """
    Applies asynchronous provider delivery/engagement callbacks to messages
    and journeys.

    Runs independently of the processor and tolerates any arrival order:
    status only ever moves forward, so a late or repeated callback matches no
    document and changes nothing.
    """

    def __init__(self, secrets: Optional[Dict[str, str]] = None, clock: Clock = utcnow,
                 store: Optional[JourneyStore] = None):
        self.secrets = secrets if secrets is not None else config.WEBHOOK_SECRETS
        self.clock = clock
        self.store = store or JourneyStore(clock=clock)

    def verify(self, provider: str, raw_body: bytes, signature: Optional[str], correlation_id: Optional[str] = None):
        secret = self.secrets.get(provider)
        if not secret:
            logger.warning(f"[RECONCILER] Rejected {provider} webhook: no shared secret configured")
            raise WebhookVerificationError(f"No shared secret configured for provider '{provider}'")
        if not signature or not _signer(secret).verify_signature(
            signed_material(raw_body, correlation_id), signature.encode("ascii", "ignore")
        ):
            logger.warning(f"[RECONCILER] Rejected {provider} webhook: bad or missing signature")
            raise WebhookVerificationError("Invalid webhook signature")

    async def ingest_payload(self, provider: str, raw_body: bytes, signature: Optional[str],
                             correlation_id: Optional[str] = None) -> IngestResult:
        """Verify a raw callback body, then apply every event it carries."""
        self.verify(provider, raw_body, signature, correlation_id)
        events = parse_provider_payload(provider, raw_body, correlation_id)

        result = IngestResult()
        for event in events:
            outcome = await self.ingest(event)
            if outcome == "applied":
                result.applied += 1
            elif outcome == "unknown_message":
                result.unknown += 1
            else:
                result.ignored += 1
        logger.info(
            f"[RECONCILER] {provider} webhook processed: applied={result.applied} "
            f"ignored={result.ignored} unknown={result.unknown}"
        )
        return result

    async def _find_message(self, event: ProviderEvent) -> Optional[Message]:
        if event.provider_message_id:
            message = await Message.find_one(Message.provider_id == event.provider_message_id)
            if message:
                return message
        # The provider id may not be recorded yet when the callback beats the processor's write
        if event.correlation_id and ObjectId.is_valid(event.correlation_id):
            return await Message.get(ObjectId(event.correlation_id))
        return None

    async def ingest(self, event: ProviderEvent) -> str:
        """Apply one verified provider event; returns the recorded outcome."""
        message = await self._find_message(event)
        if message is None:
            logger.warning(
                f"[RECONCILER] Unknown message for {event.provider} event '{event.raw_event}' "
                f"(provider id {event.provider_message_id}, correlation id {event.correlation_id})"
            )
            await self._record(event, "unknown_message")
            return "unknown_message"

        if event.event_type is None:
            logger.debug(f"[RECONCILER] Ignoring {event.provider} event '{event.raw_event}' for message {message.id}")
            outcome = "ignored"
        elif event.event_type == "converted":
            outcome = await self._apply_conversion(message, event)
        else:
            outcome = await self._apply_status(message, event)

        await self._record(event, outcome, message)
        return outcome

    async def _apply_status(self, message: Message, event: ProviderEvent) -> str:
        if event.event_type in ("failed", "bounced"):
            # The send already left our hands; no retry, only the terminal status
            target = TERMINAL_FAILURE_STATUS[message.channel]
        else:
            target = MessageStatus(event.event_type)

        update = {
            "status": target.value,
            TIMESTAMP_FIELDS[target]: event.occurred_at,
            "updated_at": self.clock(),
        }
        if target in (MessageStatus.FAILED, MessageStatus.BOUNCED):
            update["last_error"] = event.error or f"{event.provider} reported {event.raw_event}"
        if event.provider_message_id and not message.provider_id:
            update["provider_id"] = event.provider_message_id

        result = await Message.get_motor_collection().update_one(
            {"_id": message.id, "status": {"$in": allowed_sources(target)}},
            {"$set": update},
        )
        if result.modified_count == 0:
            logger.info(
                f"[RECONCILER] Stale {event.event_type} event for message {message.id} "
                f"(status {message.status.value}); ignored"
            )
            return "ignored"

        logger.info(f"[RECONCILER] Message {message.id}: {message.status.value} -> {target.value}")
        if target.value in INTERACTION_COUNTERS:
            await self.store.record_interaction(message.journey_id, target.value, event.occurred_at)
        return "applied"

    async def _apply_conversion(self, message: Message, event: ProviderEvent) -> str:
        campaign = await DripCampaign.find_one(DripCampaign.campaign_id == message.campaign_id)
        if campaign is None or event.conversion_event not in campaign.conversion_events:
            logger.info(
                f"[RECONCILER] Conversion '{event.conversion_event}' is not configured for "
                f"campaign {message.campaign_id}; ignored"
            )
            return "ignored"

        if not await self.store.mark_converted(message.journey_id, event.conversion_event, event.occurred_at):
            logger.info(f"[RECONCILER] Journey {message.journey_id} already finished; conversion ignored")
            return "ignored"

        logger.info(f"[RECONCILER] Journey {message.journey_id} converted: {event.conversion_event}")
        journey = await self.store.get(message.journey_id)
        await self.store.journal(journey, f"Converted: {event.conversion_event}.", step_number=message.step_number,
                                 message_id=message.id)
        return "applied"

    async def _record(self, event: ProviderEvent, outcome: str, message: Optional[Message] = None):
        await DeliveryEvent(
            provider=event.provider,
            provider_message_id=event.provider_message_id,
            correlation_id=event.correlation_id,
            event_type=event.event_type or "unrecognized",
            raw_event=event.raw_event,
            occurred_at=event.occurred_at,
            received_at=self.clock(),
            outcome=outcome,
            message_id=message.id if message else None,
            error=event.error,
        ).insert()
