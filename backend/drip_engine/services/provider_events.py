"""
Normalisation of provider callback payloads into engine delivery events.

Supported envelopes:
  twilio   - form-encoded status callback (MessageSid, MessageStatus, ErrorCode, ErrorMessage)
  sendgrid - JSON array of event webhook objects (smtp-id / sg_message_id, event, timestamp, reason)
  internal - JSON object or array using the engine's own vocabulary
             (provider_message_id, correlation_id, event, timestamp, error, conversion_event)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs

from pydantic import BaseModel, ValidationError

from drip_engine.clock import utcnow
from drip_engine.exceptions import WebhookPayloadError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("sent", "delivered", "opened", "clicked", "failed", "bounced", "converted")

TWILIO_STATUS_MAP = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "opened",
    "undelivered": "failed",
    "failed": "failed",
}

SENDGRID_EVENT_MAP = {
    "processed": "sent",
    "delivered": "delivered",
    "open": "opened",
    "click": "clicked",
    "bounce": "bounced",
    "dropped": "bounced",
    "conversion": "converted",
}


class ProviderEvent(BaseModel):
    provider: str
    provider_message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    event_type: Optional[str] = None  # None when the provider event has no engine meaning
    raw_event: str
    occurred_at: datetime
    error: Optional[str] = None
    conversion_event: Optional[str] = None


def _timestamp(value) -> datetime:
    if value in (None, ""):
        return utcnow()
    if isinstance(value, (int, float)) or str(value).replace(".", "", 1).isdigit():
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise WebhookPayloadError(f"Unparseable timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _json_events(raw_body: bytes) -> List[dict]:
    try:
        body = json.loads(raw_body or b"null")
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookPayloadError(f"Invalid JSON payload: {e}")
    events = body if isinstance(body, list) else [body]
    if not events or not all(isinstance(e, dict) for e in events):
        raise WebhookPayloadError("Payload must be an event object or a list of event objects")
    return events


def parse_twilio(raw_body: bytes, correlation_id: Optional[str] = None) -> List[ProviderEvent]:
    try:
        params = {k: v[0] for k, v in parse_qs(raw_body.decode("utf-8"), strict_parsing=True).items()}
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookPayloadError(f"Invalid form payload: {e}")
    if not params.get("MessageSid") or not params.get("MessageStatus"):
        raise WebhookPayloadError("Twilio callback missing MessageSid or MessageStatus")

    status = params["MessageStatus"].lower()
    error = None
    if params.get("ErrorCode"):
        error = f"{params['ErrorCode']}: {params.get('ErrorMessage', '')}".strip()
    return [ProviderEvent(
        provider="twilio",
        provider_message_id=params["MessageSid"],
        correlation_id=correlation_id,
        event_type=TWILIO_STATUS_MAP.get(status),
        raw_event=status,
        occurred_at=_timestamp(params.get("Timestamp")),
        error=error,
    )]


def parse_sendgrid(raw_body: bytes, correlation_id: Optional[str] = None) -> List[ProviderEvent]:
    events = []
    for item in _json_events(raw_body):
        raw_event = str(item.get("event", "")).lower()
        if not raw_event:
            raise WebhookPayloadError("SendGrid event missing 'event'")
        # smtp-id is the Message-ID we set when relaying through SendGrid SMTP
        provider_message_id = item.get("smtp-id") or item.get("sg_message_id")
        events.append(ProviderEvent(
            provider="sendgrid",
            provider_message_id=provider_message_id.strip("<>") if provider_message_id else None,
            correlation_id=item.get("correlation_id") or correlation_id,
            event_type=SENDGRID_EVENT_MAP.get(raw_event),
            raw_event=raw_event,
            occurred_at=_timestamp(item.get("timestamp")),
            error=item.get("reason") or item.get("response"),
            conversion_event=item.get("conversion_event"),
        ))
    return events


def parse_internal(raw_body: bytes, correlation_id: Optional[str] = None) -> List[ProviderEvent]:
    events = []
    for item in _json_events(raw_body):
        raw_event = str(item.get("event", "")).lower()
        try:
            events.append(ProviderEvent(
                provider="internal",
                provider_message_id=item.get("provider_message_id"),
                correlation_id=item.get("correlation_id") or correlation_id,
                event_type=raw_event if raw_event in EVENT_TYPES else None,
                raw_event=raw_event,
                occurred_at=_timestamp(item.get("timestamp")),
                error=item.get("error"),
                conversion_event=item.get("conversion_event"),
            ))
        except ValidationError as e:
            raise WebhookPayloadError(f"Invalid internal event: {e}")
    return events


PARSERS: Dict[str, Callable[..., List[ProviderEvent]]] = {
    "twilio": parse_twilio,
    "sendgrid": parse_sendgrid,
    "internal": parse_internal,
}


def parse_provider_payload(provider: str, raw_body: bytes, correlation_id: Optional[str] = None) -> List[ProviderEvent]:
    parser = PARSERS.get(provider)
    if parser is None:
        raise WebhookPayloadError(f"Unknown provider: {provider}")
    events = parser(raw_body, correlation_id)
    for event in events:
        if event.provider_message_id is None and event.correlation_id is None:
            raise WebhookPayloadError(f"{provider} event '{event.raw_event}' carries no message identifier")
    return events
