import logging
from typing import Optional

import httpx

from drip_engine import config
from drip_engine.services.channels import ChannelAdapter, SendResult, is_valid_phone

logger = logging.getLogger(__name__)

TWILIO_BASE_URL = "https://api.twilio.com/2010-04-01"
MAX_SMS_LENGTH = 1600


class TwilioSmsAdapter(ChannelAdapter):
    """Sends SMS through the Twilio Messages REST endpoint."""

    channel = "sms"

    def __init__(self, account_sid: str = None, auth_token: str = None, from_number: str = None,
                 status_callback_url: str = None, timeout: float = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.account_sid = account_sid or config.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or config.TWILIO_AUTH_TOKEN
        self.from_number = from_number or config.TWILIO_PHONE_NUMBER
        self.status_callback_url = status_callback_url or config.TWILIO_STATUS_CALLBACK_URL
        self.timeout = timeout or config.DRIP_SEND_TIMEOUT_SECONDS
        self.client = client

    def validate(self, address: str) -> bool:
        return is_valid_phone(address)

    async def send(self, address: str, content: str, correlation_id: str,
                   subject: Optional[str] = None) -> SendResult:
        if not self.account_sid or not self.auth_token:
            logger.error("[SMS] Twilio credentials are not configured")
            return SendResult.failure("Twilio credentials not configured", retryable=False)

        if len(content) > MAX_SMS_LENGTH:
            return SendResult.failure(
                f"SMS body too long: {len(content)} characters (max {MAX_SMS_LENGTH})", retryable=False
            )

        payload = {"To": address, "From": self.from_number, "Body": content}
        if self.status_callback_url:
            # Twilio echoes the callback URL verbatim, which carries the correlation id back
            payload["StatusCallback"] = f"{self.status_callback_url}?correlation_id={correlation_id}"

        endpoint = f"{TWILIO_BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        logger.info(f"[SMS] Sending message {correlation_id} to {address}")
        try:
            if self.client is not None:
                response = await self.client.post(endpoint, data=payload, auth=(self.account_sid, self.auth_token),
                                                  timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(endpoint, data=payload, auth=(self.account_sid, self.auth_token))
        except httpx.TimeoutException as e:
            logger.warning(f"[SMS] Twilio request timed out for message {correlation_id}: {e}")
            return SendResult.failure(f"Twilio timeout: {e}", retryable=True)
        except httpx.HTTPError as e:
            logger.warning(f"[SMS] Twilio transport error for message {correlation_id}: {e}")
            return SendResult.failure(f"Twilio transport error: {e}", retryable=True)

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"[SMS] Twilio returned {response.status_code} for message {correlation_id}")
            return SendResult.failure(f"Twilio API error: {response.status_code} - {response.text}", retryable=True)
        if response.status_code >= 400:
            logger.error(f"[SMS] Twilio rejected message {correlation_id}: {response.status_code} - {response.text}")
            return SendResult.failure(f"Twilio API error: {response.status_code} - {response.text}", retryable=False)

        sid = response.json().get("sid")
        logger.info(f"[SMS] Message {correlation_id} accepted by Twilio: {sid}")
        return SendResult.success(sid)
