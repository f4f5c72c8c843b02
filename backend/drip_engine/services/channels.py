"""
Channel adapter contract shared by the SMS and email integrations.
"""
import re
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SendResult(BaseModel):
    provider_id: Optional[str] = None
    retryable: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.provider_id is not None and self.error is None

    @classmethod
    def success(cls, provider_id: str) -> "SendResult":
        return cls(provider_id=provider_id)

    @classmethod
    def failure(cls, error: str, retryable: bool) -> "SendResult":
        return cls(error=error, retryable=retryable)


class ChannelAdapter(ABC):
    """Uniform send/validate contract for one delivery channel."""

    channel: str

    @abstractmethod
    def validate(self, address: str) -> bool:
        """Return True when the address is well-formed for this channel."""

    @abstractmethod
    async def send(self, address: str, content: str, correlation_id: str,
                   subject: Optional[str] = None) -> SendResult:
        """
        Hand one message to the provider.

        Returns the provider's message id on success. Failures come back as a
        result flagged retryable (timeouts, rate limits, 5xx) or not.
        """


def is_valid_phone(address: str) -> bool:
    return bool(address) and bool(E164_PATTERN.match(address))


def is_valid_email(address: str) -> bool:
    return bool(address) and bool(EMAIL_PATTERN.match(address))
