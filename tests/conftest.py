"""
Shared fixtures for the drip engine tests.

MongoDB is replaced by mongomock-motor, channel providers by in-memory fake
adapters and wall-clock time by a mutable fake clock.
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from mongomock_motor import AsyncMongoMockClient

from drip_engine.db.init import init_db
from drip_engine.models.campaign import DripCampaign, DripStep
from drip_engine.models.journey import LeadContact
from drip_engine.services.channels import ChannelAdapter, SendResult, is_valid_email, is_valid_phone
from drip_engine.services.journey_store import JourneyStore
from drip_engine.services.message_processor import MessageProcessor, ProcessorConfig
from drip_engine.services.step_scheduler import StepScheduler

T0 = datetime(2024, 3, 1, 9, 0, 0)


# ====================
# Test doubles
# ====================


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAdapter(ChannelAdapter):
    """
    Records every send. Scripted results are consumed in order (a SendResult
    is returned, an exception is raised); once exhausted every send succeeds.
    """

    def __init__(self, channel: str, results: Optional[list] = None, delay: float = 0):
        self.channel = channel
        self.results = list(results or [])
        self.delay = delay
        self.sent: List[dict] = []

    def validate(self, address: str) -> bool:
        return is_valid_phone(address) if self.channel == "sms" else is_valid_email(address)

    async def send(self, address, content, correlation_id, subject=None) -> SendResult:
        self.sent.append({
            "address": address,
            "content": content,
            "correlation_id": correlation_id,
            "subject": subject,
        })
        # Yield so concurrent runs interleave
        await asyncio.sleep(self.delay)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SendResult.success(f"{self.channel}-provider-{len(self.sent)}")


# ====================
# Fixtures
# ====================


@pytest.fixture
async def db():
    """Fresh in-memory database with Beanie initialised for every test."""
    database = AsyncMongoMockClient()["drip_engine_test"]
    await init_db(database=database)
    yield database


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db, clock):
    return JourneyStore(clock=clock)


@pytest.fixture
def scheduler(store, clock):
    return StepScheduler(store=store, clock=clock)


@pytest.fixture
def sms_adapter():
    return FakeAdapter("sms")


@pytest.fixture
def email_adapter():
    return FakeAdapter("email")


@pytest.fixture
def processor_config():
    return ProcessorConfig(
        batch_size=50,
        max_retries=3,
        backoff_base_seconds=60,
        backoff_cap_seconds=3600,
        batch_delay_seconds=0,
        send_timeout_seconds=5,
    )


@pytest.fixture
def make_processor(clock, store, scheduler, processor_config):
    def _make(adapters, config: ProcessorConfig = None) -> MessageProcessor:
        return MessageProcessor(adapters, config or processor_config, clock=clock, scheduler=scheduler, store=store)
    return _make


@pytest.fixture
def processor(make_processor, sms_adapter, email_adapter):
    return make_processor({"sms": sms_adapter, "email": email_adapter})


@pytest.fixture
def contact():
    return LeadContact(
        lead_id="lead_001",
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        phone="+14155552671",
        company="Analytical Engines",
    )


@pytest.fixture
def make_campaign(db):
    async def _make(campaign_id="drip_welcome", steps=None, **kwargs) -> DripCampaign:
        if steps is None:
            steps = [
                DripStep(step_number=1, channel="email", delay_minutes=0,
                         subject_template="Welcome, {{ first_name }}",
                         content_template="Hi {{ first_name }}, thanks for reaching out!"),
                DripStep(step_number=2, channel="sms", delay_minutes=1440,
                         content_template="Hi {{ first_name }}, any questions about {{ company }}?"),
            ]
        campaign = DripCampaign(campaign_id=campaign_id, name=kwargs.pop("name", "Welcome Sequence"),
                                steps=steps, **kwargs)
        await campaign.insert()
        return campaign
    return _make


@pytest.fixture
async def campaign(make_campaign):
    return await make_campaign()
