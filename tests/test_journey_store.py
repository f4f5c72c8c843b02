"""
Tests for the guarded journey writes.
"""

from datetime import timedelta

import pytest
from beanie import PydanticObjectId

from conftest import T0
from drip_engine.exceptions import JourneyNotFoundError
from drip_engine.models.journey_journal import JourneyJournal


@pytest.fixture
async def journey(store, contact):
    journey, created = await store.create("drip_welcome", contact, T0)
    assert created
    return journey


class TestJourneyStore:
    async def test_create_is_idempotent_per_lead_and_campaign(self, store, contact, journey):
        again, created = await store.create("drip_welcome", contact, T0 + timedelta(hours=1))
        assert not created
        assert again.id == journey.id
        assert again.started_at == T0

    async def test_advance_only_from_previous_step(self, store, journey):
        assert await store.advance_step(journey.id, 1)
        assert not await store.advance_step(journey.id, 1)
        assert not await store.advance_step(journey.id, 3)
        assert (await store.get(journey.id)).current_step == 1

    async def test_paused_journey_records_in_flight_step(self, store, journey):
        assert await store.pause(journey.id)
        assert await store.advance_step(journey.id, 1)
        assert not await store.pause(journey.id)

        journey = await store.get(journey.id)
        assert journey.status == "paused"
        assert journey.current_step == 1

        assert await store.resume(journey.id)
        assert await store.advance_step(journey.id, 2)

    async def test_paused_journey_can_complete_or_fail(self, store, contact, journey):
        await store.pause(journey.id)
        assert await store.mark_completed(journey.id, T0)
        assert (await store.get(journey.id)).status == "completed"

        other, _ = await store.create("drip_other", contact, T0)
        await store.pause(other.id)
        assert await store.mark_failed(other.id, "Step 1 failed")
        assert (await store.get(other.id)).status == "failed"

    async def test_terminal_states_are_final(self, store, journey):
        assert await store.mark_failed(journey.id, "Step 1 failed")
        assert not await store.mark_completed(journey.id, T0)
        assert not await store.resume(journey.id)
        assert not await store.mark_converted(journey.id, "booked_call", T0)

        journey = await store.get(journey.id)
        assert journey.status == "failed"
        assert journey.error_message == "Step 1 failed"

    async def test_paused_journey_can_convert(self, store, journey):
        await store.pause(journey.id)
        assert await store.mark_converted(journey.id, "booked_call", T0)

        journey = await store.get(journey.id)
        assert journey.status == "completed"
        assert journey.completed_at == T0

    async def test_counters(self, store, journey):
        await store.increment_sent(journey.id, "sms")
        await store.increment_sent(journey.id, "email")
        await store.increment_sent(journey.id, "email")
        await store.record_interaction(journey.id, "opened", T0 + timedelta(minutes=3))

        journey = await store.get(journey.id)
        assert journey.total_sms_sent == 1
        assert journey.total_emails_sent == 2
        assert journey.total_opens == 1
        assert journey.last_interaction_at == T0 + timedelta(minutes=3)

    async def test_missing_journey(self, store):
        with pytest.raises(JourneyNotFoundError):
            await store.get(PydanticObjectId())

    async def test_journal_failure_is_logged_not_raised(self, store, journey, monkeypatch, caplog):
        async def broken_insert(self, *args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(JourneyJournal, "insert", broken_insert)
        await store.journal(journey, "Step 1 sent.")

        assert "[JOURNAL_ERROR]" in caplog.text
