"""
Tests for campaign step validation, journey creation and step scheduling.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import T0
from drip_engine.exceptions import CampaignNotFoundError, InvalidCampaignError
from drip_engine.models.campaign import DripCampaign, DripStep
from drip_engine.models.journey import LeadContact, LeadJourney
from drip_engine.models.journey_journal import JourneyJournal
from drip_engine.models.message import Message, MessageStatus
from drip_engine.services.step_scheduler import JourneyCompleted


@pytest.mark.usefixtures("db")
class TestCampaignSteps:
    async def test_steps_are_sorted_by_number(self):
        campaign = DripCampaign(
            campaign_id="c1",
            name="Out of order",
            steps=[
                DripStep(step_number=2, channel="sms", content_template="second"),
                DripStep(step_number=1, channel="email", content_template="first"),
            ],
        )
        assert [s.step_number for s in campaign.steps] == [1, 2]
        assert campaign.total_steps == 2
        assert campaign.get_step(1).content_template == "first"
        assert campaign.get_step(3) is None
        assert campaign.get_step(0) is None

    async def test_gap_in_step_numbers_is_rejected(self):
        with pytest.raises(ValidationError):
            DripCampaign(
                campaign_id="c2",
                name="Gappy",
                steps=[
                    DripStep(step_number=1, channel="email", content_template="a"),
                    DripStep(step_number=3, channel="sms", content_template="b"),
                ],
            )

    async def test_duplicate_step_numbers_are_rejected(self):
        with pytest.raises(ValidationError):
            DripCampaign(
                campaign_id="c3",
                name="Dupes",
                steps=[
                    DripStep(step_number=1, channel="email", content_template="a"),
                    DripStep(step_number=1, channel="sms", content_template="b"),
                ],
            )

    def test_negative_delay_is_rejected(self):
        with pytest.raises(ValidationError):
            DripStep(step_number=1, channel="sms", delay_minutes=-5, content_template="a")

    def test_unknown_channel_is_rejected(self):
        with pytest.raises(ValidationError):
            DripStep(step_number=1, channel="fax", content_template="a")


class TestStartJourney:
    async def test_creates_journey_and_schedules_first_step(self, scheduler, campaign, contact):
        journey = await scheduler.start_journey(campaign.campaign_id, contact, trigger_time=T0)

        assert journey.status == "active"
        assert journey.current_step == 0
        assert journey.started_at == T0

        messages = await Message.find(Message.journey_id == journey.id).to_list()
        assert len(messages) == 1
        message = messages[0]
        assert message.step_number == 1
        assert message.channel == "email"
        assert message.recipient == "ada@example.com"
        assert message.status == MessageStatus.PENDING
        assert message.scheduled_at == T0
        assert message.attempt_count == 0
        assert message.subject == "Welcome, Ada"
        assert message.content == "Hi Ada, thanks for reaching out!"

    async def test_repeated_trigger_returns_existing_journey(self, scheduler, campaign, contact, clock):
        first = await scheduler.start_journey(campaign.campaign_id, contact)
        clock.advance(minutes=5)
        second = await scheduler.start_journey(campaign.campaign_id, contact)

        assert second.id == first.id
        assert await LeadJourney.find_all().count() == 1
        assert await Message.find_all().count() == 1

    async def test_same_lead_may_join_another_campaign(self, scheduler, make_campaign, contact):
        await make_campaign("drip_a")
        await make_campaign("drip_b")

        a = await scheduler.start_journey("drip_a", contact)
        b = await scheduler.start_journey("drip_b", contact)

        assert a.id != b.id
        assert await LeadJourney.find_all().count() == 2

    async def test_unknown_campaign(self, scheduler, contact):
        with pytest.raises(CampaignNotFoundError):
            await scheduler.start_journey("missing", contact)

    async def test_inactive_campaign_accepts_no_new_journeys(self, scheduler, make_campaign, contact):
        await make_campaign("drip_paused", active=False)
        with pytest.raises(InvalidCampaignError):
            await scheduler.start_journey("drip_paused", contact)
        assert await LeadJourney.find_all().count() == 0

    async def test_journal_records_start_and_schedule(self, scheduler, campaign, contact):
        journey = await scheduler.start_journey(campaign.campaign_id, contact)
        entries = await JourneyJournal.find(JourneyJournal.journey_id == journey.id).to_list()
        assert [e.message for e in entries] == ["Journey started.", "Step 1 scheduled."]


class TestScheduleNextStep:
    async def test_scheduling_twice_creates_one_message(self, scheduler, campaign, contact):
        journey = await scheduler.start_journey(campaign.campaign_id, contact, trigger_time=T0)

        again = await scheduler.schedule_next_step(journey, reference_time=T0 + timedelta(minutes=3))

        assert isinstance(again, Message)
        assert again.step_number == 1
        # The first schedule is kept
        assert again.scheduled_at == T0
        assert await Message.find(Message.journey_id == journey.id).count() == 1

    async def test_delay_is_relative_to_reference_time(self, scheduler, campaign, contact, store):
        journey = await scheduler.start_journey(campaign.campaign_id, contact, trigger_time=T0)
        await store.advance_step(journey.id, 1)
        journey = await store.get(journey.id)

        sent_at = T0 + timedelta(minutes=7)
        message = await scheduler.schedule_next_step(journey, reference_time=sent_at)

        assert message.step_number == 2
        assert message.channel == "sms"
        assert message.recipient == "+14155552671"
        assert message.subject is None
        assert message.scheduled_at == sent_at + timedelta(minutes=1440)
        assert message.content == "Hi Ada, any questions about Analytical Engines?"

    async def test_no_next_step_completes_journey(self, scheduler, campaign, contact, store):
        journey = await scheduler.start_journey(campaign.campaign_id, contact, trigger_time=T0)
        await store.advance_step(journey.id, 1)
        await store.advance_step(journey.id, 2)
        journey = await store.get(journey.id)

        done_at = T0 + timedelta(days=2)
        result = await scheduler.schedule_next_step(journey, reference_time=done_at)

        assert isinstance(result, JourneyCompleted)
        journey = await store.get(journey.id)
        assert journey.status == "completed"
        assert journey.completed_at == done_at
        assert await Message.find(Message.journey_id == journey.id).count() == 1

    async def test_empty_campaign_completes_immediately(self, scheduler, make_campaign, contact, store):
        await make_campaign("drip_empty", steps=[])
        journey = await scheduler.start_journey("drip_empty", contact, trigger_time=T0)

        journey = await store.get(journey.id)
        assert journey.status == "completed"
        assert await Message.find_all().count() == 0

    async def test_step_beyond_campaign_is_rejected(self, scheduler, campaign, contact, store):
        journey = await scheduler.start_journey(campaign.campaign_id, contact)
        journey.current_step = 5
        with pytest.raises(InvalidCampaignError):
            await scheduler.schedule_next_step(journey)

    async def test_missing_recipient_still_schedules(self, scheduler, make_campaign):
        await make_campaign("drip_sms", steps=[
            DripStep(step_number=1, channel="sms", content_template="Hi {{ first_name }}"),
        ])
        journey = await scheduler.start_journey("drip_sms", LeadContact(lead_id="lead_no_phone", first_name="Bo"))

        message = await Message.find_one(Message.journey_id == journey.id)
        assert message.recipient == ""
        assert message.content == "Hi Bo"

    async def test_custom_fields_render(self, scheduler, make_campaign):
        await make_campaign("drip_custom", steps=[
            DripStep(step_number=1, channel="email", subject_template="About {{ plan }}",
                     content_template="{{ first_name }} picked {{ plan }}"),
        ])
        lead = LeadContact(lead_id="lead_c", first_name="Cy", email="cy@example.com", custom_fields={"plan": "Pro"})
        journey = await scheduler.start_journey("drip_custom", lead)

        message = await Message.find_one(Message.journey_id == journey.id)
        assert message.subject == "About Pro"
        assert message.content == "Cy picked Pro"
