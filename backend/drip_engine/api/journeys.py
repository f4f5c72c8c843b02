from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from beanie import PydanticObjectId
import logging

from drip_engine.exceptions import CampaignNotFoundError, InvalidCampaignError, JourneyNotFoundError
from drip_engine.models.journey import LeadContact, LeadJourney
from drip_engine.models.message import Message
from drip_engine.services.journey_store import JourneyStore
from drip_engine.services.step_scheduler import StepScheduler

logger = logging.getLogger(__name__)
router = APIRouter()


# Lead-captured trigger, as posted by the lead ingestion side
class TriggerRequest(BaseModel):
    campaign_id: str
    lead: LeadContact
    trigger_time: Optional[datetime] = None


class MessageView(BaseModel):
    id: str
    step_number: int
    channel: str
    recipient: str
    status: str
    scheduled_at: datetime
    attempt_count: int
    last_error: Optional[str] = None
    provider_id: Optional[str] = None


class JourneyResponse(BaseModel):
    id: str
    lead_id: str
    campaign_id: str
    current_step: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    total_sms_sent: int
    total_emails_sent: int
    total_delivered: int
    total_opens: int
    total_clicks: int
    conversion_event: Optional[str] = None
    messages: List[MessageView] = []


async def _journey_response(journey: LeadJourney) -> JourneyResponse:
    messages = await Message.find(Message.journey_id == journey.id).sort(+Message.step_number).to_list()
    return JourneyResponse(
        id=str(journey.id),
        messages=[
            MessageView(
                id=str(m.id),
                step_number=m.step_number,
                channel=m.channel,
                recipient=m.recipient,
                status=m.status.value,
                scheduled_at=m.scheduled_at,
                attempt_count=m.attempt_count,
                last_error=m.last_error,
                provider_id=m.provider_id,
            )
            for m in messages
        ],
        **journey.model_dump(include={
            "lead_id", "campaign_id", "current_step", "status", "started_at", "completed_at",
            "last_interaction_at", "total_sms_sent", "total_emails_sent", "total_delivered",
            "total_opens", "total_clicks", "conversion_event",
        }),
    )


@router.post("/journeys", response_model=JourneyResponse, status_code=201)
async def trigger_journey(request: TriggerRequest):
    """
    Lead captured: start the lead on the campaign's drip sequence.
    Triggering the same lead twice returns the existing journey.
    """
    logger.info(f"[JOURNEY] Trigger received for lead {request.lead.lead_id} on campaign {request.campaign_id}")
    try:
        journey = await StepScheduler().start_journey(request.campaign_id, request.lead, request.trigger_time)
    except CampaignNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidCampaignError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await _journey_response(journey)


@router.get("/journeys/{journey_id}", response_model=JourneyResponse)
async def get_journey(journey_id: PydanticObjectId):
    try:
        journey = await JourneyStore().get(journey_id)
    except JourneyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return await _journey_response(journey)


@router.post("/journeys/{journey_id}/pause", response_model=JourneyResponse)
async def pause_journey(journey_id: PydanticObjectId):
    store = JourneyStore()
    try:
        journey = await store.get(journey_id)
    except JourneyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not await store.pause(journey_id):
        raise HTTPException(status_code=409, detail=f"Journey is {journey.status}, only active journeys can be paused")
    await store.journal(journey, "Journey paused.", step_number=journey.current_step)
    return await _journey_response(await store.get(journey_id))


@router.post("/journeys/{journey_id}/resume", response_model=JourneyResponse)
async def resume_journey(journey_id: PydanticObjectId):
    store = JourneyStore()
    try:
        journey = await store.get(journey_id)
    except JourneyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not await store.resume(journey_id):
        raise HTTPException(status_code=409, detail=f"Journey is {journey.status}, only paused journeys can be resumed")
    await store.journal(journey, "Journey resumed.", step_number=journey.current_step)
    return await _journey_response(await store.get(journey_id))
