import asyncio
import logging
from datetime import timedelta

from drip_engine import config
from drip_engine.celery_config import celery_app
from drip_engine.db.init import close_db, init_db
from drip_engine.models.journey import LeadContact
from drip_engine.services.email import SmtpEmailAdapter
from drip_engine.services.message_processor import MessageProcessor, ProcessorConfig
from drip_engine.services.sms import TwilioSmsAdapter
from drip_engine.services.step_scheduler import StepScheduler

logger = logging.getLogger(__name__)


def build_processor() -> MessageProcessor:
    adapters = {
        "sms": TwilioSmsAdapter(),
        "email": SmtpEmailAdapter(),
    }
    return MessageProcessor(adapters, ProcessorConfig())


@celery_app.task(name="drip_engine.tasks.process_drip_messages_task", acks_late=True, max_retries=0)
def process_drip_messages_task():
    """
    Periodic batch run: claim due messages per channel, send them, advance journeys.
    Returns the run summary counts.
    """
    async def run():
        await init_db()
        try:
            summary = await build_processor().run()
        finally:
            close_db()
        return {
            "sent": summary.sent,
            "failed": summary.failed,
            "retried": summary.retried,
            "channels": {channel: stats.model_dump() for channel, stats in summary.channels.items()},
        }

    try:
        return asyncio.run(run())
    except Exception as e:
        logger.error(f"=== PROCESS_DRIP_MESSAGES_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="drip_engine.tasks.recover_stale_claims_task", acks_late=True, max_retries=0)
def recover_stale_claims_task():
    """Release messages left in 'queued' by a worker that died mid-send."""
    async def recover():
        await init_db()
        try:
            return await build_processor().recover_stale_claims(timedelta(minutes=config.DRIP_STALE_CLAIM_MINUTES))
        finally:
            close_db()

    try:
        return asyncio.run(recover())
    except Exception as e:
        logger.error(f"Error in recover_stale_claims_task: {e}", exc_info=True)
        raise


@celery_app.task(name="drip_engine.tasks.trigger_journey_task", acks_late=True, max_retries=3)
def trigger_journey_task(campaign_id: str, lead: dict):
    """Start a lead on a drip campaign from a queued lead-captured event."""
    async def trigger():
        await init_db()
        try:
            journey = await StepScheduler().start_journey(campaign_id, LeadContact(**lead))
        finally:
            close_db()
        return str(journey.id)

    try:
        return asyncio.run(trigger())
    except Exception as e:
        logger.error(f"=== TRIGGER_JOURNEY_TASK FAILED ===")
        logger.error(f"Campaign ID: {campaign_id}")
        logger.error(f"Error: {e}", exc_info=True)
        raise
