import logging
from celery.schedules import crontab

from drip_engine import config
from drip_engine.celery_config import celery_app
from drip_engine.tasks import process_drip_messages_task, recover_stale_claims_task

logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")

    # Runs may overlap when one overruns the interval; claims keep that safe
    sender.add_periodic_task(
        config.DRIP_PROCESS_INTERVAL_SECONDS,
        process_drip_messages_task.s(),
        name="process-drip-messages"
    )

    sender.add_periodic_task(
        crontab(minute="*"),  # Every minute
        recover_stale_claims_task.s(),
        name="recover-stale-claims"
    )

    logger.info("Periodic tasks configured successfully")
