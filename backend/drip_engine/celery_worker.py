import asyncio
import logging
import sys
import time
from celery.signals import worker_process_init

from drip_engine.celery_config import celery_app
from drip_engine.db.init import close_db, init_db
import drip_engine.scheduler  # noqa: F401  registers the beat schedule

# Worker and beat in one process:
#   celery -A drip_engine.celery_worker.celery worker --beat --loglevel=info

logger = logging.getLogger(__name__)

DB_CHECK_ATTEMPTS = 3
DB_CHECK_DELAY_SECONDS = 5


@worker_process_init.connect
def on_worker_init(**kwargs):
    """
    Refuse to start a worker process that cannot reach MongoDB.
    Tasks initialise Beanie again inside their own event loop.
    """
    for attempt in range(1, DB_CHECK_ATTEMPTS + 1):
        try:
            asyncio.run(init_db())
            close_db()
            logger.info(f"[WORKER] Database reachable (attempt {attempt})")
            return
        except Exception as e:
            logger.error(f"[WORKER] Database check {attempt}/{DB_CHECK_ATTEMPTS} failed: {e}", exc_info=True)
            if attempt < DB_CHECK_ATTEMPTS:
                time.sleep(DB_CHECK_DELAY_SECONDS)
    sys.exit(1)


celery = celery_app
