from celery import Celery

from drip_engine import config

celery_app = Celery(
    "drip_engine_tasks",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=["drip_engine.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Acknowledge only after the run completes
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # A failed processor run is not retried by Celery; the next beat tick is the retry
    task_max_retries=0,
    task_eager_propagates=True,
    worker_max_tasks_per_child=1000,
    result_expires=3600,  # 1 hour
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,
)
