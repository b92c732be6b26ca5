"""
Celery worker for the learning loop: stability snapshots, canary runs and
vendor embedding generation.

Run with:
    celery -A services.worker.celery_app worker -Q learning,embeddings
    celery -A services.worker.celery_app beat
"""
import asyncio

import structlog
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown

from ledgerlens.common.config import get_settings
from ledgerlens.common.database import sessionmanager
from ledgerlens.common.log_config import configure_logging

logger = structlog.get_logger()
settings = get_settings()

TASKS = "services.worker.tasks.learning_jobs"
LEARNING_QUEUE = "learning"
EMBEDDING_QUEUE = "embeddings"

app = Celery("ledgerlens_worker", broker=settings.celery_broker_url, backend=settings.celery_result_backend)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="UTC",
    # Snapshot and canary jobs are idempotent, so redelivery is safe
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_soft_time_limit=270,
    task_time_limit=300,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,
    result_expires=86400,
    task_default_queue=LEARNING_QUEUE,
    task_routes={
        f"{TASKS}.generate_vendor_embeddings": {"queue": EMBEDDING_QUEUE},
        f"{TASKS}.*": {"queue": LEARNING_QUEUE},
    },
    beat_schedule={
        "nightly-stability-snapshots": {
            "task": f"{TASKS}.create_stability_snapshots_for_all_orgs",
            "schedule": crontab(hour=2, minute=30),
        },
    },
)

# Registers the tasks with the app
from services.worker.tasks import learning_jobs  # noqa: E402,F401


@worker_process_init.connect
def on_worker_start(**kwargs):
    configure_logging(settings.log_level, settings.json_logs)
    logger.info("worker_process_started", environment=settings.environment)


@worker_process_shutdown.connect
def on_worker_stop(**kwargs):
    try:
        asyncio.run(sessionmanager.close())
    except Exception as e:
        logger.error("worker_pool_close_failed", error=str(e))
    logger.info("worker_process_stopped")


if __name__ == "__main__":
    app.start()
