from celery import Celery

from caseload.core.config import settings
from caseload.core.logging import configure_logging

configure_logging(settings.ENV)

celery_app = Celery(
    "caseload",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["caseload.worker.tasks"],
)

celery_app.conf.update(
    task_default_queue=settings.IMPORT_QUEUE_NAME,
    task_routes={"imports.run_import": {"queue": settings.IMPORT_QUEUE_NAME}},
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # fixed pool, one job per process at a time
    worker_concurrency=settings.IMPORT_WORKER_CONCURRENCY,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    # a killed child process sends the job back to the queue instead of acking it
    task_reject_on_worker_lost=True,
    broker_connection_retry=True,
    broker_connection_retry_on_startup=True,
    # the importer enforces its own budget between rows; these only catch a wedged row
    task_soft_time_limit=int(settings.IMPORT_JOB_TIMEOUT_SECONDS) + 60,
    task_time_limit=int(settings.IMPORT_JOB_TIMEOUT_SECONDS) + 120,
)
