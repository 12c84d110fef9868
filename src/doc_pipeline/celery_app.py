import os

from celery import Celery

from .config import _env_flag, _env_int

BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://127.0.0.1:6379/1")

METADATA_QUEUE = "file-queue"
CONVERSION_QUEUE = "file-conversion-queue"

CONVERT_TASK = "doc_pipeline.convert_document"
METADATA_TASK = "doc_pipeline.extract_metadata"

app = Celery("doc_pipeline", broker=BROKER_URL, backend=RESULT_BACKEND, include=["doc_pipeline.tasks"])

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    task_ignore_result=_env_flag("CELERY_TASK_IGNORE_RESULT", True),
    result_expires=_env_int("CELERY_RESULT_EXPIRES", 3600),
    # at-least-once: ack after the task body ran, redeliver if the worker died
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=_env_int("CELERY_PREFETCH_MULTIPLIER", 1),
    broker_pool_limit=_env_int("CELERY_BROKER_POOL_LIMIT", 10),
    broker_connection_retry_on_startup=True,
    broker_transport_options={"visibility_timeout": _env_int("QUEUE_VISIBILITY_SEC", 3600)},
    task_default_queue=CONVERSION_QUEUE,
    task_routes={
        CONVERT_TASK: {"queue": CONVERSION_QUEUE},
        METADATA_TASK: {"queue": METADATA_QUEUE},
    },
)
