import threading

from .celery_app import CONVERT_TASK, METADATA_TASK, app
from .conversion.errors import StorageError
from .conversion.interfaces import JobMessage

_components = None
_components_lock = threading.Lock()


def get_components():
    """Process-wide components for task bodies, built on first use."""
    global _components
    with _components_lock:
        if _components is None:
            # Lazy import to avoid circular imports at worker startup
            from .components import build_components
            from .config import Settings

            _components = build_components(Settings.from_env())
        return _components


def use_components(components) -> None:
    global _components
    with _components_lock:
        _components = components


# Storage outages are retried; everything else is recorded by the worker itself.
RETRY_OPTIONS = {
    "autoretry_for": (StorageError,),
    "retry_backoff": True,
    "retry_backoff_max": 300,
    "max_retries": 5,
}


@app.task(name=CONVERT_TASK, **RETRY_OPTIONS)
def convert_document(payload: dict) -> str:
    message = JobMessage.from_dict(payload)
    record = get_components().conversion_worker().process(message)
    return record.status


@app.task(name=METADATA_TASK, **RETRY_OPTIONS)
def extract_metadata(payload: dict) -> int:
    message = JobMessage.from_dict(payload)
    record = get_components().metadata_worker().process(message)
    return len(record.metadata) if record is not None else 0
