import pytest
from fastapi.testclient import TestClient

from doc_pipeline.celery_app import CONVERSION_QUEUE, CONVERT_TASK, METADATA_QUEUE, METADATA_TASK, app
from doc_pipeline.components import build_components
from doc_pipeline.conversion.errors import StorageError
from doc_pipeline.conversion.records import ConversionStatus
from doc_pipeline.conversion.service import DOCX_MIME
from doc_pipeline.tasks import convert_document, extract_metadata, use_components
from doc_pipeline.webapi import create_app


def test_jobs_are_acknowledged_after_they_run():
    assert app.conf.task_acks_late is True
    assert app.conf.task_reject_on_worker_lost is True
    assert app.conf.worker_prefetch_multiplier == 1


def test_tasks_are_routed_to_their_queues():
    assert app.conf.task_routes[CONVERT_TASK] == {"queue": CONVERSION_QUEUE}
    assert app.conf.task_routes[METADATA_TASK] == {"queue": METADATA_QUEUE}
    assert convert_document.name == CONVERT_TASK
    assert extract_metadata.name == METADATA_TASK


def test_storage_outages_are_retried():
    assert StorageError in convert_document.autoretry_for
    assert StorageError in extract_metadata.autoretry_for


def test_a_crashing_job_does_not_stop_the_next_one(components, upload, monkeypatch):
    first, second = upload(), upload()
    real_upsert = components.statuses.upsert
    broken = {"left": 1}

    def upsert_failing_once(key, fields, only_if=None):
        if broken["left"]:
            broken["left"] -= 1
            raise RuntimeError("record store went away")
        return real_upsert(key, fields, only_if=only_if)

    monkeypatch.setattr(components.statuses, "upsert", upsert_failing_once)

    results = []
    while (message := components.conversion_queue.pop()) is not None:
        results.append(convert_document.apply(args=[message.to_dict()]))

    assert [r.failed() for r in results] == [True, False]
    assert components.statuses.get(first)["status"] == ConversionStatus.PENDING
    assert components.statuses.get(second)["status"] == ConversionStatus.COMPLETED


def test_metadata_task_reports_property_count(components, upload):
    upload()
    message = components.metadata_queue.pop()

    result = extract_metadata.apply(args=[message.to_dict()])

    assert result.successful()
    assert result.result > 0


@pytest.fixture
def eager(monkeypatch):
    monkeypatch.setattr(app.conf, "task_always_eager", True)
    yield
    use_components(None)


def test_eager_mode_runs_jobs_at_upload_time(eager, settings, converter, docx_bytes):
    built = build_components(settings, converter=converter)
    use_components(built)

    with TestClient(create_app(settings, built)) as client:
        resp = client.post("/upload", files={"file": ("report.docx", docx_bytes, DOCX_MIME)})
        file_id = resp.json()["fileId"]

        assert client.get(f"/status/{file_id}").json()["status"] == ConversionStatus.COMPLETED
        assert client.get(f"/metadata/{file_id}").json()["metadata"]["title"] == "Quarterly Report"
    assert converter.calls == 1
