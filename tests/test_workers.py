import logging
import threading
from pathlib import Path

import pytest

from doc_pipeline.conversion.adapters import OfficePropertiesExtractor
from doc_pipeline.conversion.interfaces import JobMessage
from doc_pipeline.conversion.records import ConversionStatus, filename_from_key
from doc_pipeline.conversion.service import DOCX_MIME
from doc_pipeline.conversion.workers import ConversionWorker, MetadataWorker


@pytest.fixture
def stored(components, docx_bytes):
    """A document as intake leaves it: blob plus pending status record."""
    key = "uploads/1700000000000-abcd1234_report.docx"
    components.blobs.put(key, docx_bytes, DOCX_MIME)
    components.statuses.create(
        "doc1",
        {
            "file_id": "doc1",
            "file_name": "report.docx",
            "original_key": key,
            "converted_key": None,
            "status": ConversionStatus.PENDING,
            "updated_at": "2024-01-01T00:00:00Z",
        },
    )
    return JobMessage("doc1", key, "pdf")


@pytest.fixture
def conversion(components, converter):
    return ConversionWorker(components.blobs, components.statuses, converter)


def status_files(settings):
    return sorted(p.name for p in (Path(settings.data_dir) / "records" / "conversions").glob("*.json"))


def converted_files(settings):
    converted = Path(settings.data_dir) / "blobs" / "converted"
    return sorted(p.name for p in converted.iterdir()) if converted.exists() else []


def test_filename_from_key_strips_the_upload_token():
    assert filename_from_key("uploads/1700000000000-abcd1234_my_report.docx") == "my_report.docx"
    assert filename_from_key("uploads/plain.docx") == "plain.docx"


def test_conversion_success_marks_completed(components, conversion, stored):
    record = conversion.process(stored)

    assert record.status == ConversionStatus.COMPLETED
    assert record.original_key == stored.blob_key
    assert record.file_name == "report.docx"
    assert record.converted_key.startswith("converted/")
    assert record.converted_key.endswith("_report.pdf")
    blob = components.blobs.get(record.converted_key)
    assert blob.data.startswith(b"%PDF")
    assert blob.content_type == "application/pdf"
    assert components.statuses.get("doc1")["status"] == ConversionStatus.COMPLETED


def test_conversion_engine_failure_marks_failed(components, conversion, converter, stored):
    converter.fail = True

    record = conversion.process(stored)

    assert record.status == ConversionStatus.FAILED
    assert record.converted_key is None
    assert components.statuses.get("doc1")["original_key"] == stored.blob_key


def test_missing_blob_marks_failed(components, conversion):
    record = conversion.process(JobMessage("ghost", "uploads/1-a_missing.docx", "pdf"))
    assert record.status == ConversionStatus.FAILED
    # no pending record existed; the failure upsert creates exactly one
    assert components.statuses.get("ghost")["file_name"] == "missing.docx"


def test_replayed_job_leaves_one_terminal_record(settings, components, conversion, converter, stored):
    first = conversion.process(stored)
    second = conversion.process(stored)

    assert converter.calls == 2
    assert status_files(settings) == ["doc1.json"]
    assert first.converted_key != second.converted_key
    final = components.statuses.get("doc1")
    assert final["status"] == ConversionStatus.COMPLETED
    assert final["converted_key"] == second.converted_key


def test_concurrent_redeliveries_are_idempotent(settings, components, conversion, stored):
    barrier = threading.Barrier(4)
    results = []

    def deliver():
        barrier.wait()
        results.append(conversion.process(stored))

    threads = [threading.Thread(target=deliver) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert status_files(settings) == ["doc1.json"]
    final = components.statuses.get("doc1")
    assert final["status"] == ConversionStatus.COMPLETED
    assert final["converted_key"] in {r.converted_key for r in results}
    assert components.blobs.get(final["converted_key"]).data.startswith(b"%PDF")


def test_late_failure_never_overwrites_completed(components, conversion, converter, stored):
    done = conversion.process(stored)
    converter.fail = True

    record = conversion.process(stored)

    assert record.status == ConversionStatus.COMPLETED
    assert components.statuses.get("doc1")["converted_key"] == done.converted_key


def test_failed_status_does_not_revert(settings, components, conversion, converter, stored):
    converter.fail = True
    conversion.process(stored)
    converter.fail = False

    record = conversion.process(stored)

    assert record.status == ConversionStatus.FAILED
    assert components.statuses.get("doc1")["converted_key"] is None
    # the redelivery is skipped without running the engine again
    assert converter.calls == 1
    assert converted_files(settings) == []


class FailsStatusMidway:
    """Converts, but the status turns failed while the engine is running."""

    def __init__(self, statuses) -> None:
        self._statuses = statuses

    def convert(self, data: bytes, filename: str, target_format: str) -> bytes:
        self._statuses.upsert("doc1", {"status": ConversionStatus.FAILED})
        return b"%PDF-1.7\n"


def test_refused_completion_removes_its_output(settings, components, stored, caplog):
    caplog.set_level(logging.INFO)
    worker = ConversionWorker(components.blobs, components.statuses, FailsStatusMidway(components.statuses))

    record = worker.process(stored)

    assert record.status == ConversionStatus.FAILED
    assert record.converted_key is None
    assert components.statuses.get("doc1")["converted_key"] is None
    assert converted_files(settings) == []
    assert "already failed; ignoring completed" in caplog.text
