import logging
from typing import Callable

from .errors import ConditionFailedError
from .interfaces import BlobStore, DocumentConverter, JobMessage, PropertiesExtractor, RecordStore
from .records import (
    ConversionStatus,
    ConversionStatusRecord,
    MetadataRecord,
    converted_key,
    filename_from_key,
    utc_now,
)
from .service import TARGET_FORMAT, TARGET_MIME

logger = logging.getLogger(__name__)


def _may_complete(current: dict[str, object] | None) -> bool:
    # a replayed success may refresh a completed record, never a failed one
    return current is None or current.get("status") != ConversionStatus.FAILED


def _may_fail(current: dict[str, object] | None) -> bool:
    return current is None or current.get("status") == ConversionStatus.PENDING


class ConversionWorker:
    """Converts one document per job and records the terminal status.

    Every status write is an upsert keyed by the document id, so replaying
    a job after a lost acknowledgement leaves a single record behind.
    """

    def __init__(self, blobs: BlobStore, statuses: RecordStore, converter: DocumentConverter) -> None:
        self._blobs = blobs
        self._statuses = statuses
        self._converter = converter

    def process(self, message: JobMessage) -> ConversionStatusRecord:
        fmt = message.target_format or TARGET_FORMAT
        filename = filename_from_key(message.blob_key)
        current = self._statuses.get(message.file_id)
        if not _may_complete(current):
            # a failed status is final, so converting again could never land
            logger.info("Skipping conversion for fileId: %s; status is already failed", message.file_id)
            return ConversionStatusRecord.from_dict({"file_id": message.file_id, **current})
        logger.info("Processing file conversion for fileId: %s", message.file_id)
        out_key = None
        try:
            blob = self._blobs.get(message.blob_key)
            output = self._converter.convert(blob.data, filename, fmt)
            out_key = converted_key(message.blob_key, fmt)
            self._blobs.put(out_key, output, TARGET_MIME if fmt == TARGET_FORMAT else "application/octet-stream")
        except Exception as e:
            logger.error("File conversion failed for fileId: %s: %s", message.file_id, e, exc_info=True)
            if out_key is not None:
                self._discard(out_key)
            return self._record(message, filename, None, ConversionStatus.FAILED, _may_fail)
        logger.info("Converted file stored as %s for fileId: %s", out_key, message.file_id)
        record = self._record(message, filename, out_key, ConversionStatus.COMPLETED, _may_complete)
        if record.converted_key != out_key:
            self._discard(out_key)
        return record

    def _discard(self, key: str) -> None:
        try:
            self._blobs.delete(key)
        except Exception:
            logger.exception("Could not remove unreferenced output %s", key)

    def _record(
        self,
        message: JobMessage,
        filename: str,
        out_key: str | None,
        status: str,
        only_if: Callable[[dict[str, object] | None], bool],
    ) -> ConversionStatusRecord:
        fields: dict[str, object] = {
            "file_id": message.file_id,
            "file_name": filename,
            "original_key": message.blob_key,
            "converted_key": out_key,
            "status": status,
            "updated_at": utc_now(),
        }
        try:
            stored = self._statuses.upsert(message.file_id, fields, only_if=only_if)
        except ConditionFailedError:
            current = self._statuses.get(message.file_id) or {}
            logger.info(
                "Status for %s already %s; ignoring %s from a duplicate delivery",
                message.file_id,
                current.get("status"),
                status,
            )
            return ConversionStatusRecord.from_dict({"file_id": message.file_id, **current})
        return ConversionStatusRecord.from_dict(stored)


class MetadataWorker:
    def __init__(self, blobs: BlobStore, metadata: RecordStore, extractor: PropertiesExtractor) -> None:
        self._blobs = blobs
        self._metadata = metadata
        self._extractor = extractor

    def process(self, message: JobMessage) -> MetadataRecord | None:
        """Extract and store properties; failures are logged and dropped."""
        try:
            blob = self._blobs.get(message.blob_key)
            props = self._extractor.extract(blob.data)
        except Exception as e:
            logger.error("Error processing metadata for fileId: %s: %s", message.file_id, e, exc_info=True)
            return None
        record = MetadataRecord(file_id=message.file_id, metadata=props, extracted_at=utc_now())
        # duplicate deliveries overwrite each other; last write wins
        self._metadata.put(message.file_id, record.to_dict())
        logger.info("Stored %d properties for fileId: %s", len(props), message.file_id)
        return record
