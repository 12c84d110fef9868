import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import PurePath
from typing import Awaitable, Callable

from .errors import BlobNotFoundError, NotFoundError, ResolutionError, ValidationError
from .interfaces import BlobStore, JobMessage, JobQueue, RecordStore
from .records import (
    ConversionStatus,
    ConversionStatusRecord,
    DocumentRecord,
    MetadataRecord,
    upload_key,
    utc_now,
)

logger = logging.getLogger(__name__)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TARGET_FORMAT = "pdf"
TARGET_MIME = "application/pdf"

CHUNK = 1024 * 1024


@dataclass(frozen=True)
class IntakeResult:
    document: DocumentRecord
    enqueued: tuple[str, ...]

    @property
    def id(self) -> str:
        return self.document.id


@dataclass(frozen=True)
class ResolvedDownload:
    filename: str
    content_type: str
    data: bytes
    converted: bool


class IntakeService:
    """Accepts uploads and fans them out to the metadata and conversion queues.

    The blob write, document record and pending status record are all
    persisted before either job is enqueued, so a worker can always resolve
    the id it dequeues. Enqueue failures are logged and never undo the
    upload or each other.
    """

    def __init__(
        self,
        blobs: BlobStore,
        documents: RecordStore,
        statuses: RecordStore,
        metadata_queue: JobQueue,
        conversion_queue: JobQueue,
        *,
        max_upload_mb: int,
        allowed_mime: frozenset[str] = frozenset({DOCX_MIME}),
        allowed_suffixes: frozenset[str] = frozenset({".docx"}),
    ) -> None:
        self._blobs = blobs
        self._documents = documents
        self._statuses = statuses
        self._metadata_queue = metadata_queue
        self._conversion_queue = conversion_queue
        self._max_bytes = max_upload_mb * 1024 * 1024
        self._max_upload_mb = max_upload_mb
        self._allowed_mime = allowed_mime
        self._allowed_suffixes = allowed_suffixes

    def validate(self, filename: str | None, content_type: str | None) -> str:
        """Return the sanitised filename or raise ValidationError."""
        name = PurePath((filename or "").replace("\\", "/")).name.strip()
        if not name:
            raise ValidationError("No file uploaded.")
        ct = (content_type or "").split(";", 1)[0].strip().lower()
        suffix = PurePath(name).suffix.lower()
        if suffix not in self._allowed_suffixes:
            raise ValidationError(f"{name} is not an accepted document type")
        # some clients label every upload as octet-stream; trust the extension then
        if ct and ct != "application/octet-stream" and ct not in self._allowed_mime:
            raise ValidationError(f"content-type {ct} not allowed")
        return name

    async def accept_upload(
        self,
        filename: str | None,
        content_type: str | None,
        reader: Callable[[int], Awaitable[bytes]],
    ) -> IntakeResult:
        name = self.validate(filename, content_type)
        buf = bytearray()
        while True:
            chunk = await reader(CHUNK)
            if not chunk:
                break
            buf.extend(chunk)
            if len(buf) > self._max_bytes:
                raise ValidationError(f"upload exceeds {self._max_upload_mb} MB")
        if not buf:
            raise ValidationError("uploaded file is empty")
        return await asyncio.to_thread(self.store_and_enqueue, name, DOCX_MIME, bytes(buf))

    def store_and_enqueue(self, filename: str, content_type: str, data: bytes) -> IntakeResult:
        file_id = uuid.uuid4().hex
        key = upload_key(filename)

        # Steps 1-3 raise straight to the caller; nothing has been enqueued yet.
        self._blobs.put(key, data, content_type)
        logger.info("Stored upload %s as %s (%d bytes)", file_id, key, len(data))
        document = DocumentRecord(
            id=file_id,
            filename=filename,
            content_type=content_type,
            size=len(data),
            blob_key=key,
            created_at=utc_now(),
        )
        self._documents.create(file_id, document.to_dict())
        pending = ConversionStatusRecord(
            file_id=file_id,
            file_name=filename,
            original_key=key,
            converted_key=None,
            status=ConversionStatus.PENDING,
            updated_at=document.created_at,
        )
        self._statuses.create(file_id, pending.to_dict())

        enqueued = self._enqueue(
            (self._metadata_queue, JobMessage(file_id=file_id, blob_key=key)),
            (self._conversion_queue, JobMessage(file_id=file_id, blob_key=key, target_format=TARGET_FORMAT)),
        )
        return IntakeResult(document=document, enqueued=enqueued)

    def requeue(self, file_id: str, *, metadata: bool = True, conversion: bool = True) -> tuple[str, ...]:
        """Enqueue the jobs for an already stored document again."""
        doc = self._documents.get(file_id)
        if doc is None:
            raise NotFoundError(f"document {file_id} not found")
        key = str(doc["blob_key"])
        jobs = []
        if metadata:
            jobs.append((self._metadata_queue, JobMessage(file_id=file_id, blob_key=key)))
        if conversion:
            jobs.append((self._conversion_queue, JobMessage(file_id=file_id, blob_key=key, target_format=TARGET_FORMAT)))
        return self._enqueue(*jobs)

    @staticmethod
    def _enqueue(*jobs: tuple[JobQueue, JobMessage]) -> tuple[str, ...]:
        done = []
        for queue, message in jobs:
            try:
                queue.enqueue(message)
            except Exception:
                logger.exception("Failed to enqueue %s job for %s", queue.name, message.file_id)
                continue
            done.append(queue.name)
        return tuple(done)


class DocumentLookup:
    """Read side shared by the status, metadata and download endpoints."""

    def __init__(self, blobs: BlobStore, statuses: RecordStore, metadata: RecordStore) -> None:
        self._blobs = blobs
        self._statuses = statuses
        self._metadata = metadata

    def status(self, file_id: str) -> ConversionStatusRecord:
        data = self._statuses.get(file_id)
        if data is None:
            raise NotFoundError("File not found")
        return ConversionStatusRecord.from_dict(data)

    def metadata(self, file_id: str) -> MetadataRecord:
        data = self._metadata.get(file_id)
        if data is None:
            raise NotFoundError("Metadata not found")
        return MetadataRecord(
            file_id=str(data.get("file_id") or file_id),
            metadata=dict(data.get("metadata") or {}),  # type: ignore[arg-type]
            extracted_at=str(data.get("extracted_at") or ""),
        )

    def resolve_download(self, file_id: str) -> ResolvedDownload:
        record = self.status(file_id)
        candidates = [k for k in (record.converted_key, record.original_key) if k]
        if not candidates:
            raise ValidationError("No valid file path found")
        for key in candidates:
            try:
                blob = self._blobs.get(key)
            except BlobNotFoundError:
                logger.warning("Blob %s referenced by %s is missing", key, file_id)
                continue
            converted = key == record.converted_key
            return ResolvedDownload(
                filename=download_filename(record.file_name, key, converted),
                content_type=blob.content_type,
                data=blob.data,
                converted=converted,
            )
        raise ResolutionError(f"no stored content for {file_id}")


def download_filename(file_name: str, key: str, converted: bool) -> str:
    name = file_name or PurePath(key).name
    if converted:
        return f"{PurePath(name).stem or 'document'}.{TARGET_FORMAT}"
    return name
