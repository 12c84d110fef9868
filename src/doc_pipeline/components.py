import logging
from dataclasses import dataclass

from .celery_app import CONVERSION_QUEUE, METADATA_QUEUE
from .config import Settings
from .conversion.adapters import (
    CeleryJobQueue,
    JsonRecordStore,
    LibreOfficeConverter,
    LocalBlobStore,
    OfficePropertiesExtractor,
    S3BlobStore,
    make_s3_client,
)
from .conversion.interfaces import BlobStore, DocumentConverter, JobQueue, PropertiesExtractor, RecordStore
from .conversion.records import CONVERSIONS, DOCUMENTS, METADATA
from .conversion.service import DocumentLookup, IntakeService
from .conversion.workers import ConversionWorker, MetadataWorker
from .tasks import convert_document, extract_metadata

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Process-wide clients, built once at startup and injected everywhere."""

    settings: Settings
    blobs: BlobStore
    documents: RecordStore
    statuses: RecordStore
    metadata: RecordStore
    metadata_queue: JobQueue
    conversion_queue: JobQueue
    converter: DocumentConverter
    extractor: PropertiesExtractor

    def intake(self) -> IntakeService:
        return IntakeService(
            self.blobs,
            self.documents,
            self.statuses,
            self.metadata_queue,
            self.conversion_queue,
            max_upload_mb=self.settings.max_upload_mb,
            allowed_mime=self.settings.allowed_mime,
        )

    def lookup(self) -> DocumentLookup:
        return DocumentLookup(self.blobs, self.statuses, self.metadata)

    def conversion_worker(self) -> ConversionWorker:
        return ConversionWorker(self.blobs, self.statuses, self.converter)

    def metadata_worker(self) -> MetadataWorker:
        return MetadataWorker(self.blobs, self.metadata, self.extractor)


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_backend == "s3":
        store = S3BlobStore(settings.s3_bucket, make_s3_client(settings.aws_region, settings.localstack_endpoint))
        store.ensure_bucket()
        return store
    if settings.blob_backend != "local":
        raise ValueError(f"unknown BLOB_BACKEND {settings.blob_backend!r}")
    return LocalBlobStore(settings.data_dir)


def build_queues() -> tuple[JobQueue, JobQueue]:
    """Celery-backed (metadata, conversion) queues."""
    return CeleryJobQueue(extract_metadata, METADATA_QUEUE), CeleryJobQueue(convert_document, CONVERSION_QUEUE)


def build_components(
    settings: Settings,
    *,
    converter: DocumentConverter | None = None,
    extractor: PropertiesExtractor | None = None,
    blobs: BlobStore | None = None,
    queues: tuple[JobQueue, JobQueue] | None = None,
) -> Components:
    logger.info("Initialising components (data_dir=%s, blobs=%s)", settings.data_dir, settings.blob_backend)
    metadata_queue, conversion_queue = queues or build_queues()
    return Components(
        settings=settings,
        blobs=blobs or build_blob_store(settings),
        documents=JsonRecordStore(settings.data_dir, DOCUMENTS),
        statuses=JsonRecordStore(settings.data_dir, CONVERSIONS),
        metadata=JsonRecordStore(settings.data_dir, METADATA),
        metadata_queue=metadata_queue,
        conversion_queue=conversion_queue,
        converter=converter or LibreOfficeConverter(settings.soffice_bin, settings.convert_timeout_sec),
        extractor=extractor or OfficePropertiesExtractor(),
    )
