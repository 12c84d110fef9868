"""
Domain layer for the document pipeline.
Provides gateway protocols, their local and S3 adapters, the intake and
lookup services, and the queue workers, so the HTTP layer and the worker
processes share the same core logic.
"""

from .interfaces import BlobStore, DocumentConverter, JobMessage, JobQueue, PropertiesExtractor, RecordStore
from .records import ConversionStatus, ConversionStatusRecord, DocumentRecord, MetadataRecord
from .service import DocumentLookup, IntakeService
from .workers import ConversionWorker, MetadataWorker
