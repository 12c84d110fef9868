class PipelineError(Exception):
    """Base class for errors raised by the conversion pipeline."""

    code = "pipeline_error"


class ValidationError(PipelineError):
    code = "invalid_upload"


class StorageError(PipelineError):
    code = "storage_error"


class BlobNotFoundError(StorageError):
    code = "blob_not_found"


class RecordExistsError(StorageError):
    code = "record_exists"


class ConditionFailedError(StorageError):
    code = "condition_failed"


class EngineError(PipelineError):
    code = "engine_error"


class ConversionEngineError(EngineError):
    code = "conversion_failed"


class ExtractionEngineError(EngineError):
    code = "extraction_failed"


class NotFoundError(PipelineError):
    code = "not_found"


class ResolutionError(PipelineError):
    """The status record exists but none of its blob keys resolve."""

    code = "resolution_error"
