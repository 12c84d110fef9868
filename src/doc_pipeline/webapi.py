import logging
import os
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from . import __version__
from .components import Components, build_components
from .config import Settings
from .conversion.errors import NotFoundError, PipelineError, ValidationError
from .logger import configure_logging
from .schemas import MetadataResponse, StatusResponse, UploadResponse

logger = logging.getLogger(__name__)

upload_router = APIRouter(tags=["upload"])
status_router = APIRouter(tags=["status"])
metadata_router = APIRouter(tags=["metadata"])
download_router = APIRouter(tags=["download"])

# Prefixes used by the public gateway; each service is reachable both ways.
GATEWAY_PREFIXES = {
    "/file-upload": upload_router,
    "/file-conversion": status_router,
    "/file-metadata": metadata_router,
    "/file-download": download_router,
}


def get_components(request: Request) -> Components:
    components = request.app.state.components
    assert components is not None
    return components


def _error_status(exc: PipelineError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    code = _error_status(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=code, content={"detail": {"code": exc.code, "message": str(exc)}})


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # a "file" part that is not a file counts as an invalid upload
    if request.url.path.endswith("/upload"):
        return await _pipeline_error_handler(request, ValidationError("No valid file uploaded."))
    return await request_validation_exception_handler(request, exc)


def content_disposition(filename: str) -> str:
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "'").replace("?", "_")
    value = f'attachment; filename="{fallback}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{quote(filename)}"
    return value


@upload_router.post("/upload", response_model=UploadResponse)
async def upload(request: Request, file: UploadFile | None = File(None)) -> UploadResponse:
    """Accept one document as multipart/form-data in the part named "file".

    The document is stored and its metadata and conversion jobs queued;
    conversion is not awaited.
    """
    if file is None:
        raise ValidationError("No file uploaded.")
    components = get_components(request)
    result = await components.intake().accept_upload(file.filename, file.content_type, file.read)
    if len(result.enqueued) < 2:
        logger.warning("Upload %s queued only %s", result.id, ", ".join(result.enqueued) or "no jobs")
    return UploadResponse(message="File uploaded successfully", fileId=result.id)


@status_router.get("/status/{file_id}", response_model=StatusResponse)
def get_status(file_id: str, components: Components = Depends(get_components)) -> StatusResponse:
    record = components.lookup().status(file_id)
    return StatusResponse(
        fileName=record.file_name,
        originalPath=record.original_key,
        convertedPath=record.converted_key,
        status=record.status,
    )


@metadata_router.get("/metadata/{file_id}", response_model=MetadataResponse)
def get_metadata(file_id: str, components: Components = Depends(get_components)) -> MetadataResponse:
    record = components.lookup().metadata(file_id)
    return MetadataResponse(metadata=record.metadata)


@download_router.get("/download/{file_id}")
def download(file_id: str, components: Components = Depends(get_components)) -> Response:
    """Stream the converted PDF when there is one, else the original upload."""
    resolved = components.lookup().resolve_download(file_id)
    headers = {"Content-Disposition": content_disposition(resolved.filename)}
    return Response(content=resolved.data, media_type=resolved.content_type, headers=headers)


def create_app(settings: Settings | None = None, components: Components | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.components is None:
            app.state.components = build_components(settings)
        yield

    app = FastAPI(
        title="Document Pipeline",
        version=os.getenv("DOC_PIPELINE_VERSION", __version__),
        description=(
            "Accepts Word documents, converts them to PDF and extracts their "
            "properties asynchronously, and serves status, metadata and downloads."
        ),
        lifespan=lifespan,
    )
    app.state.components = components
    app.add_exception_handler(PipelineError, _pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    for prefix, router in GATEWAY_PREFIXES.items():
        app.include_router(router)
        app.include_router(router, prefix=prefix)
    return app


app = create_app()


def run() -> None:
    """Run the API server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("doc_pipeline.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()
