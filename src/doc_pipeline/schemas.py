from typing import Any

from pydantic import BaseModel


class UploadResponse(BaseModel):
    message: str
    fileId: str


class StatusResponse(BaseModel):
    fileName: str
    originalPath: str | None = None
    convertedPath: str | None = None
    status: str


class MetadataResponse(BaseModel):
    metadata: dict[str, Any]
