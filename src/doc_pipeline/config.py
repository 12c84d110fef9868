import os
from dataclasses import dataclass
from pathlib import Path

from .conversion.service import DOCX_MIME


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    data_dir: str = "./data"
    max_upload_mb: int = 10
    allowed_mime: frozenset[str] = frozenset({DOCX_MIME})
    blob_backend: str = "local"
    s3_bucket: str = "doc-pipeline-bucket"
    aws_region: str = "us-east-1"
    localstack_endpoint: str | None = None
    workers: int = 2
    convert_timeout_sec: int = 120
    soffice_bin: str = "soffice"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080
    reload: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=str(Path(os.getenv("DATA_DIR", "./data")).resolve()),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "10")),
            allowed_mime=frozenset(m.strip() for m in os.getenv("ALLOWED_MIME", DOCX_MIME).split(",") if m.strip()),
            blob_backend=os.getenv("BLOB_BACKEND", "local").strip().lower(),
            s3_bucket=os.getenv("S3_BUCKET", "doc-pipeline-bucket"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            localstack_endpoint=os.getenv("LOCALSTACK_ENDPOINT") or None,
            workers=_env_int("WORKERS", 2),
            convert_timeout_sec=int(os.getenv("CONVERT_TIMEOUT_SEC", "120")),
            soffice_bin=os.getenv("SOFFICE_BIN", "soffice"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8080")),
            reload=_env_flag("RELOAD", False),
        )
