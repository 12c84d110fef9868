import secrets
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath

DOCUMENTS = "documents"
CONVERSIONS = "conversions"
METADATA = "metadata"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ConversionStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


@dataclass(frozen=True)
class DocumentRecord:
    id: str
    filename: str
    content_type: str
    size: int
    blob_key: str
    created_at: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ConversionStatusRecord:
    file_id: str
    file_name: str
    original_key: str | None
    converted_key: str | None
    status: str
    updated_at: str

    @classmethod
    def from_dict(cls, d: dict[str, object]) -> "ConversionStatusRecord":
        original = d.get("original_key")
        converted = d.get("converted_key")
        return cls(
            file_id=str(d["file_id"]),
            file_name=str(d.get("file_name") or ""),
            original_key=str(original) if original else None,
            converted_key=str(converted) if converted else None,
            status=str(d.get("status") or ConversionStatus.PENDING),
            updated_at=str(d.get("updated_at") or ""),
        )

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class MetadataRecord:
    file_id: str
    metadata: dict[str, object]
    extracted_at: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def new_blob_token() -> str:
    """Millisecond timestamp plus a random suffix; orders by time, never repeats."""
    return f"{time.time_ns() // 1_000_000}-{secrets.token_hex(4)}"


def upload_key(filename: str) -> str:
    return f"uploads/{new_blob_token()}_{filename}"


def converted_key(original_key: str, target_format: str) -> str:
    stem = PurePosixPath(filename_from_key(original_key)).stem or "document"
    return f"converted/{new_blob_token()}_{stem}.{target_format}"


def filename_from_key(key: str) -> str:
    base = PurePosixPath(key).name
    prefix, sep, rest = base.partition("_")
    if sep and rest and prefix.replace("-", "").isalnum():
        return rest
    return base
