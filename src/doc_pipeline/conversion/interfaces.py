from dataclasses import dataclass
from typing import Callable, Protocol


@dataclass(frozen=True)
class BlobObject:
    key: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class JobMessage:
    file_id: str
    blob_key: str
    target_format: str | None = None

    def to_dict(self) -> dict[str, object]:
        d: dict[str, object] = {"fileId": self.file_id, "fileKey": self.blob_key}
        if self.target_format:
            d["targetFormat"] = self.target_format
        return d

    @classmethod
    def from_dict(cls, d: dict[str, object]) -> "JobMessage":
        target = d.get("targetFormat")
        return cls(
            file_id=str(d["fileId"]),
            blob_key=str(d["fileKey"]),
            target_format=str(target) if target else None,
        )


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> None:
        ...

    def get(self, key: str) -> BlobObject:
        """Return the blob or raise BlobNotFoundError."""

    def delete(self, key: str) -> None:
        """Remove the blob; a missing key is not an error."""


class RecordStore(Protocol):
    def get(self, key: str) -> dict[str, object] | None:
        ...

    def create(self, key: str, fields: dict[str, object]) -> dict[str, object]:
        """Insert a new record; raise RecordExistsError if the key is taken."""

    def put(self, key: str, fields: dict[str, object]) -> dict[str, object]:
        """Create or replace the whole record (last write wins)."""

    def upsert(
        self,
        key: str,
        fields: dict[str, object],
        *,
        only_if: Callable[[dict[str, object] | None], bool] | None = None,
    ) -> dict[str, object]:
        """Create the record or merge `fields` into it, keyed by `key`.

        When `only_if` is given it is evaluated against the current record
        (None when absent) under the store's lock; a False result raises
        ConditionFailedError and nothing is written.
        """


class JobQueue(Protocol):
    """Hands a job to the named queue. Delivery is at least once."""

    name: str

    def enqueue(self, message: JobMessage) -> None:
        ...


class DocumentConverter(Protocol):
    def convert(self, data: bytes, filename: str, target_format: str) -> bytes:
        """Convert `data` to `target_format` synchronously.
        This is a blocking call; callers should offload to threads if needed.
        """


class PropertiesExtractor(Protocol):
    def extract(self, data: bytes) -> dict[str, object]:
        ...
