"""HTTP client and bounded polling for the document pipeline.

Conversion status and metadata are polled independently at a fixed
interval with a fixed attempt limit. Every poll ends in an explicit
outcome, so "gave up while still pending" is never confused with
"still loading", and a download is offered as soon as either axis ends.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import unquote

import requests

from .conversion.service import DOCX_MIME

logger = logging.getLogger(__name__)


class StatusOutcome:
    DOWNLOAD_ENABLED = "download_enabled"
    FAILED = "failed"
    GAVE_UP = "gave_up"
    CANCELLED = "cancelled"


class MetadataOutcome:
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    CANCELLED = "cancelled"


class PipelineClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class StatusPoll:
    outcome: str
    attempts: int
    last: dict[str, object] | None = None

    @property
    def download_enabled(self) -> bool:
        return self.outcome == StatusOutcome.DOWNLOAD_ENABLED


@dataclass(frozen=True)
class MetadataPoll:
    outcome: str
    attempts: int
    metadata: dict[str, object] | None = None


@dataclass(frozen=True)
class Tracked:
    status: StatusPoll
    metadata: MetadataPoll

    @property
    def download_offered(self) -> bool:
        return download_offered(self.status, self.metadata)


@dataclass(frozen=True)
class Download:
    filename: str
    content_type: str
    data: bytes


def download_offered(status: StatusPoll | None, metadata: MetadataPoll | None) -> bool:
    """True once either axis reached a terminal or give-up state."""
    ended = [
        status is not None and status.outcome != StatusOutcome.CANCELLED,
        metadata is not None and metadata.outcome != MetadataOutcome.CANCELLED,
    ]
    return any(ended)


_FILENAME_STAR = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)
_FILENAME = re.compile(r'filename="([^"]*)"', re.IGNORECASE)


def _disposition_filename(header: str) -> str | None:
    if m := _FILENAME_STAR.search(header):
        return unquote(m.group(1))
    if m := _FILENAME.search(header):
        return m.group(1)
    return None


class PipelineClient:
    def __init__(
        self,
        api_base: str = "http://localhost:8080",
        *,
        session=None,
        timeout: float = 30.0,
        interval: float = 2.0,
        max_status_attempts: int = 30,
        max_metadata_attempts: int = 10,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._http = session or requests.Session()
        self._timeout = timeout
        self.interval = interval
        self.max_status_attempts = max_status_attempts
        self.max_metadata_attempts = max_metadata_attempts

    def _url(self, path: str) -> str:
        return f"{self.api_base}{path}"

    def upload(self, filename: str, data: bytes, content_type: str = DOCX_MIME) -> str:
        files = {"file": (Path(filename).name, data, content_type)}
        resp = self._http.post(self._url("/upload"), files=files, timeout=self._timeout)
        if resp.status_code != 200:
            raise PipelineClientError(f"Upload failed: {resp.status_code} {resp.text}", resp.status_code)
        return str(resp.json()["fileId"])

    def status(self, file_id: str) -> dict[str, object] | None:
        """Current status record, or None while the service does not know the id."""
        resp = self._http.get(self._url(f"/status/{file_id}"), timeout=self._timeout)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise PipelineClientError(f"Status error: {resp.status_code} {resp.text}", resp.status_code)
        return resp.json()

    def metadata(self, file_id: str) -> dict[str, object] | None:
        resp = self._http.get(self._url(f"/metadata/{file_id}"), timeout=self._timeout)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise PipelineClientError(f"Metadata error: {resp.status_code} {resp.text}", resp.status_code)
        body = resp.json()
        return body.get("metadata")

    def download(self, file_id: str) -> Download:
        resp = self._http.get(self._url(f"/download/{file_id}"), timeout=self._timeout)
        if resp.status_code != 200:
            raise PipelineClientError(f"Download error: {resp.status_code} {resp.text}", resp.status_code)
        filename = _disposition_filename(resp.headers.get("content-disposition", "")) or f"file_{file_id}"
        content_type = resp.headers.get("content-type", "application/octet-stream")
        return Download(filename=filename, content_type=content_type, data=resp.content)

    def poll_status(
        self,
        file_id: str,
        *,
        cancel: threading.Event | None = None,
        on_update: Callable[[dict[str, object]], None] | None = None,
    ) -> StatusPoll:
        cancel = cancel or threading.Event()
        last: dict[str, object] | None = None
        attempts = 0
        while attempts < self.max_status_attempts:
            if cancel.is_set():
                return StatusPoll(StatusOutcome.CANCELLED, attempts, last)
            attempts += 1
            try:
                record = self.status(file_id)
            except (requests.RequestException, PipelineClientError) as e:
                logger.warning("Status check %d for %s failed: %s", attempts, file_id, e)
                record = None
            if record is not None:
                last = record
                if on_update is not None:
                    on_update(record)
                if record.get("status") == "completed":
                    return StatusPoll(StatusOutcome.DOWNLOAD_ENABLED, attempts, last)
                if record.get("status") == "failed":
                    return StatusPoll(StatusOutcome.FAILED, attempts, last)
            if attempts < self.max_status_attempts and cancel.wait(self.interval):
                return StatusPoll(StatusOutcome.CANCELLED, attempts, last)
        logger.info("Stopped polling status for %s after %d attempts", file_id, attempts)
        return StatusPoll(StatusOutcome.GAVE_UP, attempts, last)

    def poll_metadata(self, file_id: str, *, cancel: threading.Event | None = None) -> MetadataPoll:
        cancel = cancel or threading.Event()
        attempts = 0
        while attempts < self.max_metadata_attempts:
            if cancel.is_set():
                return MetadataPoll(MetadataOutcome.CANCELLED, attempts)
            attempts += 1
            try:
                metadata = self.metadata(file_id)
            except (requests.RequestException, PipelineClientError) as e:
                logger.warning("Metadata check %d for %s failed: %s", attempts, file_id, e)
                metadata = None
            if metadata is not None:
                return MetadataPoll(MetadataOutcome.AVAILABLE, attempts, metadata)
            if attempts < self.max_metadata_attempts and cancel.wait(self.interval):
                return MetadataPoll(MetadataOutcome.CANCELLED, attempts)
        logger.info("No metadata available for %s after %d attempts", file_id, attempts)
        return MetadataPoll(MetadataOutcome.UNAVAILABLE, attempts)

    def track(self, file_id: str, *, cancel: threading.Event | None = None) -> Tracked:
        """Poll status and metadata concurrently until both have ended."""
        cancel = cancel or threading.Event()
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="poll") as pool:
            status = pool.submit(self.poll_status, file_id, cancel=cancel)
            metadata = pool.submit(self.poll_metadata, file_id, cancel=cancel)
            return Tracked(status=status.result(), metadata=metadata.result())
