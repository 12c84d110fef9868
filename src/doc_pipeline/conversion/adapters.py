import io
import json
import logging
import os
import re
import subprocess
import tempfile
import threading
import uuid
import zipfile
from pathlib import Path
from typing import Callable
from xml.etree import ElementTree

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from celery import Task
from kombu.exceptions import OperationalError

from .errors import (
    BlobNotFoundError,
    ConditionFailedError,
    ConversionEngineError,
    ExtractionEngineError,
    RecordExistsError,
    StorageError,
)
from .interfaces import (
    BlobObject,
    BlobStore,
    DocumentConverter,
    JobMessage,
    JobQueue,
    PropertiesExtractor,
    RecordStore,
)

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    with tmp.open("wb") as f:
        f.write(data)
    os.replace(tmp, path)


class LocalBlobStore(BlobStore):
    def __init__(self, data_dir: str) -> None:
        self._base = (Path(data_dir) / "blobs").resolve()

    def _path(self, key: str) -> Path:
        p = (self._base / key).resolve()
        if self._base not in p.parents:
            raise StorageError(f"invalid blob key: {key!r}")
        return p

    @staticmethod
    def _meta_path(p: Path) -> Path:
        return p.with_name(p.name + ".meta.json")

    def put(self, key: str, data: bytes, content_type: str) -> None:
        p = self._path(key)
        try:
            _atomic_write(p, data)
            meta = {"content_type": content_type, "size": len(data)}
            _atomic_write(self._meta_path(p), json.dumps(meta).encode("utf-8"))
        except OSError as e:
            raise StorageError(f"failed to write blob {key}: {e}") from e

    def get(self, key: str) -> BlobObject:
        p = self._path(key)
        if not p.is_file():
            raise BlobNotFoundError(f"blob not found: {key}")
        try:
            data = p.read_bytes()
            content_type = "application/octet-stream"
            meta_path = self._meta_path(p)
            if meta_path.exists():
                with meta_path.open("r", encoding="utf-8") as f:
                    content_type = json.load(f).get("content_type") or content_type
        except OSError as e:
            raise StorageError(f"failed to read blob {key}: {e}") from e
        return BlobObject(key=key, data=data, content_type=content_type)

    def delete(self, key: str) -> None:
        p = self._path(key)
        try:
            p.unlink(missing_ok=True)
            self._meta_path(p).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"failed to delete blob {key}: {e}") from e


def make_s3_client(region: str, endpoint_url: str | None = None):
    kwargs: dict[str, str] = {"region_name": region}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.client("s3", **kwargs)


class S3BlobStore(BlobStore):
    _MISSING = {"NoSuchKey", "404", "NotFound"}

    def __init__(self, bucket: str, client) -> None:
        self._bucket = bucket
        self._s3 = client

    def ensure_bucket(self) -> None:
        try:
            self._s3.head_bucket(Bucket=self._bucket)
        except ClientError:
            logger.info("Creating S3 bucket: %s", self._bucket)
            region = self._s3.meta.region_name
            if region and region != "us-east-1":
                self._s3.create_bucket(
                    Bucket=self._bucket, CreateBucketConfiguration={"LocationConstraint": region}
                )
            else:
                self._s3.create_bucket(Bucket=self._bucket)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._s3.put_object(Bucket=self._bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to upload {key} to S3: {e}") from e

    def get(self, key: str) -> BlobObject:
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=key)
            data = resp["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in self._MISSING:
                raise BlobNotFoundError(f"blob not found: {key}") from e
            raise StorageError(f"failed to fetch {key} from S3: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"failed to fetch {key} from S3: {e}") from e
        return BlobObject(key=key, data=data, content_type=resp.get("ContentType") or "application/octet-stream")

    def delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to delete {key} from S3: {e}") from e


# Shared per collection directory so every store instance in this process
# serialises its read-modify-write cycles on the same lock.
_COLLECTION_LOCKS: dict[str, threading.Lock] = {}
_COLLECTION_LOCKS_GUARD = threading.Lock()


def _collection_lock(path: Path) -> threading.Lock:
    with _COLLECTION_LOCKS_GUARD:
        return _COLLECTION_LOCKS.setdefault(str(path), threading.Lock())


class JsonRecordStore(RecordStore):
    """One JSON document per key under DATA_DIR/records/<collection>/."""

    def __init__(self, data_dir: str, collection: str) -> None:
        self.collection = collection
        self._dir = (Path(data_dir) / "records" / collection).resolve()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = _collection_lock(self._dir)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.fullmatch(key):
            raise StorageError(f"invalid record key: {key!r}")
        return self._dir / f"{key}.json"

    def _read(self, key: str) -> dict[str, object] | None:
        p = self._path(key)
        try:
            with p.open("r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StorageError(f"failed to read {self.collection}/{key}: {e}") from e

    def _write(self, key: str, record: dict[str, object]) -> None:
        try:
            _atomic_write(self._path(key), json.dumps(record, ensure_ascii=False, indent=2).encode("utf-8"))
        except OSError as e:
            raise StorageError(f"failed to write {self.collection}/{key}: {e}") from e

    def get(self, key: str) -> dict[str, object] | None:
        if not _SAFE_KEY.fullmatch(key):
            return None
        return self._read(key)

    def create(self, key: str, fields: dict[str, object]) -> dict[str, object]:
        with self._lock:
            if self._read(key) is not None:
                raise RecordExistsError(f"{self.collection}/{key} already exists")
            record = dict(fields)
            self._write(key, record)
            return record

    def put(self, key: str, fields: dict[str, object]) -> dict[str, object]:
        with self._lock:
            record = dict(fields)
            self._write(key, record)
            return record

    def upsert(
        self,
        key: str,
        fields: dict[str, object],
        *,
        only_if: Callable[[dict[str, object] | None], bool] | None = None,
    ) -> dict[str, object]:
        with self._lock:
            current = self._read(key)
            if only_if is not None and not only_if(current):
                raise ConditionFailedError(f"condition failed for {self.collection}/{key}")
            record = dict(current or {})
            record.update(fields)
            self._write(key, record)
            return record


class CeleryJobQueue(JobQueue):
    """Publishes jobs to a Celery task routed to the queue `name`.

    The worker side runs with late acknowledgement, so a job whose worker
    dies before finishing is delivered again.
    """

    def __init__(self, task: Task, name: str) -> None:
        self._task = task
        self.name = name

    def enqueue(self, message: JobMessage) -> None:
        try:
            self._task.apply_async(args=[message.to_dict()], queue=self.name)
        except OperationalError as e:
            raise StorageError(f"failed to enqueue on {self.name}: {e}") from e
        logger.info("Queued %s for fileId: %s", self._task.name, message.file_id)


class LibreOfficeConverter(DocumentConverter):
    def __init__(self, binary: str = "soffice", timeout_sec: int = 120) -> None:
        self._binary = binary
        self._timeout = timeout_sec

    def convert(self, data: bytes, filename: str, target_format: str) -> bytes:
        suffix = Path(filename).suffix or ".docx"
        with tempfile.TemporaryDirectory(prefix="doc-pipeline-") as tmp:
            workdir = Path(tmp)
            src = workdir / f"input{suffix}"
            src.write_bytes(data)
            cmd = [
                self._binary,
                "--headless",
                "--norestore",
                f"-env:UserInstallation={(workdir / 'profile').as_uri()}",
                "--convert-to",
                target_format,
                "--outdir",
                str(workdir),
                str(src),
            ]
            try:
                proc = subprocess.run(cmd, capture_output=True, timeout=self._timeout, check=False)
            except FileNotFoundError as e:
                raise ConversionEngineError(f"converter binary not found: {self._binary}") from e
            except subprocess.TimeoutExpired as e:
                raise ConversionEngineError(f"conversion timed out after {self._timeout}s") from e
            out = workdir / f"input.{target_format}"
            if proc.returncode != 0 or not out.is_file():
                stderr = proc.stderr.decode("utf-8", "replace").strip()
                raise ConversionEngineError(f"{self._binary} exited with {proc.returncode}: {stderr[-500:]}")
            return out.read_bytes()


class OfficePropertiesExtractor(PropertiesExtractor):
    """Reads the core and extended property parts of an OOXML package."""

    PARTS = ("docProps/core.xml", "docProps/app.xml")

    def extract(self, data: bytes) -> dict[str, object]:
        props: dict[str, object] = {}
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                names = set(zf.namelist())
                parts = [p for p in self.PARTS if p in names]
                if not parts:
                    raise ExtractionEngineError("document has no property parts")
                for part in parts:
                    props.update(self._parse(zf.read(part)))
        except zipfile.BadZipFile as e:
            raise ExtractionEngineError("not an OOXML package") from e
        except ElementTree.ParseError as e:
            raise ExtractionEngineError(f"malformed property part: {e}") from e
        return props

    @staticmethod
    def _parse(xml_bytes: bytes) -> dict[str, object]:
        out: dict[str, object] = {}
        root = ElementTree.fromstring(xml_bytes)
        for child in root:
            if len(child):
                continue  # vectors such as HeadingPairs
            text = (child.text or "").strip()
            if not text:
                continue
            tag = child.tag.rsplit("}", 1)[-1]
            key = tag[:1].lower() + tag[1:]
            if text.isdigit():
                out[key] = int(text)
            elif text in ("true", "false"):
                out[key] = text == "true"
            else:
                out[key] = text
        return out
