"""Shared fixtures: isolated data directories, fake engines and sample .docx payloads."""

import io
import threading
import zipfile
from collections import deque

import pytest
from fastapi.testclient import TestClient

from doc_pipeline.components import build_components
from doc_pipeline.config import Settings
from doc_pipeline.conversion.errors import ConversionEngineError
from doc_pipeline.conversion.service import DOCX_MIME
from doc_pipeline.tasks import convert_document, extract_metadata, use_components
from doc_pipeline.webapi import create_app

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="xml" ContentType="application/xml"/>'
    "</Types>"
)

CORE_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<cp:coreProperties xmlns:cp="http://schemas.openxmlformats.org/package/2006/metadata/core-properties" '
    'xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:dcterms="http://purl.org/dc/terms/" '
    'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">'
    "<dc:title>{title}</dc:title>"
    "<dc:creator>{creator}</dc:creator>"
    "<cp:keywords></cp:keywords>"
    "<cp:revision>3</cp:revision>"
    '<dcterms:created xsi:type="dcterms:W3CDTF">2024-01-02T03:04:05Z</dcterms:created>'
    "</cp:coreProperties>"
)

APP_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Properties xmlns="http://schemas.openxmlformats.org/officeDocument/2006/extended-properties" '
    'xmlns:vt="http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes">'
    "<Application>Microsoft Office Word</Application>"
    "<Pages>2</Pages>"
    "<Words>150</Words>"
    "<ScaleCrop>false</ScaleCrop>"
    '<HeadingPairs><vt:vector size="2" baseType="variant">'
    "<vt:variant><vt:lpstr>Title</vt:lpstr></vt:variant>"
    "<vt:variant><vt:i4>1</vt:i4></vt:variant>"
    "</vt:vector></HeadingPairs>"
    "</Properties>"
)


def build_docx(title: str = "Quarterly Report", creator: str = "Jane Doe", size: int = 0, props: bool = True) -> bytes:
    body = '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main"/>'
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_STORED) as zf:
        zf.writestr("[Content_Types].xml", CONTENT_TYPES)
        if props:
            zf.writestr("docProps/core.xml", CORE_XML.format(title=title, creator=creator))
            zf.writestr("docProps/app.xml", APP_XML)
        padding = max(0, size - 1024)
        zf.writestr("word/document.xml", body + ("<!--" + "x" * padding + "-->" if padding else ""))
    return buf.getvalue()


class FakeConverter:
    """Stands in for LibreOffice: prefixes the input with a PDF header."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def convert(self, data: bytes, filename: str, target_format: str) -> bytes:
        with self._lock:
            self.calls += 1
        if self.fail:
            raise ConversionEngineError("soffice exited with 1: source file could not be loaded")
        return b"%PDF-1.7\n" + filename.encode("utf-8") + b"\n" + data[:16]


class InMemoryJobQueue:
    """Holds published jobs until a test drains them through the Celery tasks."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._messages = deque()
        self._lock = threading.Lock()

    def enqueue(self, message) -> None:
        with self._lock:
            self._messages.append(message)

    def pop(self):
        with self._lock:
            return self._messages.popleft() if self._messages else None

    def pending(self) -> int:
        with self._lock:
            return len(self._messages)


@pytest.fixture
def drain(components):
    """Runs every queued job in-process; returns the number of jobs run."""

    def _drain() -> int:
        ran = 0
        jobs = ((components.metadata_queue, extract_metadata), (components.conversion_queue, convert_document))
        for queue, task in jobs:
            while (message := queue.pop()) is not None:
                task.apply(args=[message.to_dict()])
                ran += 1
        return ran

    return _drain


@pytest.fixture
def make_docx():
    return build_docx


@pytest.fixture
def docx_bytes() -> bytes:
    return build_docx()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=str(tmp_path / "data"), max_upload_mb=1, workers=1)


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def components(settings, converter):
    queues = (InMemoryJobQueue("file-queue"), InMemoryJobQueue("file-conversion-queue"))
    built = build_components(settings, converter=converter, queues=queues)
    use_components(built)
    yield built
    use_components(None)


@pytest.fixture
def app(settings, components):
    return create_app(settings, components)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def upload(client, docx_bytes):
    """Uploads a document and returns its file id."""

    def _upload(data: bytes | None = None, filename: str = "report.docx", content_type: str = DOCX_MIME) -> str:
        resp = client.post("/upload", files={"file": (filename, data or docx_bytes, content_type)})
        assert resp.status_code == 200, resp.text
        return resp.json()["fileId"]

    return _upload
