"""Test configuration and fixtures."""

import io
import zipfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import pytest
from sqlalchemy.orm import Session, sessionmaker

from certificate_pipeline.certificates import CertificateOperations
from certificate_pipeline.config import Settings
from certificate_pipeline.db.base import build_engine, create_tables
from certificate_pipeline.db.models import CertificateClaimModel
from certificate_pipeline.errors import ConversionProcessError, ConverterUnavailableError
from certificate_pipeline.worker.allocator import RegistrationAllocator
from certificate_pipeline.worker.converter import DocumentConverter
from certificate_pipeline.worker.pipeline import GenerationPipeline
from certificate_pipeline.worker.storage import FileArtifactStore

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    "</Types>"
)

ROOT_RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
    'Target="word/document.xml"/>'
    "</Relationships>"
)

CERTIFICATE_BODY = (
    "<w:p><w:r><w:t>This certifies that {{STUDENT_NAME}}</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>has completed {{COURSE_NAME}}</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>Registration: {{REGISTRATION_NO}}</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>Issued {{DATE_OF_ISSUANCE}}</w:t></w:r></w:p>"
)

TRANSCRIPT_BODY = (
    "<w:p><w:r><w:t>{{STUDENT_NAME}} - {{COURSE_NAME}} ({{COURSE_LEVEL}})</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>{{UNIT_1_NAME}} {{UNIT_1_CREDITS}}</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>{{UNIT_2_NAME}} {{UNIT_2_CREDITS}}</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>{{UNIT_3_NAME}} {{UNIT_3_CREDITS}}</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>Registration: {{REGISTRATION_NO}}</w:t></w:r></w:p>"
)


def document_xml(body: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<w:document xmlns:w="{W_NS}"><w:body>{body}</w:body></w:document>'
    )


def build_docx(body: str, parts: Optional[Dict[str, str]] = None) -> bytes:
    """Build a minimal DOCX package whose document body is ``body``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", CONTENT_TYPES)
        archive.writestr("_rels/.rels", ROOT_RELS)
        archive.writestr("word/document.xml", document_xml(body))
        for name, xml in (parts or {}).items():
            archive.writestr(name, xml)
    return buffer.getvalue()


def corrupt_member(content: bytes, part: str = "word/document.xml") -> bytes:
    """Flip bytes inside one member's compressed data, leaving the directory intact."""
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        info = archive.getinfo(part)
    data = bytearray(content)
    header = info.header_offset
    name_len = int.from_bytes(data[header + 26 : header + 28], "little")
    extra_len = int.from_bytes(data[header + 28 : header + 30], "little")
    start = header + 30 + name_len + extra_len
    for offset in range(2, min(22, info.compress_size)):
        data[start + offset] ^= 0xFF
    return bytes(data)


def docx_text(content: bytes, part: str = "word/document.xml") -> str:
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        return archive.read(part).decode("utf-8")


def fake_pdf(size: int = 2048) -> bytes:
    return b"%PDF-1.7\n" + b"0" * (size - 9)


class FakeConverter(DocumentConverter):
    """Converter stand-in that writes a PDF-looking file without LibreOffice.

    ``fail_prefixes`` makes conversion of matching file names raise;
    ``empty`` writes zero-byte output; ``unavailable`` behaves like a host
    without soffice. ``on_convert`` runs before each conversion.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.fail_prefixes: List[str] = []
        self.empty = False
        self.unavailable = False
        self.on_convert: Optional[Callable[[Path], None]] = None

    def convert(self, source_path: Path, output_dir: Path) -> Path:
        self.calls.append(source_path.name)
        if self.on_convert is not None:
            self.on_convert(source_path)
        if self.unavailable:
            raise ConverterUnavailableError("LibreOffice (soffice) not found")
        if any(source_path.name.startswith(prefix) for prefix in self.fail_prefixes):
            raise ConversionProcessError(f"Converter exited with code 1: cannot load {source_path.name}")

        output_dir.mkdir(parents=True, exist_ok=True)
        target = output_dir / (source_path.stem + ".pdf")
        target.write_bytes(b"" if self.empty else fake_pdf())
        return target


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test database and artifact root."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'pipeline.db'}",
        artifact_root_uri=(tmp_path / "artifacts").as_uri(),
        transcript_unit_slots=3,
        conversion_backoff_seconds=0,
        conversion_max_attempts=2,
        retry_backoff_seconds=0,
        max_generation_attempts=3,
        registration_max_cas_attempts=1000,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(tmp_path) -> FileArtifactStore:
    return FileArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def allocator(engine, settings) -> RegistrationAllocator:
    return RegistrationAllocator(lambda: engine, settings)


@pytest.fixture
def pipeline(store, converter, allocator, settings) -> GenerationPipeline:
    return GenerationPipeline(store, converter, allocator, settings=settings)


@pytest.fixture
def ops(db_session, pipeline, settings) -> CertificateOperations:
    return CertificateOperations(db_session, pipeline=pipeline, settings=settings)


@pytest.fixture
def make_claim(db_session) -> Callable[..., CertificateClaimModel]:
    """Factory for claims; paid CPD claims with two units by default."""

    def _make(**overrides) -> CertificateClaimModel:
        values = {
            "student_id": 7,
            "course_id": 11,
            "course_kind": "cpd",
            "display_name": "Ada Lovelace",
            "course_title": "Analytical Engines",
            "units": [
                {"title": "Bernoulli Numbers", "credits": 5},
                {"title": "Punched Cards", "credits": 10},
            ],
            "payment_state": "paid",
        }
        values.update(overrides)
        claim = CertificateClaimModel(**values)
        db_session.add(claim)
        db_session.commit()
        db_session.refresh(claim)
        return claim

    return _make


@pytest.fixture
def active_templates(ops) -> Dict[str, int]:
    """Upload and activate certificate and transcript templates for both course kinds."""
    ids = {}
    for course_kind in ("cpd", "qualification"):
        for kind, body in (("certificate", CERTIFICATE_BODY), ("transcript", TRANSCRIPT_BODY)):
            template = ops.upload_template(
                kind, course_kind, f"{kind}.docx", build_docx(body), name=f"{course_kind} {kind}"
            )
            ops.activate_template(template.id)
            ids[f"{kind}:{course_kind}"] = template.id
    return ids
