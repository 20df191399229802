"""
Generation pipeline: the stages one attempt runs for a claimed row.

Shared by the worker loop (poll-based) and by synchronous triggers from the
API and CLI. The caller claims the row first; ``run`` only ever works on a
row whose lease it was handed.

Stages, in order:
1. Snapshot the active templates for every document that still needs
   rendering (missing template is fatal before any number is burnt)
2. Validate the unit list against the transcript slots
3. Allocate the registration number, once per row, ever
4. Freeze the rendered field values on the row, once
5. Per document: render, persist source, convert, persist distributable
6. Settle the row: ready, partial (stays generating, lease released) or failed
"""
from __future__ import annotations

import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_service import AuditService
from ..db.base import get_engine
from ..db.models import GeneratedCertificateModel
from ..db.services import ClaimService
from ..errors import (
    ArtifactPersistError,
    CertificateNotFoundError,
    ConversionFailedError,
    LeaseLostError,
    RegistrationAllocationError,
)
from .allocator import RegistrationAllocator
from .converter import DocumentConverter, LibreOfficeConverter
from .renderer import (
    TemplateRenderer,
    TemplateSnapshot,
    build_certificate_fields,
    build_transcript_fields,
    check_unit_capacity,
)
from .state import CertificateStatus, held_by, transition, update_held
from .storage import ArtifactStore, create_artifact_store

logger = logging.getLogger(__name__)

DOCUMENT_KINDS = ("certificate", "transcript")


def document_filename(kind: str, registration_number: str, extension: str) -> str:
    return f"{kind.capitalize()}_{registration_number}.{extension}"


def missing_documents(certificate: GeneratedCertificateModel) -> List[str]:
    """Documents of a row that do not have a distributable yet."""
    return [
        kind
        for kind in DOCUMENT_KINDS
        if not getattr(certificate, f"{kind}_distributable_path")
    ]


class GenerationPipeline:
    """Runs generation attempts against claimed rows."""

    def __init__(
        self,
        store: ArtifactStore,
        converter: DocumentConverter,
        allocator: RegistrationAllocator,
        renderer: Optional[TemplateRenderer] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.converter = converter
        self.allocator = allocator
        self.renderer = renderer or TemplateRenderer(store, self.settings)

    def run(self, db: Session, certificate_id: int, worker_id: str) -> GeneratedCertificateModel:
        """Run one attempt for a row held by ``worker_id``.

        Per-document conversion and storage failures are recorded on the
        row. Anything else moves the row to ``failed`` and is re-raised.
        """
        try:
            self._run(db, certificate_id, worker_id)
        except Exception as e:
            db.rollback()
            logger.exception(f"Generation of certificate {certificate_id} failed: {e}")
            self.fail(db, certificate_id, worker_id, _describe(e))
            raise
        return self._reload(db, certificate_id)

    def fail(self, db: Session, certificate_id: int, worker_id: str, error: str) -> bool:
        """Move a held row to ``failed`` with ``error`` recorded."""
        return transition(
            db,
            certificate_id,
            [CertificateStatus.GENERATING],
            CertificateStatus.FAILED,
            values={"last_error": error, "claimed_by": None, "claimed_at": None},
            conditions=held_by(worker_id),
            actor_id=worker_id,
            note=error[:500],
        )

    def _reload(self, db: Session, certificate_id: int) -> GeneratedCertificateModel:
        db.expire_all()
        certificate = db.get(GeneratedCertificateModel, certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(f"Generated certificate {certificate_id} not found")
        return certificate

    def _write(self, db: Session, certificate_id: int, worker_id: str, **values) -> None:
        if not update_held(db, certificate_id, worker_id, values):
            raise LeaseLostError(certificate_id, worker_id)

    def _renew(self, db: Session, certificate_id: int, worker_id: str) -> None:
        """Push the lease forward before each slow conversion."""
        self._write(db, certificate_id, worker_id, claimed_at=datetime.now(timezone.utc))

    def _run(self, db: Session, certificate_id: int, worker_id: str) -> None:
        certificate = self._reload(db, certificate_id)
        if certificate.status != CertificateStatus.GENERATING.value or certificate.claimed_by != worker_id:
            raise LeaseLostError(certificate_id, worker_id)

        claim = ClaimService(db).get_claim(certificate.claim_id)
        todo = missing_documents(certificate)
        needs_render = [
            kind
            for kind in todo
            if not self._has_source(getattr(certificate, f"{kind}_source_path"))
        ]

        snapshots: Dict[str, TemplateSnapshot] = {
            kind: self.renderer.load(db, kind, certificate.course_kind) for kind in needs_render
        }
        if "transcript" in needs_render and not certificate.rendered_fields:
            check_unit_capacity(
                claim.units or [],
                self.settings.transcript_unit_slots,
                self.settings.unit_overflow_policy,
            )
        if snapshots:
            self._write(
                db,
                certificate_id,
                worker_id,
                **{f"{kind}_template_id": s.template_id for kind, s in snapshots.items()},
            )

        registration_number = certificate.registration_number or self._allocate(
            db, certificate_id, worker_id
        )

        fields = certificate.rendered_fields
        if not fields:
            issued_on = datetime.now(timezone.utc).date()
            fields = {
                "certificate": build_certificate_fields(claim, registration_number, issued_on),
                "transcript": build_transcript_fields(
                    claim, registration_number, issued_on, self.settings
                ),
            }
            self._write(db, certificate_id, worker_id, rendered_fields=fields)

        errors: Dict[str, str] = {}
        for kind in todo:
            self._renew(db, certificate_id, worker_id)
            try:
                self._produce(
                    db, certificate_id, worker_id, kind, registration_number,
                    snapshots.get(kind), fields[kind],
                )
            except (ConversionFailedError, ArtifactPersistError) as e:
                logger.warning(f"Certificate {certificate_id}: {kind} failed: {_describe(e)}")
                errors[kind] = _describe(e)

        self._settle(db, certificate_id, worker_id, errors)

    def _has_source(self, locator: Optional[str]) -> bool:
        return bool(locator) and self.store.exists(locator)

    def _allocate(self, db: Session, certificate_id: int, worker_id: str) -> str:
        attempts = self.settings.registration_allocation_attempts
        last_error: Optional[RegistrationAllocationError] = None
        for attempt in range(1, attempts + 1):
            try:
                number = self.allocator.allocate()
                break
            except RegistrationAllocationError as e:
                last_error = e
                logger.warning(f"Registration allocation attempt {attempt}/{attempts} failed: {e}")
        else:
            assert last_error is not None
            raise last_error

        # The number is burnt from here on, whether or not this attempt finishes
        self._write(db, certificate_id, worker_id, registration_number=number)
        AuditService(db).log_number_allocated(certificate_id, number, actor_id=worker_id)
        db.commit()
        logger.info(f"Certificate {certificate_id} allocated {number}")
        return number

    def _produce(
        self,
        db: Session,
        certificate_id: int,
        worker_id: str,
        kind: str,
        registration_number: str,
        snapshot: Optional[TemplateSnapshot],
        fields: Dict[str, str],
    ) -> None:
        """Render (unless a source already exists), convert and persist one document."""
        if snapshot is not None:
            rendered = self.renderer.render_snapshot(snapshot, fields)
            source_locator = self.store.persist(
                f"{kind}_source",
                rendered.content,
                document_filename(kind, registration_number, "docx"),
            )
            self._write(db, certificate_id, worker_id, **{f"{kind}_source_path": source_locator})
        else:
            source_locator = getattr(self._reload(db, certificate_id), f"{kind}_source_path")
            logger.info(f"Certificate {certificate_id}: reusing rendered {kind} source")

        locator = self.convert_document(kind, registration_number, source_locator)
        self._write(db, certificate_id, worker_id, **{f"{kind}_distributable_path": locator})

    def convert_document(self, kind: str, registration_number: str, source_locator: str) -> str:
        """Convert a stored DOCX source to PDF and store it as the distributable.

        Output below the size threshold is rejected before it is stored, so
        an existing good PDF is never replaced by a broken one.

        Returns:
            Locator of the stored PDF
        """
        with tempfile.TemporaryDirectory(prefix="certificate-job-") as workdir:
            work = Path(workdir)
            source = self.store.local_copy(source_locator, work / "source")
            output = self.converter.convert(source, work / "output")
            self._check_size(kind, output.stat().st_size)
            locator = self.store.persist(
                f"{kind}_distributable",
                output,
                document_filename(kind, registration_number, "pdf"),
            )

        self._check_size(kind, self.store.size(locator))
        return locator

    def _check_size(self, kind: str, size: int) -> None:
        if size < self.settings.conversion_min_bytes:
            raise ConversionFailedError(
                f"{kind.capitalize()} PDF is only {size} bytes",
                {"size": size, "min_bytes": self.settings.conversion_min_bytes},
            )

    def _settle(
        self, db: Session, certificate_id: int, worker_id: str, errors: Dict[str, str]
    ) -> None:
        certificate = self._reload(db, certificate_id)
        done = [
            kind
            for kind in DOCUMENT_KINDS
            if self._distributable_ok(getattr(certificate, f"{kind}_distributable_path"))
        ]

        if len(done) == len(DOCUMENT_KINDS):
            transition(
                db,
                certificate_id,
                [CertificateStatus.GENERATING],
                CertificateStatus.READY,
                values={
                    "generated_at": datetime.now(timezone.utc),
                    "last_error": None,
                    "document_errors": {},
                    "claimed_by": None,
                    "claimed_at": None,
                },
                conditions=held_by(worker_id)
                + [
                    GeneratedCertificateModel.certificate_distributable_path.isnot(None),
                    GeneratedCertificateModel.transcript_distributable_path.isnot(None),
                ],
                actor_id=worker_id,
                note="Certificate and transcript generated",
            )
            return

        if not errors:
            errors = {
                kind: "distributable missing or below size threshold"
                for kind in DOCUMENT_KINDS
                if kind not in done
            }
        summary = "; ".join(f"{kind}: {message}" for kind, message in errors.items())

        if done:
            # Partial: keep what succeeded, release the lease, wait for a retry
            self._write(
                db,
                certificate_id,
                worker_id,
                document_errors=errors,
                last_error=summary,
                claimed_by=None,
                claimed_at=None,
            )
            logger.warning(f"Certificate {certificate_id} partially generated ({summary})")
            return

        transition(
            db,
            certificate_id,
            [CertificateStatus.GENERATING],
            CertificateStatus.FAILED,
            values={
                "last_error": summary,
                "document_errors": errors,
                "claimed_by": None,
                "claimed_at": None,
            },
            conditions=held_by(worker_id),
            actor_id=worker_id,
            note=summary[:500],
        )

    def _distributable_ok(self, locator: Optional[str]) -> bool:
        return bool(locator) and self.store.size(locator) >= self.settings.conversion_min_bytes


def _describe(error: Exception) -> str:
    code = getattr(error, "code", type(error).__name__)
    return f"{code}: {error}"


def build_pipeline(
    settings: Optional[Settings] = None,
    store: Optional[ArtifactStore] = None,
    converter: Optional[DocumentConverter] = None,
    engine_factory: Callable[[], Engine] = get_engine,
) -> GenerationPipeline:
    """Assemble a pipeline from configuration, overriding any piece given."""
    settings = settings or get_settings()
    store = store or create_artifact_store(settings.artifact_root_uri)
    return GenerationPipeline(
        store=store,
        converter=converter or LibreOfficeConverter(settings),
        allocator=RegistrationAllocator(engine_factory, settings),
        settings=settings,
    )
