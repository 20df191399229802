"""
Certificate operations exposed to the claims subsystem and to admins.

Thin orchestration over the services and the generation pipeline, shared
by the HTTP API and the CLI. Every operation here is safe to repeat.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.audit_models import AuditLogModel
from .db.audit_service import AuditService
from .db.models import CertificateTemplateModel, GeneratedCertificateModel
from .db.services import ClaimService, GeneratedCertificateService, TemplateService
from .errors import (
    CertificateNotFoundError,
    CertificateNotSettledError,
    CertificatePipelineError,
    ClaimNotPayableError,
    DuplicateGenerationError,
    InvalidTemplateError,
    InvalidTransitionError,
)
from .worker.pipeline import DOCUMENT_KINDS, GenerationPipeline, build_pipeline, document_filename
from .worker.renderer import DOCX_MEDIA_TYPE, validate_template
from .worker.state import (
    CertificateStatus,
    acquire_lease,
    claim_for_generation,
    transition,
)

logger = structlog.get_logger()

COURSE_KINDS = ("cpd", "qualification")
PDF_MEDIA_TYPE = "application/pdf"
SETTLED_STATUSES = (CertificateStatus.READY.value, CertificateStatus.DELIVERED.value)


class CertificateOperations:
    """Operations on generated certificates and templates for one session."""

    def __init__(
        self,
        db: Session,
        pipeline: Optional[GenerationPipeline] = None,
        settings: Optional[Settings] = None,
        actor_id: str = "admin",
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.pipeline = pipeline or build_pipeline(self.settings)
        self.store = self.pipeline.store
        self.actor_id = actor_id
        self.certificates = GeneratedCertificateService(db)
        self.templates = TemplateService(db)
        self.claims = ClaimService(db)

    # Generation

    def on_claim_payable(self, claim_id: int) -> GeneratedCertificateModel:
        """Record that a claim is paid: create its pending row (once)."""
        claim = self.claims.get_claim(claim_id)
        if claim.payment_state != "paid":
            raise ClaimNotPayableError(claim_id, claim.payment_state)
        certificate = self.certificates.create_pending(claim, actor_id=self.actor_id)
        logger.info("claim_payable", claim_id=claim_id, certificate_id=certificate.id)
        return certificate

    def trigger_generation(self, claim_id: int) -> GeneratedCertificateModel:
        """Generate the documents for a claim now, unless already done or running.

        Ready, delivered and in-flight rows come back unchanged. Fatal
        errors (missing template, too many units) are raised after the row
        has been marked failed.
        """
        certificate = self.certificates.get_by_claim(claim_id)
        if certificate is None:
            certificate = self.on_claim_payable(claim_id)

        try:
            self._check_not_generated(certificate)
        except DuplicateGenerationError as e:
            logger.info(
                "generation_skipped",
                claim_id=claim_id,
                status=certificate.status,
                held_by=certificate.claimed_by,
                reason=e.code,
            )
            return certificate

        lease_id = f"trigger-{uuid.uuid4().hex[:8]}"
        if certificate.status == CertificateStatus.GENERATING.value:
            won = acquire_lease(self.db, certificate.id, lease_id)
        else:
            won = claim_for_generation(
                self.db, certificate.id, lease_id, expected=[certificate.status], actor_kind="human"
            )

        if not won:
            # Someone else moved the row first; report where it is now
            return self._reload(certificate.id)
        return self._run(certificate.id, lease_id)

    @staticmethod
    def _check_not_generated(certificate: GeneratedCertificateModel) -> None:
        """Raise if the row is finished or another caller is generating it."""
        in_flight = (
            certificate.status == CertificateStatus.GENERATING.value
            and certificate.claimed_by is not None
        )
        if certificate.status in SETTLED_STATUSES or in_flight:
            raise DuplicateGenerationError(certificate.claim_id, certificate.id)

    def retry_generation(self, certificate_id: int) -> GeneratedCertificateModel:
        """Admin retry of a failed or partially generated row.

        Ignores the automatic attempt ceiling. Only documents without a
        distributable are produced again.
        """
        certificate = self.get_generated(certificate_id)
        lease_id = f"retry-{uuid.uuid4().hex[:8]}"

        if certificate.status == CertificateStatus.FAILED.value:
            won = claim_for_generation(
                self.db, certificate_id, lease_id, expected=["failed"], actor_kind="human"
            )
        elif certificate.status == CertificateStatus.GENERATING.value and certificate.claimed_by is None:
            won = acquire_lease(self.db, certificate_id, lease_id)
        else:
            raise InvalidTransitionError(certificate.status, CertificateStatus.GENERATING.value)

        if not won:
            current = self._reload(certificate_id)
            raise InvalidTransitionError(current.status, CertificateStatus.GENERATING.value)
        return self._run(certificate_id, lease_id)

    def _run(self, certificate_id: int, lease_id: str) -> GeneratedCertificateModel:
        log = logger.bind(certificate_id=certificate_id, lease=lease_id)
        log.info("generation_started")
        certificate = self.pipeline.run(self.db, certificate_id, lease_id)
        log.info(
            "generation_finished",
            status=certificate.status,
            registration_number=certificate.registration_number,
            document_errors=certificate.document_errors or {},
        )
        return certificate

    def _reload(self, certificate_id: int) -> GeneratedCertificateModel:
        self.db.expire_all()
        return self.get_generated(certificate_id)

    # Queries

    def list_generated(
        self, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[GeneratedCertificateModel]:
        return self.certificates.get_certificates(status=status, limit=limit, offset=offset)

    def get_generated(self, certificate_id: int) -> GeneratedCertificateModel:
        certificate = self.certificates.get_certificate(certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(f"Generated certificate {certificate_id} not found")
        return certificate

    def get_by_claim(self, claim_id: int) -> GeneratedCertificateModel:
        certificate = self.certificates.get_by_claim(claim_id)
        if certificate is None:
            raise CertificateNotFoundError(f"No generated certificate for claim {claim_id}")
        return certificate

    def queue_status(self) -> Dict[str, int]:
        return self.certificates.count_by_status()

    def next_registration_number(self) -> str:
        return self.pipeline.allocator.peek()

    def placeholder_data(self, certificate_id: int) -> Dict[str, Any]:
        """The field values frozen on the row when it was first rendered."""
        certificate = self.get_generated(certificate_id)
        return {
            "certificate_id": certificate.id,
            "registration_number": certificate.registration_number,
            "fields": certificate.rendered_fields or {},
        }

    # Delivery

    def deliver(self, certificate_id: int) -> GeneratedCertificateModel:
        """Publish a ready certificate. Delivering twice returns the same row."""
        certificate = self.get_generated(certificate_id)
        if certificate.status == CertificateStatus.DELIVERED.value:
            return certificate

        delivered = transition(
            self.db,
            certificate_id,
            [CertificateStatus.READY],
            CertificateStatus.DELIVERED,
            values={"delivered_at": datetime.now(timezone.utc), "delivered_by": self.actor_id},
            actor_id=self.actor_id,
            actor_kind="human",
            note="Delivered to student",
        )
        certificate = self._reload(certificate_id)
        if not delivered and certificate.status != CertificateStatus.DELIVERED.value:
            raise InvalidTransitionError(certificate.status, CertificateStatus.DELIVERED.value)

        logger.info(
            "certificate_delivered",
            certificate_id=certificate_id,
            registration_number=certificate.registration_number,
            delivered_by=certificate.delivered_by,
        )
        return certificate

    def deliver_all(self, certificate_ids: Iterable[int]) -> Dict[str, Any]:
        """Deliver several certificates, carrying on past the ones that cannot be.

        Returns:
            {"delivered": n, "failed": n, "results": [rows], "errors": [...]}
            where each error is {"certificate_id", "code", "message"}
        """
        results: List[GeneratedCertificateModel] = []
        errors: List[Dict[str, Any]] = []
        for certificate_id in dict.fromkeys(certificate_ids):
            try:
                results.append(self.deliver(certificate_id))
            except CertificatePipelineError as e:
                errors.append({"certificate_id": certificate_id, "code": e.code, "message": e.message})

        logger.info("bulk_delivery", delivered=len(results), failed=len(errors))
        return {
            "delivered": len(results),
            "failed": len(errors),
            "results": results,
            "errors": errors,
        }

    def list_delivered_for_student(
        self, student_id: int, limit: int = 100, offset: int = 0
    ) -> List[GeneratedCertificateModel]:
        return self.certificates.get_delivered_for_student(student_id, limit=limit, offset=offset)

    def download_by_registration_number(
        self, registration_number: str, kind: str
    ) -> Tuple[str, str, BinaryIO]:
        """Open a delivered document for public download.

        Returns:
            (filename, media type, open binary stream)

        Raises:
            CertificateNotFoundError: Unknown number, unknown kind, or the
                certificate has not been delivered
        """
        if kind not in DOCUMENT_KINDS:
            raise CertificateNotFoundError(f"Unknown document kind: {kind}")

        certificate = self.certificates.get_by_registration_number(registration_number)
        if certificate is None or certificate.status != CertificateStatus.DELIVERED.value:
            raise CertificateNotFoundError(f"Certificate {registration_number} not found")

        locator = getattr(certificate, f"{kind}_distributable_path")
        if not locator or not self.store.exists(locator):
            logger.error(
                "delivered_artifact_missing",
                registration_number=registration_number,
                kind=kind,
                locator=locator,
            )
            raise CertificateNotFoundError(f"{kind.capitalize()} {registration_number} not found")

        return (
            document_filename(kind, registration_number, "pdf"),
            PDF_MEDIA_TYPE,
            self.store.resolve(locator),
        )

    # Admin document access

    def download_source(self, certificate_id: int, kind: str) -> Tuple[str, str, BinaryIO]:
        """Open the filled DOCX a document was converted from.

        Raises:
            CertificateNotFoundError: Unknown certificate or kind, or no
                source has been rendered yet
        """
        if kind not in DOCUMENT_KINDS:
            raise CertificateNotFoundError(f"Unknown document kind: {kind}")
        certificate = self.get_generated(certificate_id)
        locator = getattr(certificate, f"{kind}_source_path")
        if not locator or not self.store.exists(locator):
            raise CertificateNotFoundError(
                f"No {kind} source document for certificate {certificate_id}"
            )
        return (
            document_filename(kind, certificate.registration_number, "docx"),
            DOCX_MEDIA_TYPE,
            self.store.resolve(locator),
        )

    def reconvert_document(self, certificate_id: int, kind: str) -> GeneratedCertificateModel:
        """Convert a settled certificate's stored DOCX to PDF again.

        For PDFs that came out wrong (fonts, layout) after the converter was
        fixed. The source is not re-rendered, so the printed values and the
        registration number stay as they were.
        """
        if kind not in DOCUMENT_KINDS:
            raise CertificateNotFoundError(f"Unknown document kind: {kind}")
        certificate = self.get_generated(certificate_id)
        if certificate.status not in SETTLED_STATUSES:
            raise CertificateNotSettledError(certificate_id, certificate.status)

        source_locator = getattr(certificate, f"{kind}_source_path")
        if not source_locator or not self.store.exists(source_locator):
            raise CertificateNotFoundError(
                f"No {kind} source document for certificate {certificate_id}"
            )

        column = f"{kind}_distributable_path"
        before = {column: getattr(certificate, column)}
        if before[column]:
            before["size"] = self.store.size(before[column])

        locator = self.pipeline.convert_document(
            kind, certificate.registration_number, source_locator
        )
        result = self.db.execute(
            update(GeneratedCertificateModel)
            .where(
                GeneratedCertificateModel.id == certificate_id,
                GeneratedCertificateModel.status.in_(SETTLED_STATUSES),
            )
            .values({column: locator, "updated_at": datetime.now(timezone.utc)})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            current = self._reload(certificate_id)
            raise CertificateNotSettledError(certificate_id, current.status)

        AuditService(self.db).log_update(
            "GeneratedCertificate",
            certificate_id,
            before,
            {column: locator, "size": self.store.size(locator)},
            actor_kind="human",
            actor_id=self.actor_id,
            note=f"{kind.capitalize()} PDF reconverted",
        )
        self.db.commit()
        logger.info(
            "document_reconverted",
            certificate_id=certificate_id,
            kind=kind,
            registration_number=certificate.registration_number,
        )
        return self._reload(certificate_id)

    def certificate_history(self, certificate_id: int) -> List[AuditLogModel]:
        """Recorded events for a certificate, newest first."""
        self.get_generated(certificate_id)
        return AuditService(self.db).query_by_entity("GeneratedCertificate", certificate_id)

    # Templates

    def upload_template(
        self,
        kind: str,
        course_kind: str,
        filename: str,
        data: bytes,
        name: Optional[str] = None,
    ) -> CertificateTemplateModel:
        """Store an uploaded DOCX template. It starts inactive."""
        if kind not in DOCUMENT_KINDS:
            raise InvalidTemplateError(f"Unknown template kind: {kind}")
        if course_kind not in COURSE_KINDS:
            raise InvalidTemplateError(f"Unknown course kind: {course_kind}")
        if not filename.lower().endswith(".docx"):
            raise InvalidTemplateError(f"Templates must be .docx files, got {filename}")

        tokens = validate_template(data)
        stored_name = f"{kind}_{course_kind}_{uuid.uuid4().hex[:12]}.docx"
        locator = self.store.persist("template", data, stored_name)
        template = self.templates.create_template(
            kind, course_kind, name or filename, locator, actor_id=self.actor_id
        )
        logger.info(
            "template_uploaded",
            template_id=template.id,
            kind=kind,
            course_kind=course_kind,
            tokens=sorted(set(tokens)),
        )
        return template

    def activate_template(self, template_id: int) -> CertificateTemplateModel:
        template = self.templates.activate_template(template_id, actor_id=self.actor_id)
        logger.info(
            "template_activated",
            template_id=template.id,
            kind=template.kind,
            course_kind=template.course_kind,
        )
        return template

    def list_templates(
        self, kind: Optional[str] = None, course_kind: Optional[str] = None
    ) -> List[CertificateTemplateModel]:
        return self.templates.get_templates(kind=kind, course_kind=course_kind)
