"""
Database services for the Certificate Pipeline.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import desc, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ClaimNotFoundError, TemplateNotFoundByIdError, TemplateNotFoundError
from .audit_service import AuditService
from .models import (
    CertificateClaimModel,
    CertificateTemplateModel,
    GeneratedCertificateModel,
)

logger = logging.getLogger(__name__)


class ClaimService:
    """Read access to claims owned by the claims subsystem."""

    def __init__(self, db: Session):
        self.db = db

    def get_claim(self, claim_id: int) -> CertificateClaimModel:
        claim = self.db.get(CertificateClaimModel, claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)
        return claim

    def get_paid_claims_without_certificate(self, limit: int = 50) -> List[CertificateClaimModel]:
        """Paid claims that have no generated certificate row yet."""
        return (
            self.db.query(CertificateClaimModel)
            .outerjoin(
                GeneratedCertificateModel,
                GeneratedCertificateModel.claim_id == CertificateClaimModel.id,
            )
            .filter(CertificateClaimModel.payment_state == "paid")
            .filter(GeneratedCertificateModel.id.is_(None))
            .order_by(CertificateClaimModel.claimed_at)
            .limit(limit)
            .all()
        )


class TemplateService:
    """Service for managing certificate and transcript templates."""

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService(db)

    def create_template(
        self,
        kind: str,
        course_kind: str,
        name: str,
        source_path: str,
        actor_id: str = "admin",
    ) -> CertificateTemplateModel:
        """Register an uploaded template. New templates start inactive."""
        template = CertificateTemplateModel(
            kind=kind,
            course_kind=course_kind,
            name=name,
            source_path=source_path,
            is_active=False,
            uploaded_at=datetime.now(timezone.utc),
        )
        self.db.add(template)
        self.db.flush()
        self.audit.log_create(
            "Template", template.id, template.to_dict(), actor_kind="human", actor_id=actor_id
        )
        self.db.commit()
        self.db.refresh(template)
        return template

    def get_template(self, template_id: int) -> CertificateTemplateModel:
        template = self.db.get(CertificateTemplateModel, template_id)
        if template is None:
            raise TemplateNotFoundByIdError(template_id)
        return template

    def get_templates(
        self, kind: Optional[str] = None, course_kind: Optional[str] = None
    ) -> List[CertificateTemplateModel]:
        query = self.db.query(CertificateTemplateModel)
        if kind:
            query = query.filter(CertificateTemplateModel.kind == kind)
        if course_kind:
            query = query.filter(CertificateTemplateModel.course_kind == course_kind)
        return query.order_by(desc(CertificateTemplateModel.uploaded_at)).all()

    def get_active_template(self, kind: str, course_kind: str) -> CertificateTemplateModel:
        template = (
            self.db.query(CertificateTemplateModel)
            .filter(
                CertificateTemplateModel.kind == kind,
                CertificateTemplateModel.course_kind == course_kind,
                CertificateTemplateModel.is_active.is_(True),
            )
            .order_by(
                desc(CertificateTemplateModel.activated_at), desc(CertificateTemplateModel.id)
            )
            .first()
        )
        if template is None:
            raise TemplateNotFoundError(kind, course_kind)
        return template

    def activate_template(
        self, template_id: int, actor_id: str = "admin", attempts: int = 3
    ) -> CertificateTemplateModel:
        """Activate a template and deactivate its siblings in one transaction.

        Every template of the same (kind, course_kind) is locked first, so
        two concurrent activations serialize instead of both ending active.
        The partial unique index rejects any interleaving that slips past
        the locks; that attempt is rolled back and run again.
        """
        attempt = 1
        while True:
            try:
                return self._activate(template_id, actor_id)
            except IntegrityError:
                self.db.rollback()
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Activation of template {template_id} collided, retrying "
                    f"({attempt}/{attempts})"
                )
                attempt += 1

    def _activate(self, template_id: int, actor_id: str) -> CertificateTemplateModel:
        target = self.get_template(template_id)
        kind, course_kind = target.kind, target.course_kind

        try:
            siblings = (
                self.db.query(CertificateTemplateModel)
                .filter(
                    CertificateTemplateModel.kind == kind,
                    CertificateTemplateModel.course_kind == course_kind,
                )
                .order_by(CertificateTemplateModel.id)
                .with_for_update()
                .populate_existing()
                .all()
            )
            template = next(t for t in siblings if t.id == template_id)

            self.db.execute(
                update(CertificateTemplateModel)
                .where(
                    CertificateTemplateModel.kind == kind,
                    CertificateTemplateModel.course_kind == course_kind,
                    CertificateTemplateModel.id != template_id,
                    CertificateTemplateModel.is_active.is_(True),
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            was_active = template.is_active
            template.is_active = True
            template.activated_at = datetime.now(timezone.utc)
            if not was_active:
                self.audit.log_status_change(
                    "Template",
                    template.id,
                    "inactive",
                    "active",
                    actor_kind="human",
                    actor_id=actor_id,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(template)
        return template

    def deactivate_template(self, template_id: int, actor_id: str = "admin") -> CertificateTemplateModel:
        template = self.get_template(template_id)
        if template.is_active:
            template.is_active = False
            self.audit.log_status_change(
                "Template", template.id, "active", "inactive", actor_kind="human", actor_id=actor_id
            )
            self.db.commit()
            self.db.refresh(template)
        return template


class GeneratedCertificateService:
    """Queries and creation for generated certificate rows.

    Status changes go through ``worker.state.transition``, never through
    this service.
    """

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService(db)

    def get_certificate(self, certificate_id: int) -> Optional[GeneratedCertificateModel]:
        return self.db.get(GeneratedCertificateModel, certificate_id)

    def get_by_claim(self, claim_id: int) -> Optional[GeneratedCertificateModel]:
        return (
            self.db.query(GeneratedCertificateModel)
            .filter(GeneratedCertificateModel.claim_id == claim_id)
            .first()
        )

    def get_by_registration_number(
        self, registration_number: str
    ) -> Optional[GeneratedCertificateModel]:
        return (
            self.db.query(GeneratedCertificateModel)
            .filter(GeneratedCertificateModel.registration_number == registration_number)
            .first()
        )

    def get_certificates(
        self,
        status: Optional[str] = None,
        student_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[GeneratedCertificateModel]:
        """Get generated certificates with optional filtering."""
        query = self.db.query(GeneratedCertificateModel)

        if status:
            query = query.filter(GeneratedCertificateModel.status == status)
        if student_id is not None:
            query = query.filter(GeneratedCertificateModel.student_id == student_id)

        return (
            query.order_by(desc(GeneratedCertificateModel.created_at), desc(GeneratedCertificateModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_delivered_for_student(
        self, student_id: int, limit: int = 100, offset: int = 0
    ) -> List[GeneratedCertificateModel]:
        """A student's delivered certificates, most recently delivered first."""
        return (
            self.db.query(GeneratedCertificateModel)
            .filter(
                GeneratedCertificateModel.student_id == student_id,
                GeneratedCertificateModel.status == "delivered",
            )
            .order_by(
                desc(GeneratedCertificateModel.delivered_at), desc(GeneratedCertificateModel.id)
            )
            .offset(offset)
            .limit(limit)
            .all()
        )

    def create_pending(
        self, claim: CertificateClaimModel, actor_id: str = "system"
    ) -> GeneratedCertificateModel:
        """Create the pending row for a claim, or return the existing one.

        The unique constraint on ``claim_id`` decides concurrent inserts; the
        loser rolls back and reads the winner's row.
        """
        existing = self.get_by_claim(claim.id)
        if existing is not None:
            return existing

        certificate = GeneratedCertificateModel(
            claim_id=claim.id,
            student_id=claim.student_id,
            course_id=claim.course_id,
            course_kind=claim.course_kind,
            status="pending",
            attempt_count=0,
            document_errors={},
        )
        self.db.add(certificate)
        try:
            self.db.flush()
            self.audit.log_create(
                "GeneratedCertificate",
                certificate.id,
                {"claim_id": claim.id, "status": "pending"},
                actor_id=actor_id,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_by_claim(claim.id)
            if existing is None:
                raise
            return existing

        self.db.refresh(certificate)
        return certificate

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(GeneratedCertificateModel.status, func.count(GeneratedCertificateModel.id))
            .group_by(GeneratedCertificateModel.status)
            .all()
        )
        counts = {status: 0 for status in ("pending", "generating", "ready", "failed", "delivered")}
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts
