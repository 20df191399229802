"""
SQLAlchemy models for the Certificate Pipeline.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from .base import Base


course_kind_enum = Enum("cpd", "qualification", name="course_kind")

template_kind_enum = Enum("certificate", "transcript", name="template_kind")

certificate_status_enum = Enum(
    "pending",
    "generating",
    "ready",
    "failed",
    "delivered",
    name="certificate_status",
)


def _iso(value) -> Any:
    return value.isoformat() if value else None


class CertificateClaimModel(Base):
    """A student's paid request for a certificate.

    Owned by the claims subsystem; the pipeline only reads it.
    """

    __tablename__ = "certificate_claims"

    id = Column(Integer, primary_key=True)
    student_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    course_kind = Column(course_kind_enum, nullable=False)

    # Name printed on the certificate
    display_name = Column(String(255), nullable=False)
    course_title = Column(String(255), nullable=False)
    # Overrides course_title on the printed documents when set
    certificate_name = Column(String(255), nullable=True)
    course_level = Column(String(100), nullable=True)
    # Ordered list of {"title": str, "credits": int}
    units = Column(JSON, nullable=False, default=list)

    payment_state = Column(
        Enum("pending", "paid", "refunded", name="payment_state"),
        nullable=False,
        default="pending",
        index=True,
    )
    claimed_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "course_kind": self.course_kind,
            "display_name": self.display_name,
            "course_title": self.course_title,
            "certificate_name": self.certificate_name,
            "course_level": self.course_level,
            "units": self.units,
            "payment_state": self.payment_state,
            "claimed_at": _iso(self.claimed_at),
        }


class CertificateTemplateModel(Base):
    """A DOCX skeleton with placeholder tokens for one (kind, course_kind)."""

    __tablename__ = "certificate_templates"

    id = Column(Integer, primary_key=True)
    kind = Column(template_kind_enum, nullable=False)
    course_kind = Column(course_kind_enum, nullable=False)
    name = Column(String(255), nullable=False)
    # Artifact locator of the uploaded file
    source_path = Column(String(1024), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)

    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    activated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_certificate_templates_kind_active", "kind", "course_kind", "is_active"),
        # At most one active template per (kind, course_kind)
        Index(
            "uq_certificate_templates_one_active",
            "kind",
            "course_kind",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "course_kind": self.course_kind,
            "name": self.name,
            "source_path": self.source_path,
            "is_active": self.is_active,
            "uploaded_at": _iso(self.uploaded_at),
            "activated_at": _iso(self.activated_at),
        }


class GeneratedCertificateModel(Base):
    """One claim's document-generation lifecycle and resulting artifacts."""

    __tablename__ = "generated_certificates"

    id = Column(Integer, primary_key=True)
    claim_id = Column(Integer, nullable=False)
    student_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False)
    course_kind = Column(course_kind_enum, nullable=False)

    registration_number = Column(String(32), nullable=True)

    status = Column(certificate_status_enum, nullable=False, default="pending", index=True)

    # Artifact locators
    certificate_source_path = Column(String(1024), nullable=True)
    certificate_distributable_path = Column(String(1024), nullable=True)
    transcript_source_path = Column(String(1024), nullable=True)
    transcript_distributable_path = Column(String(1024), nullable=True)

    # Snapshot of every placeholder value used; written once
    rendered_fields = Column(JSON, nullable=True)
    certificate_template_id = Column(Integer, nullable=True)
    transcript_template_id = Column(Integer, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    # {"certificate": "...", "transcript": "..."} for documents that failed
    document_errors = Column(JSON, nullable=False, default=dict)

    # Lease held by the worker processing the row
    claimed_by = Column(String(100), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    generated_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    delivered_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("claim_id", name="uq_generated_certificates_claim_id"),
        UniqueConstraint(
            "registration_number", name="uq_generated_certificates_registration_number"
        ),
        Index("ix_generated_certificates_status_updated", "status", "updated_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "claim_id": self.claim_id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "course_kind": self.course_kind,
            "registration_number": self.registration_number,
            "status": self.status,
            "certificate_source_path": self.certificate_source_path,
            "certificate_distributable_path": self.certificate_distributable_path,
            "transcript_source_path": self.transcript_source_path,
            "transcript_distributable_path": self.transcript_distributable_path,
            "rendered_fields": self.rendered_fields,
            "certificate_template_id": self.certificate_template_id,
            "transcript_template_id": self.transcript_template_id,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "document_errors": self.document_errors or {},
            "claimed_by": self.claimed_by,
            "claimed_at": _iso(self.claimed_at),
            "generated_at": _iso(self.generated_at),
            "delivered_at": _iso(self.delivered_at),
            "delivered_by": self.delivered_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class RegistrationSequenceModel(Base):
    """Monotonic counter for one issuing authority."""

    __tablename__ = "registration_sequences"

    authority = Column(String(16), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authority": self.authority,
            "value": self.value,
            "updated_at": _iso(self.updated_at),
        }
