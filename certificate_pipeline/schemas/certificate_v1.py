from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ..worker.state import student_status_label


class GeneratedCertificateV1(BaseModel):
    """A claim's generated certificate as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_id: int
    student_id: int
    course_id: int
    course_kind: str
    registration_number: Optional[str] = None
    status: str
    certificate_source_path: Optional[str] = None
    certificate_distributable_path: Optional[str] = None
    transcript_source_path: Optional[str] = None
    transcript_distributable_path: Optional[str] = None
    certificate_template_id: Optional[int] = None
    transcript_template_id: Optional[int] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    document_errors: Optional[Dict[str, str]] = None
    generated_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivered_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field  # type: ignore[misc]
    @property
    def student_status(self) -> str:
        """What the student is shown for this status."""
        return student_status_label(self.status)


class TemplateV1(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    course_kind: str
    name: str
    is_active: bool
    uploaded_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None


class PlaceholderDataV1(BaseModel):
    certificate_id: int
    registration_number: Optional[str] = None
    fields: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class QueueStatusV1(BaseModel):
    pending: int = 0
    generating: int = 0
    ready: int = 0
    failed: int = 0
    delivered: int = 0
    total: int = 0


class NextRegistrationNumberV1(BaseModel):
    registration_number: str


class DeliverAllRequestV1(BaseModel):
    certificate_ids: List[int] = Field(..., min_length=1)


class DeliveryErrorV1(BaseModel):
    certificate_id: int
    code: str
    message: str


class DeliverAllResultV1(BaseModel):
    delivered: int
    failed: int
    results: List[GeneratedCertificateV1] = Field(default_factory=list)
    errors: List[DeliveryErrorV1] = Field(default_factory=list)


class AuditEntryV1(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    actor_id: str
    actor_kind: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    note: Optional[str] = None
    ts: Optional[datetime] = None
