"""
Certificate API Routes.

REST endpoints for generated certificates, public downloads and templates.
"""

from typing import Any, BinaryIO, Dict, Iterator, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from .certificates import CertificateOperations
from .db.base import get_db
from .schemas.certificate_v1 import (
    AuditEntryV1,
    DeliverAllRequestV1,
    DeliverAllResultV1,
    DeliveryErrorV1,
    GeneratedCertificateV1,
    NextRegistrationNumberV1,
    PlaceholderDataV1,
    QueueStatusV1,
    TemplateV1,
)
from .worker.pipeline import GenerationPipeline, build_pipeline

StatusFilter = Literal["pending", "generating", "ready", "failed", "delivered"]
DocumentKind = Literal["certificate", "transcript"]
CourseKind = Literal["cpd", "qualification"]

_pipeline: Optional[GenerationPipeline] = None


def get_pipeline() -> GenerationPipeline:
    """Process-wide pipeline built from configuration on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def get_operations(
    db: Session = Depends(get_db),
    pipeline: GenerationPipeline = Depends(get_pipeline),
) -> CertificateOperations:
    return CertificateOperations(db, pipeline=pipeline)


def _iter_stream(stream: BinaryIO, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


def _attachment(filename: str, media_type: str, stream: BinaryIO) -> StreamingResponse:
    return StreamingResponse(
        _iter_stream(stream),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


claims_router = APIRouter(prefix="/claims", tags=["claims"])
certificates_router = APIRouter(prefix="/certificates", tags=["certificates"])
templates_router = APIRouter(prefix="/certificate-templates", tags=["templates"])


# =============================================================================
# Claims (called by the claims subsystem)
# =============================================================================


@claims_router.post("/{claim_id}/payable", status_code=202)
def claim_payable(
    claim_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    """Queue generation for a paid claim."""
    return GeneratedCertificateV1.model_validate(ops.on_claim_payable(claim_id))


# =============================================================================
# Generated certificates
# =============================================================================


@certificates_router.post("/generate/{claim_id}")
def trigger_generation(
    claim_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    """Generate a claim's documents now (idempotent)."""
    return GeneratedCertificateV1.model_validate(ops.trigger_generation(claim_id))


@certificates_router.get("/generated")
def list_generated(
    status: Optional[StatusFilter] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ops: CertificateOperations = Depends(get_operations),
) -> List[GeneratedCertificateV1]:
    return [
        GeneratedCertificateV1.model_validate(c)
        for c in ops.list_generated(status=status, limit=limit, offset=offset)
    ]


@certificates_router.get("/generated/by-claim/{claim_id}")
def get_by_claim(
    claim_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    return GeneratedCertificateV1.model_validate(ops.get_by_claim(claim_id))


@certificates_router.get("/generated/{certificate_id}")
def get_generated(
    certificate_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    return GeneratedCertificateV1.model_validate(ops.get_generated(certificate_id))


@certificates_router.post("/generated/{certificate_id}/deliver")
def deliver(
    certificate_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    """Make a ready certificate available for public download."""
    return GeneratedCertificateV1.model_validate(ops.deliver(certificate_id))


@certificates_router.post("/generated/{certificate_id}/retry")
def retry(
    certificate_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    """Re-run a failed or partially generated certificate."""
    return GeneratedCertificateV1.model_validate(ops.retry_generation(certificate_id))


@certificates_router.get("/generated/{certificate_id}/placeholders")
def placeholders(
    certificate_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> PlaceholderDataV1:
    return PlaceholderDataV1(**ops.placeholder_data(certificate_id))


@certificates_router.post("/deliver-all")
def deliver_all(
    request: DeliverAllRequestV1,
    ops: CertificateOperations = Depends(get_operations),
) -> DeliverAllResultV1:
    """Deliver several ready certificates; the rest are reported, not raised."""
    outcome = ops.deliver_all(request.certificate_ids)
    return DeliverAllResultV1(
        delivered=outcome["delivered"],
        failed=outcome["failed"],
        results=[GeneratedCertificateV1.model_validate(c) for c in outcome["results"]],
        errors=[DeliveryErrorV1(**e) for e in outcome["errors"]],
    )


@certificates_router.get("/students/{student_id}/delivered")
def delivered_for_student(
    student_id: int,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ops: CertificateOperations = Depends(get_operations),
) -> List[GeneratedCertificateV1]:
    """A student's delivered certificates, most recent first."""
    return [
        GeneratedCertificateV1.model_validate(c)
        for c in ops.list_delivered_for_student(student_id, limit=limit, offset=offset)
    ]


@certificates_router.get("/generated/{certificate_id}/docx/{kind}")
def download_source(
    certificate_id: int,
    kind: DocumentKind,
    ops: CertificateOperations = Depends(get_operations),
) -> StreamingResponse:
    """Download the filled DOCX a document was converted from."""
    return _attachment(*ops.download_source(certificate_id, kind))


@certificates_router.post("/generated/{certificate_id}/reconvert/{kind}")
def reconvert(
    certificate_id: int,
    kind: DocumentKind,
    ops: CertificateOperations = Depends(get_operations),
) -> GeneratedCertificateV1:
    """Convert a ready or delivered document's DOCX to PDF again."""
    return GeneratedCertificateV1.model_validate(ops.reconvert_document(certificate_id, kind))


@certificates_router.get("/generated/{certificate_id}/history")
def history(
    certificate_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> List[AuditEntryV1]:
    return [AuditEntryV1.model_validate(e) for e in ops.certificate_history(certificate_id)]


@certificates_router.get("/queue/status")
def queue_status(ops: CertificateOperations = Depends(get_operations)) -> QueueStatusV1:
    return QueueStatusV1(**ops.queue_status())


@certificates_router.get("/next-registration-number")
def next_registration_number(
    ops: CertificateOperations = Depends(get_operations),
) -> NextRegistrationNumberV1:
    """Preview the next number; it is not reserved."""
    return NextRegistrationNumberV1(registration_number=ops.next_registration_number())


@certificates_router.get("/public-download/{kind}/{registration_number}")
def public_download(
    kind: DocumentKind,
    registration_number: str,
    ops: CertificateOperations = Depends(get_operations),
) -> StreamingResponse:
    """Download a delivered certificate or transcript by registration number."""
    return _attachment(*ops.download_by_registration_number(registration_number, kind))


# =============================================================================
# Templates
# =============================================================================


@templates_router.get("")
def list_templates(
    kind: Optional[DocumentKind] = None,
    course_kind: Optional[CourseKind] = None,
    ops: CertificateOperations = Depends(get_operations),
) -> List[TemplateV1]:
    return [TemplateV1.model_validate(t) for t in ops.list_templates(kind, course_kind)]


@templates_router.post("/upload", status_code=201)
def upload_template(
    kind: DocumentKind = Form(...),
    course_kind: CourseKind = Form(...),
    name: Optional[str] = Form(None),
    file: UploadFile = File(...),
    ops: CertificateOperations = Depends(get_operations),
) -> TemplateV1:
    """Upload a DOCX template. It stays inactive until activated."""
    data = file.file.read()
    template = ops.upload_template(kind, course_kind, file.filename or "", data, name=name)
    return TemplateV1.model_validate(template)


@templates_router.post("/{template_id}/activate")
def activate_template(
    template_id: int,
    ops: CertificateOperations = Depends(get_operations),
) -> Dict[str, Any]:
    """Activate a template, deactivating the current one for its kind and course kind."""
    template = ops.activate_template(template_id)
    return {"status": "success", "template": TemplateV1.model_validate(template).model_dump()}
