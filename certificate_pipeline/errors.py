"""
Error taxonomy for the certificate pipeline.

Every error carries a stable ``code`` so the API layer and the worker can
record it without string matching.
"""

from typing import Any, Dict, Optional


class CertificatePipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "PIPELINE_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class DuplicateGenerationError(CertificatePipelineError):
    """A claim already has a generated certificate that is not failed.

    Callers of ``trigger_generation`` never see this: the existing row is
    returned instead.
    """

    code = "DUPLICATE_GENERATION"

    def __init__(self, claim_id: int, certificate_id: int):
        self.claim_id = claim_id
        self.certificate_id = certificate_id
        super().__init__(
            f"Claim {claim_id} already has generated certificate {certificate_id}",
            {"claim_id": claim_id, "certificate_id": certificate_id},
        )


class ClaimNotFoundError(CertificatePipelineError):
    code = "CLAIM_NOT_FOUND"

    def __init__(self, claim_id: int):
        self.claim_id = claim_id
        super().__init__(f"Claim {claim_id} not found", {"claim_id": claim_id})


class ClaimNotPayableError(CertificatePipelineError):
    code = "CLAIM_NOT_PAYABLE"

    def __init__(self, claim_id: int, payment_state: str):
        self.claim_id = claim_id
        super().__init__(
            f"Claim {claim_id} is not paid (payment_state={payment_state})",
            {"claim_id": claim_id, "payment_state": payment_state},
        )


class TemplateNotFoundError(CertificatePipelineError):
    """No active template for a (kind, course_kind) pair."""

    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, kind: str, course_kind: str):
        self.kind = kind
        self.course_kind = course_kind
        super().__init__(
            f"No active {kind} template found for {course_kind} courses",
            {"kind": kind, "course_kind": course_kind},
        )


class TemplateNotFoundByIdError(CertificatePipelineError):
    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: int):
        super().__init__(f"Template {template_id} not found", {"template_id": template_id})


class InvalidTemplateError(CertificatePipelineError):
    code = "INVALID_TEMPLATE"


class TooManyUnitsError(CertificatePipelineError):
    """The course has more units than the transcript template has slots."""

    code = "TOO_MANY_UNITS"

    def __init__(self, unit_count: int, slots: int):
        self.unit_count = unit_count
        self.slots = slots
        super().__init__(
            f"Course has {unit_count} units but the transcript template has {slots} slots",
            {"unit_count": unit_count, "slots": slots},
        )


class ConversionFailedError(CertificatePipelineError):
    """The external converter could not produce a usable document."""

    code = "CONVERSION_FAILED"
    retryable = True


class ConversionTimeoutError(ConversionFailedError):
    code = "CONVERSION_TIMEOUT"


class ConversionProcessError(ConversionFailedError):
    code = "CONVERSION_PROCESS_ERROR"


class ConverterUnavailableError(ConversionProcessError):
    code = "CONVERTER_UNAVAILABLE"
    retryable = False


class ArtifactPersistError(CertificatePipelineError):
    code = "ARTIFACT_PERSIST_FAILED"
    retryable = True


class RegistrationAllocationError(CertificatePipelineError):
    code = "REGISTRATION_ALLOCATION_FAILED"
    retryable = True


class InvalidTransitionError(CertificatePipelineError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move a certificate from '{current}' to '{target}'",
            {"current": current, "target": target},
        )


class CertificateNotFoundError(CertificatePipelineError):
    code = "CERTIFICATE_NOT_FOUND"


class LeaseLostError(CertificatePipelineError):
    """The worker no longer holds the row it was generating."""

    code = "LEASE_LOST"

    def __init__(self, certificate_id: int, worker_id: str):
        super().__init__(
            f"Worker {worker_id} no longer holds certificate {certificate_id}",
            {"certificate_id": certificate_id, "worker_id": worker_id},
        )


class CertificateNotSettledError(CertificatePipelineError):
    """The row is not ready or delivered, so its documents cannot be touched."""

    code = "CERTIFICATE_NOT_SETTLED"

    def __init__(self, certificate_id: int, status: str):
        super().__init__(
            f"Certificate {certificate_id} is {status}; only ready or delivered documents can be reconverted",
            {"certificate_id": certificate_id, "status": status},
        )
