"""
Certificate Worker - turns paid claims into certificate and transcript documents.

Usage:
    python -m certificate_pipeline.worker

Components:
    - loop: Main worker loop (enqueue, reclaim, claim, generate)
    - pipeline: Stages of one generation attempt
    - allocator: Registration numbers
    - renderer: DOCX template filling
    - converter: DOCX to PDF via LibreOffice
    - storage: Artifact storage abstraction (file:// today)
    - state: Status transitions and worker leases
"""

from .allocator import RegistrationAllocator, format_registration_number
from .converter import DocumentConverter, LibreOfficeConverter, find_libreoffice
from .loop import WorkerLoop, run_worker
from .pipeline import GenerationPipeline, build_pipeline
from .renderer import TemplateRenderer, format_issue_date
from .state import ALLOWED_TRANSITIONS, CertificateStatus, transition
from .storage import ArtifactStore, FileArtifactStore, create_artifact_store

__all__ = [
    "WorkerLoop",
    "run_worker",
    "GenerationPipeline",
    "build_pipeline",
    "RegistrationAllocator",
    "format_registration_number",
    "TemplateRenderer",
    "format_issue_date",
    "DocumentConverter",
    "LibreOfficeConverter",
    "find_libreoffice",
    "ArtifactStore",
    "FileArtifactStore",
    "create_artifact_store",
    "CertificateStatus",
    "ALLOWED_TRANSITIONS",
    "transition",
]
