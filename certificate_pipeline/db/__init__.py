"""
Database package for the Certificate Pipeline.
"""

from .base import Base, create_tables, get_db, get_engine, get_session_local
from .models import (
    CertificateClaimModel,
    CertificateTemplateModel,
    GeneratedCertificateModel,
    RegistrationSequenceModel,
)

__all__ = [
    "Base",
    "create_tables",
    "get_db",
    "get_engine",
    "get_session_local",
    "CertificateClaimModel",
    "CertificateTemplateModel",
    "GeneratedCertificateModel",
    "RegistrationSequenceModel",
]
