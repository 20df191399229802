"""
Certificate Pipeline

Turns paid course claims into numbered certificates and transcripts.
"""

import importlib.metadata

__version__ = importlib.metadata.version("certificate-pipeline")

from .certificates import CertificateOperations
from .errors import CertificatePipelineError

__all__ = [
    "CertificateOperations",
    "CertificatePipelineError",
]
