"""
DOCX to PDF conversion through a headless LibreOffice process.

Each run gets its own scratch directory and its own LibreOffice user
profile, so concurrent conversions never share the profile lock. A run that
exceeds the timeout has its whole process group killed. Output is only
accepted if it exists, looks like a PDF and is above a minimum size.
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional

from ..config import Settings, get_settings
from ..errors import (
    ConversionFailedError,
    ConversionProcessError,
    ConversionTimeoutError,
    ConverterUnavailableError,
)

logger = logging.getLogger(__name__)

KNOWN_LOCATIONS = (
    "/usr/bin/soffice",
    "/usr/bin/libreoffice",
    "/usr/local/bin/soffice",
    "/opt/libreoffice/program/soffice",
    "/Applications/LibreOffice.app/Contents/MacOS/soffice",
)

PDF_MAGIC = b"%PDF-"

_slots_lock = threading.Lock()
_slots: Optional[threading.BoundedSemaphore] = None


def conversion_slots(limit: int) -> threading.BoundedSemaphore:
    """Process-wide cap on simultaneous converter processes."""
    global _slots
    with _slots_lock:
        if _slots is None:
            _slots = threading.BoundedSemaphore(limit)
        return _slots


def find_libreoffice(configured: Optional[str] = None) -> Optional[str]:
    """Locate the soffice binary, preferring an explicitly configured path."""
    if configured:
        if os.path.isfile(configured) and os.access(configured, os.X_OK):
            return configured
        return shutil.which(configured)

    for name in ("soffice", "libreoffice"):
        found = shutil.which(name)
        if found:
            return found
    for candidate in KNOWN_LOCATIONS:
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


class DocumentConverter(ABC):
    """Turns a rendered source document into its distributable form."""

    @abstractmethod
    def convert(self, source_path: Path, output_dir: Path) -> Path:
        """Convert ``source_path`` and return the path of the PDF in ``output_dir``.

        Raises:
            ConversionFailedError: If no usable output could be produced
        """


class LibreOfficeConverter(DocumentConverter):
    def __init__(
        self,
        settings: Optional[Settings] = None,
        binary: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self._binary = binary
        self._sleep = sleep

    @property
    def binary(self) -> Optional[str]:
        if self._binary is None:
            self._binary = find_libreoffice(self.settings.libreoffice_path)
        return self._binary

    def convert(self, source_path: Path, output_dir: Path) -> Path:
        """Convert with bounded retries and exponential backoff.

        Errors that are not ``retryable`` (a missing converter) are raised at once.
        """
        attempts = self.settings.conversion_max_attempts
        last_error: Optional[ConversionFailedError] = None

        for attempt in range(1, attempts + 1):
            try:
                return self._convert_once(Path(source_path), Path(output_dir))
            except ConversionFailedError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning(
                    f"Conversion of {Path(source_path).name} failed (attempt {attempt}/{attempts}): {e}"
                )
                if attempt < attempts:
                    self._sleep(self.settings.conversion_backoff_seconds * 2 ** (attempt - 1))

        assert last_error is not None
        raise last_error

    def _command(self, binary: str, profile: Path, outdir: Path, source: Path) -> List[str]:
        return [
            binary,
            f"-env:UserInstallation={profile.as_uri()}",
            "--headless",
            "--norestore",
            "--nologo",
            "--convert-to",
            "pdf",
            "--outdir",
            str(outdir),
            str(source),
        ]

    def _convert_once(self, source: Path, output_dir: Path) -> Path:
        binary = self.binary
        if not binary:
            raise ConverterUnavailableError(
                "LibreOffice (soffice) not found; set LIBREOFFICE_PATH or install it"
            )

        filename = source.name
        timeout = self.settings.conversion_timeout_seconds
        with tempfile.TemporaryDirectory(prefix="certificate-convert-") as workdir:
            work = Path(workdir)
            profile = work / "profile"
            outdir = work / "out"
            profile.mkdir()
            outdir.mkdir()
            source_path = work / filename
            shutil.copyfile(source, source_path)

            command = self._command(binary, profile, outdir, source_path)
            with conversion_slots(self.settings.converter_concurrency):
                started = time.monotonic()
                try:
                    process = subprocess.Popen(
                        command,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.PIPE,
                        start_new_session=True,
                    )
                except OSError as e:
                    raise ConverterUnavailableError(f"Cannot start converter {binary}: {e}") from e

                try:
                    _, stderr = process.communicate(timeout=timeout)
                except subprocess.TimeoutExpired as e:
                    _kill_process_group(process)
                    process.communicate()
                    raise ConversionTimeoutError(
                        f"Conversion of {filename} timed out after {timeout:g}s",
                        {"timeout_seconds": timeout},
                    ) from e

            elapsed = time.monotonic() - started
            if process.returncode != 0:
                raise ConversionProcessError(
                    f"Converter exited with code {process.returncode}: {_tail(stderr)}",
                    {"returncode": process.returncode},
                )

            output = outdir / (source_path.stem + ".pdf")
            if not output.is_file():
                raise ConversionProcessError(f"Converter produced no output for {filename}")

            size = output.stat().st_size
            if size < self.settings.conversion_min_bytes:
                raise ConversionProcessError(
                    f"Converted {filename} is only {size} bytes",
                    {"size": size, "min_bytes": self.settings.conversion_min_bytes},
                )
            with open(output, "rb") as f:
                if f.read(len(PDF_MAGIC)) != PDF_MAGIC:
                    raise ConversionProcessError(f"Converted {filename} is not a PDF")

            output_dir.mkdir(parents=True, exist_ok=True)
            target = output_dir / output.name
            shutil.move(str(output), str(target))

        logger.info(f"Converted {filename} to PDF ({size} bytes, {elapsed:.1f}s)")
        return target


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _tail(stderr: Optional[bytes], limit: int = 500) -> str:
    if not stderr:
        return "no output"
    return stderr.decode("utf-8", errors="replace").strip()[-limit:]
