"""
Tests for the LibreOffice converter.

A shell script stands in for soffice: it receives the same command line and
writes (or fails to write) into --outdir.
"""

import os
import stat
import time

import pytest

from certificate_pipeline.errors import (
    ConversionProcessError,
    ConversionTimeoutError,
    ConverterUnavailableError,
)
from certificate_pipeline.worker.converter import LibreOfficeConverter, find_libreoffice

pytestmark = pytest.mark.skipif(os.name != "posix", reason="fake soffice is a POSIX shell script")

# Leaves $outdir and $last (the source document) set
PARSE_ARGS = """#!/bin/sh
while [ $# -gt 0 ]; do
  case "$1" in
    --outdir) shift; outdir="$1" ;;
  esac
  last="$1"
  shift
done
name=$(basename "$last")
out="$outdir/${name%.*}.pdf"
"""

WRITE_PDF = PARSE_ARGS + """
printf '%%PDF-1.4\\n' > "$out"
head -c 2048 /dev/zero >> "$out"
"""


def fake_soffice(tmp_path, body: str, name: str = "soffice") -> str:
    script = tmp_path / name
    script.write_text(body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "Certificate_ILC000001.docx"
    path.write_bytes(b"PK docx")
    return path


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_converter(settings, sleeps):
    def _make(binary, **overrides):
        converter_settings = settings.model_copy(update=overrides)
        return LibreOfficeConverter(converter_settings, binary=binary, sleep=sleeps.append)

    return _make


class TestConvert:
    def test_success(self, tmp_path, source, make_converter):
        converter = make_converter(fake_soffice(tmp_path, WRITE_PDF))
        output = converter.convert(source, tmp_path / "output")

        assert output == tmp_path / "output" / "Certificate_ILC000001.pdf"
        assert output.read_bytes().startswith(b"%PDF-")
        assert output.stat().st_size >= 1024

    def test_source_is_not_modified(self, tmp_path, source, make_converter):
        converter = make_converter(fake_soffice(tmp_path, WRITE_PDF))
        converter.convert(source, tmp_path / "output")
        assert source.read_bytes() == b"PK docx"

    def test_nonzero_exit(self, tmp_path, source, make_converter, sleeps):
        script = fake_soffice(tmp_path, "#!/bin/sh\necho 'source file could not be loaded' >&2\nexit 3\n")
        converter = make_converter(script, conversion_max_attempts=1)

        with pytest.raises(ConversionProcessError) as exc:
            converter.convert(source, tmp_path / "output")
        assert exc.value.details["returncode"] == 3
        assert "could not be loaded" in exc.value.message
        assert sleeps == []

    def test_no_output(self, tmp_path, source, make_converter):
        converter = make_converter(fake_soffice(tmp_path, "#!/bin/sh\nexit 0\n"), conversion_max_attempts=1)
        with pytest.raises(ConversionProcessError, match="no output"):
            converter.convert(source, tmp_path / "output")

    def test_output_below_minimum_size(self, tmp_path, source, make_converter):
        script = fake_soffice(tmp_path, PARSE_ARGS + "printf '%%PDF-1.4' > \"$out\"\n")
        converter = make_converter(script, conversion_max_attempts=1)

        with pytest.raises(ConversionProcessError) as exc:
            converter.convert(source, tmp_path / "output")
        assert exc.value.details["min_bytes"] == 1024
        assert not (tmp_path / "output" / "Certificate_ILC000001.pdf").exists()

    def test_output_not_a_pdf(self, tmp_path, source, make_converter):
        script = fake_soffice(tmp_path, PARSE_ARGS + 'head -c 4096 /dev/zero > "$out"\n')
        converter = make_converter(script, conversion_max_attempts=1)

        with pytest.raises(ConversionProcessError, match="not a PDF"):
            converter.convert(source, tmp_path / "output")

    def test_timeout_kills_process(self, tmp_path, source, make_converter):
        script = fake_soffice(tmp_path, "#!/bin/sh\nsleep 30\n")
        converter = make_converter(script, conversion_timeout_seconds=0.5, conversion_max_attempts=1)

        started = time.monotonic()
        with pytest.raises(ConversionTimeoutError):
            converter.convert(source, tmp_path / "output")
        assert time.monotonic() - started < 10

    def test_retries_with_backoff(self, tmp_path, source, make_converter, sleeps):
        counter = tmp_path / "runs"
        script = fake_soffice(tmp_path, f"#!/bin/sh\necho run >> {counter}\nexit 1\n")
        converter = make_converter(script, conversion_max_attempts=3, conversion_backoff_seconds=1.5)

        with pytest.raises(ConversionProcessError):
            converter.convert(source, tmp_path / "output")

        assert counter.read_text().count("run") == 3
        assert sleeps == [1.5, 3.0]

    def test_recovers_on_retry(self, tmp_path, source, make_converter, sleeps):
        marker = tmp_path / "first-run-done"
        body = PARSE_ARGS + f"""
if [ ! -f {marker} ]; then
  touch {marker}
  exit 1
fi
printf '%%PDF-1.4\\n' > "$out"
head -c 2048 /dev/zero >> "$out"
"""
        converter = make_converter(fake_soffice(tmp_path, body), conversion_max_attempts=3)

        output = converter.convert(source, tmp_path / "output")
        assert output.is_file()
        assert len(sleeps) == 1


class TestUnavailable:
    def test_missing_binary_is_not_retried(self, tmp_path, source, make_converter, sleeps):
        converter = make_converter(str(tmp_path / "no-such-soffice"), conversion_max_attempts=3)

        with pytest.raises(ConverterUnavailableError):
            converter.convert(source, tmp_path / "output")
        assert sleeps == []

    def test_unconfigured_and_not_installed(self, tmp_path, source, settings, monkeypatch):
        monkeypatch.setattr(
            "certificate_pipeline.worker.converter.find_libreoffice", lambda configured=None: None
        )
        converter = LibreOfficeConverter(settings)

        with pytest.raises(ConverterUnavailableError):
            converter.convert(source, tmp_path / "output")

    def test_find_configured_path(self, tmp_path):
        script = fake_soffice(tmp_path, WRITE_PDF)
        assert find_libreoffice(script) == script

    def test_find_configured_missing(self, tmp_path):
        assert find_libreoffice(str(tmp_path / "missing-soffice")) is None
