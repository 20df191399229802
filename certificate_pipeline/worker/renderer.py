"""
Template renderer for certificate and transcript DOCX templates.

Templates are ordinary Word documents containing ``{{TOKEN}}`` placeholders.
Word often splits what the author typed as one token across several runs
(``{{`` in one ``<w:r>``, ``STUDENT_NAME}}`` in the next), so a placeholder
is matched with any markup allowed between its characters. The value is
written where the token's text began and the intervening tags are kept, so
the document XML stays well-formed and its formatting is untouched.

Only the closed vocabulary below is substituted. Anything else, including
unknown ``{{...}}`` tokens, is left byte-identical, and a template without a
single known token comes back exactly as it went in.
"""
from __future__ import annotations

import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence
from xml.sax.saxutils import escape

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.services import TemplateService
from ..errors import InvalidTemplateError, TooManyUnitsError
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

SCALAR_TOKENS = frozenset(
    {
        "STUDENT_NAME",
        "COURSE_NAME",
        "REGISTRATION_NO",
        "DATE_OF_ISSUANCE",
        "COMPLETION_DATE",
        "DATE",
        "Date",
        "COURSE_LEVEL",
    }
)
UNIT_TOKEN_RE = re.compile(r"^UNIT_(\d+)_(NAME|CREDITS)$")

# Parts of a DOCX package that carry visible text
TEXT_PART_RE = re.compile(r"^word/(document|header\d*|footer\d*|footnotes|endnotes)\.xml$")

_TAG = r"<[^>]*>"
PLACEHOLDER_RE = re.compile(
    r"\{(?:" + _TAG + r")*\{"  # opening braces, possibly split by markup
    r"((?:[^{}<]|" + _TAG + r")*?)"  # token text interleaved with markup
    r"\}(?:" + _TAG + r")*\}"  # closing braces
)
TAG_RE = re.compile(_TAG)

LINE_BREAK = '</w:t><w:br/><w:t xml:space="preserve">'

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@dataclass
class TemplateSnapshot:
    """An active template's content, read once when an attempt starts."""

    template_id: int
    kind: str
    course_kind: str
    name: str
    source_path: str
    content: bytes


@dataclass
class RenderedDocument:
    """Result of filling a template."""

    content: bytes
    template_id: Optional[int]
    substituted: List[str] = field(default_factory=list)


def is_known_token(token: str, unit_slots: int) -> bool:
    if token in SCALAR_TOKENS:
        return True
    match = UNIT_TOKEN_RE.match(token)
    return bool(match) and 1 <= int(match.group(1)) <= unit_slots


def format_issue_date(value: Optional[date]) -> str:
    """Format a date the way it is printed on certificates: 1st January 2026."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        value = value.date()
    day = value.day
    if 11 <= day <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix} {value.strftime('%B')} {value.year}"


def _xml_value(value: Any) -> str:
    text = "" if value is None else str(value)
    return escape(text).replace("\r\n", "\n").replace("\n", LINE_BREAK)


def substitute_placeholders(
    xml: str, fields: Mapping[str, Any], unit_slots: int, substituted: List[str]
) -> str:
    """Replace known placeholders in one XML part."""

    def _replace(match: "re.Match[str]") -> str:
        token = TAG_RE.sub("", match.group(1)).strip()
        if not is_known_token(token, unit_slots):
            return match.group(0)
        substituted.append(token)
        tags = "".join(TAG_RE.findall(match.group(0)))
        return _xml_value(fields.get(token, "")) + tags

    return PLACEHOLDER_RE.sub(_replace, xml)


def _open_docx(content: bytes) -> zipfile.ZipFile:
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise InvalidTemplateError(f"Template is not a DOCX file: {e}") from e
    if "word/document.xml" not in archive.namelist():
        archive.close()
        raise InvalidTemplateError("Template has no word/document.xml part")
    return archive


def _read_part(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    try:
        return archive.read(info)
    except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError) as e:
        raise InvalidTemplateError(f"Template part {info.filename} is corrupt: {e}") from e


def _read_text_part(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> str:
    try:
        return _read_part(archive, info).decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidTemplateError(f"Template part {info.filename} is not UTF-8: {e}") from e


def find_placeholders(content: bytes) -> List[str]:
    """List every ``{{...}}`` token in a DOCX, in document order, known or not.

    Raises:
        InvalidTemplateError: The package or one of its text parts is unreadable
    """
    tokens: List[str] = []
    with _open_docx(content) as archive:
        for info in archive.infolist():
            if not TEXT_PART_RE.match(info.filename):
                continue
            xml = _read_text_part(archive, info)
            for match in PLACEHOLDER_RE.finditer(xml):
                tokens.append(TAG_RE.sub("", match.group(1)).strip())
    return tokens


def validate_template(content: bytes) -> List[str]:
    """Check that ``content`` is a usable DOCX template and return its tokens.

    Every member is decompressed so damage outside the text parts is caught
    at upload rather than at render time.
    """
    tokens = find_placeholders(content)
    with _open_docx(content) as archive:
        for info in archive.infolist():
            _read_part(archive, info)
    return tokens


def fill_template(content: bytes, fields: Mapping[str, Any], unit_slots: int) -> RenderedDocument:
    """Fill every text part of a DOCX package.

    Unchanged parts are copied through as-is; when nothing changes at all the
    original bytes are returned.
    """
    substituted: List[str] = []
    changed = False
    output = io.BytesIO()

    with _open_docx(content) as archive:
        with zipfile.ZipFile(output, "w") as rendered:
            for info in archive.infolist():
                if TEXT_PART_RE.match(info.filename):
                    xml = _read_text_part(archive, info)
                    new_xml = substitute_placeholders(xml, fields, unit_slots, substituted)
                    data = new_xml.encode("utf-8")
                    changed = changed or new_xml != xml
                else:
                    data = _read_part(archive, info)
                rendered.writestr(info, data)

    if not changed:
        return RenderedDocument(content=content, template_id=None, substituted=substituted)
    return RenderedDocument(content=output.getvalue(), template_id=None, substituted=substituted)


def _unit_title(unit: Any, position: int) -> str:
    if isinstance(unit, Mapping):
        return str(unit.get("title") or unit.get("name") or f"Unit {position}")
    return str(unit)


def _unit_credits(unit: Any, default_credits: int) -> int:
    if isinstance(unit, Mapping):
        credits = unit.get("credits", unit.get("cpd_credits"))
        if credits is not None:
            return int(credits)
    return default_credits


def check_unit_capacity(units: Sequence[Any], slots: int, policy: str) -> None:
    """Reject unit lists the transcript cannot represent under ``reject``."""
    if len(units) > slots and policy == "reject":
        raise TooManyUnitsError(len(units), slots)


def build_unit_fields(
    units: Sequence[Any],
    slots: int,
    policy: str,
    course_kind: str,
    default_credits: int,
) -> Dict[str, str]:
    """Bind an ordered unit list to the fixed transcript slots.

    Unused slots render empty. With more units than slots, ``reject`` raises
    and ``truncate`` turns the last slot into a note about the rest.
    """
    check_unit_capacity(units, slots, policy)
    label = "CPD Credits" if course_kind == "cpd" else "Credits"

    shown: List[Any] = list(units)
    overflow = 0
    if len(shown) > slots:
        overflow = len(shown) - (slots - 1)
        shown = shown[: slots - 1]

    values: Dict[str, str] = {}
    for index in range(1, slots + 1):
        values[f"UNIT_{index}_NAME"] = ""
        values[f"UNIT_{index}_CREDITS"] = ""

    for index, unit in enumerate(shown, start=1):
        values[f"UNIT_{index}_NAME"] = _unit_title(unit, index)
        values[f"UNIT_{index}_CREDITS"] = f"({_unit_credits(unit, default_credits)} {label})"

    if overflow:
        values[f"UNIT_{slots}_NAME"] = f"... and {overflow} more units"
    return values


def course_name_for(claim) -> str:
    if claim.certificate_name and claim.certificate_name.strip():
        return claim.certificate_name.strip()
    return claim.course_title


def build_certificate_fields(claim, registration_number: str, issued_on: date) -> Dict[str, str]:
    issue_date = format_issue_date(issued_on)
    return {
        "REGISTRATION_NO": registration_number,
        "STUDENT_NAME": claim.display_name,
        "COURSE_NAME": course_name_for(claim),
        "DATE_OF_ISSUANCE": issue_date,
        "DATE": issue_date,
        "Date": issue_date,
        "COMPLETION_DATE": format_issue_date(claim.claimed_at),
    }


def build_transcript_fields(
    claim,
    registration_number: str,
    issued_on: date,
    settings: Optional[Settings] = None,
) -> Dict[str, str]:
    settings = settings or get_settings()
    default_level = "CPD Certificate" if claim.course_kind == "cpd" else "Qualification"
    fields = {
        "REGISTRATION_NO": registration_number,
        "STUDENT_NAME": claim.display_name,
        "COURSE_NAME": course_name_for(claim),
        "COURSE_LEVEL": claim.course_level or default_level,
        "DATE_OF_ISSUANCE": format_issue_date(issued_on),
        "COMPLETION_DATE": format_issue_date(claim.claimed_at),
    }
    fields.update(
        build_unit_fields(
            claim.units or [],
            settings.transcript_unit_slots,
            settings.unit_overflow_policy,
            claim.course_kind,
            settings.default_unit_credits,
        )
    )
    return fields


class TemplateRenderer:
    """Loads active templates and fills them with claim data."""

    def __init__(self, store: ArtifactStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def load(self, db: Session, kind: str, course_kind: str) -> TemplateSnapshot:
        """Read the active template for (kind, course_kind) into memory.

        Raises:
            TemplateNotFoundError: If no template is active for the pair
        """
        template = TemplateService(db).get_active_template(kind, course_kind)
        content = self.store.read_bytes(template.source_path)
        logger.debug(f"Loaded {kind} template {template.id} ({template.name}) for {course_kind}")
        return TemplateSnapshot(
            template_id=template.id,
            kind=template.kind,
            course_kind=template.course_kind,
            name=template.name,
            source_path=template.source_path,
            content=content,
        )

    def render_snapshot(
        self, snapshot: TemplateSnapshot, fields: Mapping[str, Any]
    ) -> RenderedDocument:
        rendered = fill_template(snapshot.content, fields, self.settings.transcript_unit_slots)
        rendered.template_id = snapshot.template_id
        return rendered

    def render(
        self, db: Session, kind: str, course_kind: str, fields: Mapping[str, Any]
    ) -> RenderedDocument:
        """Render the active template for (kind, course_kind) with ``fields``."""
        return self.render_snapshot(self.load(db, kind, course_kind), fields)
