from __future__ import annotations

import html
import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from xml.etree import ElementTree as ET

import filetype

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".csv", ".xlsx", ".cdf", ".jdx", ".dx"}

# Extensions that name the same on-disk format.
EQUIVALENT_EXTENSIONS = {
    ".dx": ".jdx",
}

ANALYSIS_CATEGORIES = {
    ".cdf": "chromatography",
    ".jdx": "spectroscopy",
    ".csv": "tabular_csv",
    ".xlsx": "tabular_spreadsheet",
}

DETECTED_MIME_TYPES = {
    ".cdf": "application/x-netcdf",
    ".jdx": "chemical/x-jcamp-dx",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".txt": "text/plain",
}

MAX_FILENAME_LENGTH = 255
TEXT_PRINTABLE_RATIO = 0.95
TEXT_SNIFF_BYTES = 64 * 1024
SINGLE_COLUMN_SNIFF_LINES = 50
SINGLE_COLUMN_MAX_CELL = 128
_NUMERIC_CELL = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")
ARCHIVE_MAX_ENTRY_SIZE_BYTES = 50 * 1024 * 1024
ARCHIVE_MAX_TOTAL_UNCOMPRESSED_BYTES = 200 * 1024 * 1024
ARCHIVE_MAX_COMPRESSION_RATIO = 200

RESERVED_WINDOWS_NAMES = {
    "con",
    "prn",
    "aux",
    "nul",
    *(f"com{index}" for index in range(1, 10)),
    *(f"lpt{index}" for index in range(1, 10)),
}

EXECUTABLE_SIGNATURES: list[tuple[bytes, str]] = [
    (b"MZ", "PE/DOS executable"),
    (b"\x7fELF", "ELF executable"),
    (b"\xfe\xed\xfa\xce", "Mach-O executable"),
    (b"\xfe\xed\xfa\xcf", "Mach-O executable"),
    (b"\xce\xfa\xed\xfe", "Mach-O executable"),
    (b"\xcf\xfa\xed\xfe", "Mach-O executable"),
    (b"\xca\xfe\xba\xbe", "Java class or universal binary"),
    (b"#!", "interpreter script"),
]

SCRIPT_MARKUP_PATTERNS = [
    re.compile(r"<\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    # Event handlers only count inside a tag; bare "concentration=" in data is fine.
    re.compile(r"<[a-z][^>]*\son[a-z]+\s*=", re.IGNORECASE),
    re.compile(r"<\s*iframe", re.IGNORECASE),
    re.compile(r"<\s*object", re.IGNORECASE),
    re.compile(r"<\s*embed", re.IGNORECASE),
]

SERVER_SCRIPT_PATTERNS = [
    re.compile(r"<\?php", re.IGNORECASE),
    re.compile(r"<\?="),
    re.compile(r"<%[\s\S]*?%>"),
]

THREAT_MESSAGES = {
    "executable": "Executable file signature detected.",
    "script_markup": "Script content detected in uploaded file.",
    "server_script": "Server-side script code detected.",
    "macro": "Macro-enabled content detected in spreadsheet.",
    "archive_bomb": "Spreadsheet archive exceeds safe decompression limits.",
    "path_traversal": "Unsafe member path detected in spreadsheet archive.",
}


@dataclass(frozen=True)
class ContentValidationResult:
    status: str
    message: str
    detected_type: str | None = None
    detected_mime: str | None = None
    threat_category: str | None = None
    threats: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.status == "success"

    @property
    def category(self) -> str | None:
        return analysis_category_for(self.detected_type)


@dataclass(frozen=True)
class FilenameCheck:
    safe: bool
    reason: str | None = None


def normalize_extension(filename: str) -> str:
    return Path(filename or "").suffix.lower().strip()


def canonical_extension(extension: str) -> str:
    return EQUIVALENT_EXTENSIONS.get(extension, extension)


def analysis_category_for(detected_type: str | None) -> str | None:
    if not detected_type:
        return None
    return ANALYSIS_CATEGORIES.get(canonical_extension(detected_type))


def check_filename_safety(filename: str) -> FilenameCheck:
    """Reject names that could address anything outside a single directory entry."""

    if not filename or not filename.strip():
        return FilenameCheck(False, "Filename must not be empty.")
    if len(filename) > MAX_FILENAME_LENGTH:
        return FilenameCheck(False, "Filename is too long.")
    if "\x00" in filename:
        return FilenameCheck(False, "Filename contains a null byte.")
    if any(ord(char) < 32 or ord(char) == 127 for char in filename):
        return FilenameCheck(False, "Filename contains control characters.")
    if "/" in filename or "\\" in filename:
        return FilenameCheck(False, "Filename must not contain path separators.")
    if ".." in filename:
        return FilenameCheck(False, "Filename must not contain parent-directory segments.")
    if re.match(r"^[A-Za-z]:", filename):
        return FilenameCheck(False, "Filename must not start with a drive letter.")
    if re.search(r'[<>:"|?*]', filename):
        return FilenameCheck(False, "Filename contains reserved characters.")
    if filename.startswith("~"):
        return FilenameCheck(False, "Filename must not start with '~'.")
    if filename.strip() != filename or filename.endswith("."):
        return FilenameCheck(False, "Filename must not start or end with whitespace or a dot.")
    base = filename.split(".", 1)[0].lower()
    if base in RESERVED_WINDOWS_NAMES:
        return FilenameCheck(False, "Filename uses a reserved device name.")
    return FilenameCheck(True)


def _is_unsafe_archive_name(name: str) -> bool:
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        return True
    parts = [segment for segment in normalized.split("/") if segment]
    return any(segment == ".." for segment in parts)


def _decode_text(content: bytes) -> str | None:
    sample = content[:TEXT_SNIFF_BYTES]
    if b"\x00" in sample:
        return None
    try:
        text = sample.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        # A multi-byte character may be cut at the sample boundary.
        if len(content) > TEXT_SNIFF_BYTES and exc.start >= len(sample) - 3:
            text = sample[: exc.start].decode("utf-8-sig")
        else:
            return None
    if not text:
        return None
    printable = sum(1 for char in text if char.isprintable() or char in "\r\n\t")
    if printable / len(text) < TEXT_PRINTABLE_RATIO:
        return None
    return text


def _looks_like_jcamp(text: str) -> bool:
    head = [line.strip().upper() for line in text.splitlines()[:40] if line.strip()]
    if not head:
        return False
    if head[0].startswith("##TITLE="):
        return True
    return any(line.startswith("##JCAMP-DX=") or line.startswith("##JCAMPDX=") for line in head)


def _looks_like_delimited_table(text: str) -> bool:
    lines = [line for line in text.splitlines()[:SINGLE_COLUMN_SNIFF_LINES] if line.strip()]
    if not lines:
        return False
    if any(delimiter in lines[0] for delimiter in (",", ";", "\t", "|")):
        return True
    return _looks_like_single_column(lines)


def _looks_like_single_column(lines: list[str]) -> bool:
    # header plus short cells, mostly numeric
    values = [line.strip() for line in lines[1:]]
    if not values or any(len(line.strip()) > SINGLE_COLUMN_MAX_CELL for line in lines):
        return False
    numeric = sum(1 for value in values if _NUMERIC_CELL.fullmatch(value))
    return numeric * 2 >= len(values)


def _is_spreadsheet_archive(content: bytes) -> bool:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            return "xl/workbook.xml" in archive.namelist()
    except (zipfile.BadZipFile, OSError, ValueError):
        return False


def sniff_content_type(content: bytes) -> tuple[str | None, str | None]:
    """Return (extension, mime) determined from bytes alone."""

    if content.startswith((b"CDF\x01", b"CDF\x02")):
        return ".cdf", DETECTED_MIME_TYPES[".cdf"]
    if content.startswith(b"PK\x03\x04") and _is_spreadsheet_archive(content):
        return ".xlsx", DETECTED_MIME_TYPES[".xlsx"]

    # Text first: filetype reads any leading "MZ" as a PE header, which a CSV column may start with.
    text = _decode_text(content)
    if text is not None:
        if _looks_like_jcamp(text):
            return ".jdx", DETECTED_MIME_TYPES[".jdx"]
        if _looks_like_delimited_table(text):
            return ".csv", DETECTED_MIME_TYPES[".csv"]
        return ".txt", DETECTED_MIME_TYPES[".txt"]

    kind = filetype.guess(content)
    if kind is not None:
        return f".{kind.extension}", kind.mime
    return None, None


def _has_executable_header(content: bytes) -> bool:
    for signature, _label in EXECUTABLE_SIGNATURES:
        if not content.startswith(signature):
            continue
        # A real DOS stub carries NUL padding; "MZ" alone may be a column name.
        if signature == b"MZ" and b"\x00" not in content[:512]:
            continue
        return True
    return False


def _scan_text(text: str) -> list[str]:
    threats: list[str] = []
    if any(pattern.search(text) for pattern in SCRIPT_MARKUP_PATTERNS):
        threats.append("script_markup")
    if any(pattern.search(text) for pattern in SERVER_SCRIPT_PATTERNS):
        threats.append("server_script")
    return threats


def _collect_xml_text(payload: bytes) -> str:
    root = ET.fromstring(payload)
    return "\n".join(element.text for element in root.iter() if element.text and element.text.strip())


def _scan_spreadsheet(content: bytes) -> list[str]:
    threats: list[str] = []
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            infos = archive.infolist()
            total_uncompressed = 0
            for info in infos:
                if _is_unsafe_archive_name(info.filename):
                    return ["path_traversal"]
                total_uncompressed += info.file_size
                ratio = info.file_size / max(1, info.compress_size)
                if (
                    info.file_size > ARCHIVE_MAX_ENTRY_SIZE_BYTES
                    or total_uncompressed > ARCHIVE_MAX_TOTAL_UNCOMPRESSED_BYTES
                    or ratio > ARCHIVE_MAX_COMPRESSION_RATIO
                ):
                    return ["archive_bomb"]
                if info.filename.lower().endswith("vbaproject.bin"):
                    threats.append("macro")

            texts: list[str] = []
            for info in infos:
                name = info.filename
                if name == "xl/sharedStrings.xml" or (name.startswith("xl/worksheets/") and name.endswith(".xml")):
                    texts.append(html.unescape(_collect_xml_text(archive.read(info))))
    except (zipfile.BadZipFile, ET.ParseError, OSError, ValueError):
        return threats

    for threat in _scan_text("\n".join(texts)):
        if threat not in threats:
            threats.append(threat)
    return threats


def scan_content(content: bytes, detected_type: str | None) -> list[str]:
    """Return the threat categories present in the content, in a stable order."""

    threats: list[str] = []
    if _has_executable_header(content):
        threats.append("executable")

    if detected_type == ".xlsx":
        threats.extend(threat for threat in _scan_spreadsheet(content) if threat not in threats)
    elif detected_type in {".csv", ".jdx", ".txt"}:
        text = content.decode("latin-1")
        threats.extend(threat for threat in _scan_text(text) if threat not in threats)
    return threats


def _reject(message: str, **kwargs) -> ContentValidationResult:
    return ContentValidationResult(status="error", message=message, **kwargs)


def validate_content(
    content: bytes,
    filename: str,
    allowed_extensions: set[str] | None = None,
) -> ContentValidationResult:
    allowed = {canonical_extension(ext) for ext in (allowed_extensions or ALLOWED_EXTENSIONS)}
    declared = canonical_extension(normalize_extension(filename))

    if not content:
        return _reject("Empty uploads are not allowed.")

    detected_type, detected_mime = sniff_content_type(content)
    if detected_type is None:
        return _reject("Unable to determine file type from content.")
    detected_type = canonical_extension(detected_type)

    if detected_type not in allowed:
        if declared and declared != detected_type:
            message = (
                f"File extension {declared} does not match detected type {detected_type}; "
                f"{detected_type} files are not allowed."
            )
        else:
            message = f"File type {detected_type} is not allowed."
        return _reject(message, detected_type=detected_type, detected_mime=detected_mime)

    if declared != detected_type:
        return _reject(
            f"File extension {declared or '(none)'} does not match detected type {detected_type}.",
            detected_type=detected_type,
            detected_mime=detected_mime,
        )

    threats = scan_content(content, detected_type)
    if threats:
        return _reject(
            THREAT_MESSAGES.get(threats[0], "Potentially malicious content detected."),
            detected_type=detected_type,
            detected_mime=detected_mime,
            threat_category=threats[0],
            threats=threats,
        )

    return ContentValidationResult(
        status="success",
        message="File accepted for analysis.",
        detected_type=detected_type,
        detected_mime=detected_mime,
    )
