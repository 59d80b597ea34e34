"""
Structural Parsers — direct text extraction without OCR
═══════════════════════════════════════════════════════

The cheapest escalation level. Each parser turns raw bytes into either
extractable text or a "needs OCR" signal:

  CSV          stdlib csv (dialect sniffed), cells joined per row
  Spreadsheet  openpyxl, read-only / values only, one block per sheet
  PDF          PyMuPDF text layer; scanned PDFs (few chars per page) need OCR
  Office       python-docx paragraphs + table cells
  HTML         stdlib html.parser; script/style dropped, table rows joined per line
  JSON         flattened to "key.path: value" lines
  XML          stdlib ElementTree; "tag: text" and "tag.attr: value" lines
  RTF          control words and groups stripped, \\'hh escapes decoded
               with the declared code page (CP1251 by default)
  Plain text   UTF-8, then CP1251 (Russian-language scans), then Latin-1
  Images       never parsed — always need OCR

Format detection never trusts the declared media type alone: magic bytes
decide first; for text payloads the content prefix ({\\rtf, <!doctype html,
<?xml) wins over the filename, which wins over the declared type.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import re
import time
import zipfile
from dataclasses import dataclass
from enum import Enum
from html.parser import HTMLParser
from typing import Any, Callable
from xml.etree import ElementTree as ET

from docpipeline.core.exceptions import CorruptedFile, UnsupportedFormat

logger = logging.getLogger(__name__)

# Average characters per page below which a PDF is treated as scanned.
MIN_CHARS_PER_PAGE_THRESHOLD = 50

# Bytes inspected when deciding whether an unknown payload is text.
_TEXT_SNIFF_BYTES = 4096

_TEXT_ENCODINGS = ("utf-8-sig", "cp1251", "latin-1")


class DocumentFormat(str, Enum):
    PDF   = "pdf"
    DOCX  = "docx"
    XLSX  = "xlsx"
    CSV   = "csv"
    HTML  = "html"
    JSON  = "json"
    XML   = "xml"
    RTF   = "rtf"
    TEXT  = "text"
    IMAGE = "image"


FORMAT_MEDIA_TYPES: dict[DocumentFormat, str] = {
    DocumentFormat.PDF:   "application/pdf",
    DocumentFormat.DOCX:  "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    DocumentFormat.XLSX:  "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    DocumentFormat.CSV:   "text/csv",
    DocumentFormat.HTML:  "text/html",
    DocumentFormat.JSON:  "application/json",
    DocumentFormat.XML:   "application/xml",
    DocumentFormat.RTF:   "application/rtf",
    DocumentFormat.TEXT:  "text/plain",
    DocumentFormat.IMAGE: "image/png",
}

# Magic byte signatures checked against the start of the file
_MAGIC_BYTES: dict[bytes, DocumentFormat] = {
    b"%PDF":              DocumentFormat.PDF,
    b"\x89PNG\r\n\x1a\n": DocumentFormat.IMAGE,
    b"\xff\xd8\xff":      DocumentFormat.IMAGE,   # JPEG
    b"II*\x00":           DocumentFormat.IMAGE,   # TIFF little-endian
    b"MM\x00*":           DocumentFormat.IMAGE,   # TIFF big-endian
}

# Recognized but deliberately not parsed (legacy OLE2 .doc / .xls, executables)
_REJECTED_MAGIC: dict[bytes, str] = {
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1": "application/msword",
    b"MZ":                               "application/x-msdownload",
}

_TEXT_EXTENSIONS: dict[str, DocumentFormat] = {
    ".csv":   DocumentFormat.CSV,
    ".html":  DocumentFormat.HTML,
    ".htm":   DocumentFormat.HTML,
    ".xhtml": DocumentFormat.HTML,
    ".json":  DocumentFormat.JSON,
    ".xml":   DocumentFormat.XML,
    ".rtf":   DocumentFormat.RTF,
}

_DECLARED_TEXT_TYPES: tuple[tuple[str, DocumentFormat], ...] = (
    ("csv",  DocumentFormat.CSV),
    ("html", DocumentFormat.HTML),
    ("json", DocumentFormat.JSON),
    ("rtf",  DocumentFormat.RTF),
    ("xml",  DocumentFormat.XML),
)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class ParseResult:
    """
    text        : extracted text (empty when needs_ocr)
    confidence  : 0.0–1.0; structural parsers are near-exact when they succeed
    needs_ocr   : True for images and scanned PDFs
    parser      : name recorded in the provenance list
    page_count  : pages (PDF) or sheets (XLSX); 1 otherwise
    """
    text:       str
    confidence: float
    needs_ocr:  bool
    parser:     str
    page_count: int = 1
    elapsed_ms: float = 0.0


# ---------------------------------------------------------------------------
# Format detection
# ---------------------------------------------------------------------------

def detect_format(
    data: bytes,
    media_type: str | None = None,
    filename: str | None = None,
) -> DocumentFormat:
    """
    Classify the payload. Raises UnsupportedFormat for anything the pipeline
    cannot handle (legacy Office, executables, arbitrary binary).
    """
    head = data[:16]
    for magic, fmt in _MAGIC_BYTES.items():
        if head.startswith(magic):
            return fmt
    for magic, detected in _REJECTED_MAGIC.items():
        if head.startswith(magic):
            raise UnsupportedFormat(
                f"Format '{detected}' is not supported",
                media_type=detected,
            )

    if head.startswith(b"PK\x03\x04"):
        return _detect_ooxml(data)

    if _looks_like_text(data[:_TEXT_SNIFF_BYTES]):
        return _detect_text_format(data, (media_type or "").lower(), (filename or "").lower())

    raise UnsupportedFormat(
        f"Unrecognized binary content (declared '{media_type or 'unknown'}')",
        media_type=media_type,
    )


def _detect_text_format(data: bytes, declared: str, name: str) -> DocumentFormat:
    head = (_decode_text(data[:_TEXT_SNIFF_BYTES]) or "").lstrip("\ufeff \t\r\n")[:1024].lower()
    if head.startswith("{\\rtf"):
        return DocumentFormat.RTF
    if head.startswith("<!doctype html") or "<html" in head:
        return DocumentFormat.HTML
    if head.startswith("<?xml"):
        return DocumentFormat.XML

    for suffix, fmt in _TEXT_EXTENSIONS.items():
        if name.endswith(suffix):
            return fmt
    # xhtml+xml carries both markers; html is checked first
    for marker, fmt in _DECLARED_TEXT_TYPES:
        if marker in declared:
            return fmt

    if head[:1] in ("{", "[") and _is_json(data):
        return DocumentFormat.JSON
    return DocumentFormat.TEXT


def _is_json(data: bytes) -> bool:
    decoded = _decode_text(data)
    if decoded is None:
        return False
    try:
        json.loads(decoded)
    except ValueError:
        return False
    return True


def _detect_ooxml(data: bytes) -> DocumentFormat:
    """Tell DOCX from XLSX by the ZIP member layout."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile as exc:
        raise CorruptedFile("ZIP container is damaged") from exc

    if any(n.startswith("word/") for n in names):
        return DocumentFormat.DOCX
    if any(n.startswith("xl/") for n in names):
        return DocumentFormat.XLSX
    raise UnsupportedFormat("ZIP archive is not a DOCX or XLSX document")


def _looks_like_text(sample: bytes) -> bool:
    if not sample or b"\x00" in sample:
        return False
    return _decode_text(sample) is not None


def _decode_text(data: bytes) -> str | None:
    # Single-byte code pages decode almost any input; accept them only when
    # the result is mostly printable.
    for encoding in _TEXT_ENCODINGS:
        try:
            decoded = data.decode(encoding)
        except UnicodeDecodeError:
            continue
        if encoding.startswith("utf-8") or _mostly_printable(decoded):
            return decoded
    return None


def _mostly_printable(text: str) -> bool:
    printable = sum(1 for ch in text if ch.isprintable() or ch in "\r\n\t")
    return printable / max(len(text), 1) > 0.95


# ---------------------------------------------------------------------------
# Parsers (blocking — run in a thread executor)
# ---------------------------------------------------------------------------

def parse_text(data: bytes) -> ParseResult:
    text = _decode_text(data)
    if text is None:
        raise CorruptedFile("Text file could not be decoded")
    text = text.strip()
    return ParseResult(
        text=text,
        confidence=1.0 if text else 0.0,
        needs_ocr=False,
        parser="text",
    )


def parse_csv(data: bytes) -> ParseResult:
    decoded = _decode_text(data)
    if decoded is None:
        raise CorruptedFile("CSV file could not be decoded")

    try:
        dialect = csv.Sniffer().sniff(decoded[:_TEXT_SNIFF_BYTES], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel

    lines: list[str] = []
    try:
        for row in csv.reader(io.StringIO(decoded), dialect):
            cells = [cell.strip() for cell in row if cell and cell.strip()]
            if cells:
                lines.append(" | ".join(cells))
    except csv.Error as exc:
        raise CorruptedFile(f"Malformed CSV: {exc}") from exc

    text = "\n".join(lines)
    return ParseResult(
        text=text,
        confidence=1.0 if text else 0.0,
        needs_ocr=False,
        parser="csv",
    )


class _HtmlTextExtractor(HTMLParser):
    """Visible text, one line per block element; table cells joined with " | "."""

    _SKIPPED = frozenset({"script", "style", "noscript", "template"})
    _BLOCKS = frozenset({
        "p", "div", "br", "li", "tr", "table", "ul", "ol", "title", "section",
        "article", "header", "footer", "blockquote", "pre", "hr",
        "h1", "h2", "h3", "h4", "h5", "h6",
    })

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.lines: list[str] = []
        self._buffer: list[str] = []
        self._cells: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in self._SKIPPED:
            self._skip_depth += 1
        elif tag in self._BLOCKS:
            self._break()

    def handle_endtag(self, tag):
        if tag in self._SKIPPED:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in ("td", "th"):
            cell = self._take()
            if cell:
                self._cells.append(cell)
        elif tag in self._BLOCKS:
            self._break()

    def handle_data(self, data):
        if not self._skip_depth:
            self._buffer.append(data)

    def close(self):
        super().close()
        self._break()

    def _take(self) -> str:
        text = " ".join("".join(self._buffer).split())
        self._buffer.clear()
        return text

    def _break(self) -> None:
        text = self._take()
        if self._cells:
            if text:
                self._cells.append(text)
            text = " | ".join(self._cells)
            self._cells = []
        if text:
            self.lines.append(text)


def parse_html(data: bytes) -> ParseResult:
    decoded = _decode_text(data)
    if decoded is None:
        raise CorruptedFile("HTML file could not be decoded")

    extractor = _HtmlTextExtractor()
    extractor.feed(decoded)
    extractor.close()

    text = "\n".join(extractor.lines)
    return ParseResult(
        text=text,
        confidence=0.95 if text else 0.0,
        needs_ocr=False,
        parser="html",
    )


def _flatten_json(value: Any, path: str, lines: list[str]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten_json(item, f"{path}.{key}" if path else str(key), lines)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _flatten_json(item, f"{path}[{index}]", lines)
    elif value is not None:
        rendered = value.strip() if isinstance(value, str) else json.dumps(value)
        if rendered:
            lines.append(f"{path}: {rendered}" if path else rendered)


def parse_json(data: bytes) -> ParseResult:
    decoded = _decode_text(data)
    if decoded is None:
        raise CorruptedFile("JSON file could not be decoded")
    try:
        payload = json.loads(decoded)
    except ValueError as exc:
        raise CorruptedFile(f"Invalid JSON: {exc}") from exc

    lines: list[str] = []
    _flatten_json(payload, "", lines)
    text = "\n".join(lines)
    return ParseResult(
        text=text,
        confidence=1.0 if text else 0.0,
        needs_ocr=False,
        parser="json",
    )


def _local_name(tag: str) -> str:
    # "{urn:namespace}Name" -> "Name"
    return tag.rsplit("}", 1)[-1]


def parse_xml(data: bytes) -> ParseResult:
    """
    Element text and attributes as "tag: text" / "tag.attr: value" lines.
    Attributes matter: Russian e-invoice (UPD) XML keeps most values there.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise CorruptedFile(f"Malformed XML: {exc}") from exc

    lines: list[str] = []
    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        name = _local_name(element.tag)
        for attr, value in element.attrib.items():
            value = " ".join(value.split())
            if value:
                lines.append(f"{name}.{_local_name(attr)}: {value}")
        text = " ".join((element.text or "").split())
        if text:
            lines.append(f"{name}: {text}")
        tail = " ".join((element.tail or "").split())
        if tail and element is not root:
            lines.append(tail)

    text = "\n".join(lines)
    return ParseResult(
        text=text,
        confidence=1.0 if text else 0.0,
        needs_ocr=False,
        parser="xml",
    )


_RTF_TOKEN_RE = re.compile(
    r"\\([a-z]{1,32})(-?\d{1,10})? ?"   # control word with optional parameter
    r"|\\'([0-9a-f]{2})"                # 8-bit character in the document code page
    r"|\\([^a-z])"                      # control symbol
    r"|([{}])"
    r"|[\r\n]+"
    r"|([^\\{}\r\n]+)",
    re.IGNORECASE,
)

# Groups whose content is never document text
_RTF_DESTINATIONS = frozenset({
    "fonttbl", "colortbl", "stylesheet", "info", "pict", "object", "header",
    "footer", "headerl", "headerr", "footerl", "footerr", "listtable",
    "listoverridetable", "revtbl", "rsidtbl", "generator", "themedata",
    "colorschememapping", "datastore", "latentstyles", "xmlnstbl", "filetbl",
})

_RTF_BREAKS = frozenset({"par", "line", "row", "sect", "page"})

_RTF_CHARACTERS = {
    "tab": "\t", "cell": " | ", "emdash": "—", "endash": "–", "bullet": "•",
    "lquote": "‘", "rquote": "’", "ldblquote": "«", "rdblquote": "»",
}


def _rtf_to_text(rtf: str) -> str:
    codepage = "cp1251"
    ignorable = False
    ucskip = 1
    skip = 0
    stack: list[tuple[bool, int]] = []
    out: list[str] = []

    for match in _RTF_TOKEN_RE.finditer(rtf):
        word, param, hex_code, symbol, brace, chunk = match.groups()
        if brace == "{":
            stack.append((ignorable, ucskip))
        elif brace == "}":
            ignorable, ucskip = stack.pop() if stack else (False, 1)
        elif symbol is not None:
            if symbol == "*":
                ignorable = True
            elif ignorable:
                continue
            elif symbol in "\\{}":
                out.append(symbol)
            elif symbol == "~":
                out.append(" ")
            elif symbol == "_":
                out.append("-")
            elif symbol in "\r\n":
                out.append("\n")
        elif word is not None:
            word = word.lower()
            if word in _RTF_DESTINATIONS:
                ignorable = True
            elif word == "ansicpg" and param:
                codepage = f"cp{param}"
            elif word == "uc":
                ucskip = int(param or 1)
            elif ignorable:
                continue
            elif word == "u" and param:
                codepoint = int(param)
                out.append(chr(codepoint + 0x10000 if codepoint < 0 else codepoint))
                skip = ucskip
            elif word in _RTF_BREAKS:
                out.append("\n")
            elif word in _RTF_CHARACTERS:
                out.append(_RTF_CHARACTERS[word])
        elif hex_code is not None:
            if skip:
                skip -= 1
            elif not ignorable:
                out.append(_decode_rtf_byte(int(hex_code, 16), codepage))
        elif chunk is not None:
            if skip:
                dropped = min(skip, len(chunk))
                chunk = chunk[dropped:]
                skip -= dropped
            if not ignorable:
                out.append(chunk)

    lines = (" ".join(line.split()).rstrip(" |") for line in "".join(out).splitlines())
    return "\n".join(line for line in lines if line)


def _decode_rtf_byte(value: int, codepage: str) -> str:
    try:
        return bytes([value]).decode(codepage)
    except (LookupError, UnicodeDecodeError):
        return bytes([value]).decode("cp1251", errors="replace")


def parse_rtf(data: bytes) -> ParseResult:
    decoded = _decode_text(data)
    if decoded is None or not decoded.lstrip("\ufeff \t\r\n").startswith("{\\rtf"):
        raise CorruptedFile("Not an RTF document")

    text = _rtf_to_text(decoded)
    return ParseResult(
        text=text,
        confidence=0.95 if text else 0.0,
        needs_ocr=False,
        parser="rtf",
    )


def parse_xlsx(data: bytes) -> ParseResult:
    from openpyxl import load_workbook
    from openpyxl.utils.exceptions import InvalidFileException

    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise CorruptedFile(f"Spreadsheet could not be opened: {exc}") from exc

    blocks: list[str] = []
    try:
        for sheet in workbook.worksheets:
            rows: list[str] = []
            for row in sheet.iter_rows(values_only=True):
                cells = [str(v).strip() for v in row if v is not None and str(v).strip()]
                if cells:
                    rows.append(" | ".join(cells))
            if rows:
                blocks.append(f"# {sheet.title}\n" + "\n".join(rows))
        sheet_count = len(workbook.worksheets)
    finally:
        workbook.close()

    text = "\n\n".join(blocks)
    return ParseResult(
        text=text,
        confidence=1.0 if text else 0.0,
        needs_ocr=False,
        parser="xlsx",
        page_count=sheet_count,
    )


def parse_docx(data: bytes) -> ParseResult:
    import docx
    from docx.opc.exceptions import PackageNotFoundError

    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise CorruptedFile(f"Office document could not be opened: {exc}") from exc

    parts = [p.text.strip() for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                parts.append(" | ".join(cells))

    text = "\n".join(parts)
    return ParseResult(
        text=text,
        confidence=0.98 if text else 0.0,
        needs_ocr=not text,
        parser="docx",
    )


def parse_pdf(data: bytes, min_chars_per_page: int = MIN_CHARS_PER_PAGE_THRESHOLD) -> ParseResult:
    """
    Read the native PDF text layer with PyMuPDF.

    A PDF whose average text per page is below min_chars_per_page is
    classified as scanned: needs_ocr=True and the partial text is discarded.
    """
    import fitz  # PyMuPDF; imported here to avoid module-level import cost

    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.needs_pass:
                raise CorruptedFile("PDF is password-protected")
            if doc.page_count == 0:
                raise CorruptedFile("PDF has no pages")
            pages = [(page.get_text("text") or "").strip() for page in doc]
    except (RuntimeError, ValueError) as exc:
        # fitz.FileDataError / EmptyFileError derive from these
        raise CorruptedFile(f"PDF could not be opened: {exc}") from exc

    total_chars = sum(len(p) for p in pages)
    avg_chars = total_chars / len(pages)
    if avg_chars < min_chars_per_page:
        logger.info(
            "PDF text layer too thin | pages=%d avg_chars_per_page=%.0f",
            len(pages), avg_chars,
        )
        return ParseResult(
            text="",
            confidence=0.0,
            needs_ocr=True,
            parser="pdf_text_layer",
            page_count=len(pages),
        )

    return ParseResult(
        text="\n\n".join(p for p in pages if p),
        confidence=0.95,
        needs_ocr=False,
        parser="pdf_text_layer",
        page_count=len(pages),
    )


def _image_placeholder(data: bytes) -> ParseResult:
    return ParseResult(text="", confidence=0.0, needs_ocr=True, parser="image")


_PARSERS: dict[DocumentFormat, Callable[[bytes], ParseResult]] = {
    DocumentFormat.TEXT:  parse_text,
    DocumentFormat.CSV:   parse_csv,
    DocumentFormat.HTML:  parse_html,
    DocumentFormat.JSON:  parse_json,
    DocumentFormat.XML:   parse_xml,
    DocumentFormat.RTF:   parse_rtf,
    DocumentFormat.XLSX:  parse_xlsx,
    DocumentFormat.DOCX:  parse_docx,
    DocumentFormat.IMAGE: _image_placeholder,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def parse_document(
    data: bytes,
    fmt: DocumentFormat,
    *,
    min_chars_per_page: int = MIN_CHARS_PER_PAGE_THRESHOLD,
) -> ParseResult:
    """Run the structural parser for `fmt` off the event loop."""
    if fmt is DocumentFormat.PDF:
        func: Callable[[bytes], ParseResult] = lambda b: parse_pdf(b, min_chars_per_page)
    else:
        func = _PARSERS[fmt]

    loop = asyncio.get_running_loop()
    t0 = time.monotonic()
    result = await loop.run_in_executor(None, func, data)
    result.elapsed_ms = (time.monotonic() - t0) * 1000

    logger.info(
        "Structural parse | parser=%s chars=%d needs_ocr=%s elapsed_ms=%.0f",
        result.parser, len(result.text), result.needs_ocr, result.elapsed_ms,
    )
    return result
