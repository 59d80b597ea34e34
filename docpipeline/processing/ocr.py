"""
OCR Provider Adapters
═════════════════════

Every OCR backend implements the same OcrProvider capability:

    provider.supports(fmt)             -> bool
    await provider.attempt(data, fmt)  -> ProviderExtraction
                                          (raises ProviderError subclasses,
                                           CorruptedFile, FileTooLarge)

The orchestrator iterates a declared, ordered list of providers; adding a
backend means implementing this interface, not editing the escalation loop.

  Level 2: TextractProvider (cloud)
    - AWS Textract DetectDocumentText, per page
    - Network / auth / throttling errors → ProviderUnavailable (fallback)
    - Bad or oversized documents → CorruptedFile / FileTooLarge

  Level 3: TesseractProvider (local)
    - pytesseract + Pillow, fully offline
    - PDFs rasterized page by page with PyMuPDF
    - The tesseract subprocess is killed at the provider timeout

Both return word-level mean confidence normalized to 0.0–1.0.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from docpipeline.core.config import settings
from docpipeline.core.exceptions import (
    CorruptedFile,
    FileTooLarge,
    ProviderTimeout,
    ProviderUnavailable,
)
from docpipeline.processing.parsers import DocumentFormat
from docpipeline.schemas.documents import StepKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Pages OCR'd per document; later pages are ignored (invoices/waybills are short)
OCR_MAX_PAGES = 20

_OCR_FORMATS = frozenset({DocumentFormat.PDF, DocumentFormat.IMAGE})


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ProviderExtraction:
    """
    Successful output of one provider attempt.

    text       : page texts joined with blank lines
    confidence : mean word confidence (0.0–1.0)
    page_count : pages actually processed
    """
    text:       str
    confidence: float
    provider:   str
    page_count: int = 1
    elapsed_ms: float = 0.0


class OcrProvider(ABC):
    """
    Abstract OCR backend.

    Implementations:
      - Accept raw bytes (never a file path — keeps workers stateless)
      - Raise ProviderUnavailable for transient / environmental failures so
        the orchestrator can retry or escalate
      - Raise CorruptedFile / FileTooLarge when the document itself is at fault
      - Hold no per-call mutable state (safe for concurrent use)
    """

    name: str = "provider"
    kind: StepKind = StepKind.LOCAL_OCR
    cost: float = 0.0              # relative cost; breaks confidence ties
    timeout_seconds: float = 60.0

    def supports(self, fmt: DocumentFormat) -> bool:
        return fmt in _OCR_FORMATS

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def attempt(self, data: bytes, fmt: DocumentFormat) -> ProviderExtraction:
        """Extract text. Blocking work must run in a thread executor."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name} cost={self.cost}>"


# ---------------------------------------------------------------------------
# PDF rasterization (shared by both providers)
# ---------------------------------------------------------------------------

def render_pages(data: bytes, fmt: DocumentFormat, dpi: int = 300) -> list[bytes]:
    """
    Return PNG bytes per page. Images pass through unchanged; PDFs are
    rendered with PyMuPDF up to OCR_MAX_PAGES.
    """
    if fmt is DocumentFormat.IMAGE:
        return [data]

    import fitz

    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if doc.page_count == 0:
                raise CorruptedFile("PDF has no pages")
            pages = []
            for index, page in enumerate(doc):
                if index >= OCR_MAX_PAGES:
                    logger.warning("OCR page limit reached | pages=%d limit=%d", doc.page_count, OCR_MAX_PAGES)
                    break
                pages.append(page.get_pixmap(dpi=dpi).tobytes("png"))
            return pages
    except (RuntimeError, ValueError) as exc:
        raise CorruptedFile(f"PDF could not be rendered: {exc}") from exc


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ---------------------------------------------------------------------------
# Level 2: AWS Textract (cloud)
# ---------------------------------------------------------------------------

# ClientError codes that mean "the document is the problem"
_TEXTRACT_DOCUMENT_ERRORS = {
    "BadDocumentException":         CorruptedFile,
    "UnsupportedDocumentException": CorruptedFile,
    "InvalidParameterException":    CorruptedFile,
    "DocumentTooLargeException":    FileTooLarge,
}


class TextractProvider(OcrProvider):
    """
    AWS Textract — managed, high-accuracy OCR.

    Uses the synchronous DetectDocumentText API on one rendered page at a
    time, so multi-page PDFs never require staging the file in S3.

    IAM permissions required on the worker role:
      textract:DetectDocumentText
    """

    name = "textract"
    kind = StepKind.CLOUD_OCR
    cost = 1.0

    def __init__(
        self,
        region: str | None = None,
        timeout_seconds: float | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._region = region or settings.aws_region
        self._enabled = settings.textract_enabled if enabled is None else enabled
        self.timeout_seconds = timeout_seconds or settings.cloud_ocr_timeout_seconds

    def is_configured(self) -> bool:
        return self._enabled

    async def attempt(self, data: bytes, fmt: DocumentFormat) -> ProviderExtraction:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, self._extract_sync, data, fmt)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Textract | pages=%d chars=%d confidence=%.3f elapsed_ms=%.0f",
            result.page_count, len(result.text), result.confidence, result.elapsed_ms,
        )
        return result

    def _extract_sync(self, data: bytes, fmt: DocumentFormat) -> ProviderExtraction:
        import boto3
        from botocore.config import Config
        from botocore.exceptions import (
            BotoCoreError,
            ClientError,
            ConnectTimeoutError,
            ReadTimeoutError,
        )

        pages = render_pages(data, fmt)
        client = boto3.client(
            "textract",
            region_name=self._region,
            config=Config(
                connect_timeout=5,
                read_timeout=self.timeout_seconds,
                retries={"max_attempts": 1},    # retries are the orchestrator's job
            ),
        )

        page_texts: list[str] = []
        confidences: list[float] = []

        for page_bytes in pages:
            try:
                response = client.detect_document_text(Document={"Bytes": page_bytes})
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                document_error = _TEXTRACT_DOCUMENT_ERRORS.get(code)
                if document_error is not None:
                    raise document_error(f"Textract rejected document: {code}") from exc
                raise ProviderUnavailable(f"Textract error: {code}", provider=self.name) from exc
            except (ConnectTimeoutError, ReadTimeoutError) as exc:
                raise ProviderTimeout(f"Textract timed out: {exc}", provider=self.name) from exc
            except BotoCoreError as exc:
                # EndpointConnectionError, NoCredentialsError, ...
                raise ProviderUnavailable(f"Textract unreachable: {exc}", provider=self.name) from exc

            lines: list[str] = []
            for block in response.get("Blocks", []):
                if block["BlockType"] == "LINE":
                    lines.append(block.get("Text", ""))
                elif block["BlockType"] == "WORD":
                    confidences.append(block.get("Confidence", 0.0) / 100.0)   # normalize to 0–1
            page_texts.append("\n".join(lines))

        return ProviderExtraction(
            text="\n\n".join(t for t in page_texts if t.strip()),
            confidence=round(_mean(confidences), 3),
            provider=self.name,
            page_count=len(pages),
        )


# ---------------------------------------------------------------------------
# Level 3: Tesseract (local, offline)
# ---------------------------------------------------------------------------

class TesseractProvider(OcrProvider):
    """
    Local OCR with Tesseract via pytesseract.

    Runs entirely in-process / in-container: no network I/O. The tesseract
    binary and the language packs (default rus+eng) must be installed in the
    worker image.
    """

    name = "tesseract"
    kind = StepKind.LOCAL_OCR
    cost = 0.1

    def __init__(
        self,
        lang: str | None = None,
        tesseract_cmd: str | None = None,
        timeout_seconds: float | None = None,
        dpi: int | None = None,
    ) -> None:
        self._lang = lang or settings.tesseract_lang
        self._cmd = tesseract_cmd if tesseract_cmd is not None else settings.tesseract_cmd
        self._dpi = dpi or settings.tesseract_dpi
        self.timeout_seconds = timeout_seconds or settings.local_ocr_timeout_seconds

    async def attempt(self, data: bytes, fmt: DocumentFormat) -> ProviderExtraction:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, self._extract_sync, data, fmt)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Tesseract | pages=%d chars=%d confidence=%.3f elapsed_ms=%.0f",
            result.page_count, len(result.text), result.confidence, result.elapsed_ms,
        )
        return result

    def _extract_sync(self, data: bytes, fmt: DocumentFormat) -> ProviderExtraction:
        import pytesseract
        from PIL import Image, UnidentifiedImageError

        if self._cmd:
            pytesseract.pytesseract.tesseract_cmd = self._cmd

        pages = render_pages(data, fmt, dpi=self._dpi)
        page_texts: list[str] = []
        confidences: list[float] = []

        for page_bytes in pages:
            try:
                image = Image.open(io.BytesIO(page_bytes)).convert("L")
            except (UnidentifiedImageError, OSError) as exc:
                raise CorruptedFile(f"Image could not be decoded: {exc}") from exc

            try:
                ocr = pytesseract.image_to_data(
                    image,
                    lang=self._lang,
                    config="--psm 3",     # fully automatic page segmentation
                    output_type=pytesseract.Output.DICT,
                    timeout=self.timeout_seconds,
                )
            except pytesseract.TesseractNotFoundError as exc:
                raise ProviderUnavailable("tesseract binary not installed", provider=self.name) from exc
            except pytesseract.TesseractError as exc:
                raise ProviderUnavailable(f"tesseract failed: {exc}", provider=self.name) from exc
            except RuntimeError as exc:
                # pytesseract raises RuntimeError when it kills a timed-out process
                raise ProviderTimeout(f"tesseract timed out: {exc}", provider=self.name) from exc

            text, page_confidences = _assemble_lines(ocr)
            page_texts.append(text)
            confidences.extend(page_confidences)

        return ProviderExtraction(
            text="\n\n".join(t for t in page_texts if t.strip()),
            confidence=round(_mean(confidences), 3),
            provider=self.name,
            page_count=len(pages),
        )


def _assemble_lines(ocr: dict) -> tuple[str, list[float]]:
    """Rebuild reading-order lines from image_to_data output."""
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []

    for idx, token in enumerate(ocr.get("text", [])):
        word = (token or "").strip()
        if not word:
            continue
        try:
            conf = float(ocr["conf"][idx])
        except (KeyError, TypeError, ValueError):
            conf = -1.0
        if conf >= 0:
            confidences.append(max(0.0, min(1.0, conf / 100.0)))

        key = (
            int(ocr["block_num"][idx]),
            int(ocr["par_num"][idx]),
            int(ocr["line_num"][idx]),
        )
        lines.setdefault(key, []).append(word)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    return text, confidences


def default_providers() -> list[OcrProvider]:
    """Escalation order: cloud first, then local."""
    return [TextractProvider(), TesseractProvider()]
