"""
Multi-level OCR Orchestrator
════════════════════════════

Escalation chain (cheapest first):

  0. Admission    size limit + magic-byte format detection
  1. Structural   CSV / XLSX / DOCX / text / PDF text layer — if the parser
                  is confident, OCR is skipped entirely
  2. Cloud OCR    first OcrProvider in the declared list (Textract)
  3. Local OCR    next providers (Tesseract), fully offline
  4. Generative   post-processing of structured fields, only once text
                  exists and only when the rule-based extraction is
                  incomplete or the text is low-confidence

Acceptance: confidence ≥ threshold and more than `min_text_length` chars.
If no provider is accepted, the best low-confidence candidate is used —
highest confidence, ties going to the cheaper provider already attempted.

Every attempt is bounded by the provider's timeout. A timeout or an
unavailable provider escalates to the next level; ProviderUnavailable is
first retried in place (tenacity, exponential back-off).

Overall confidence = min(confidence of every step actually used).

process() never raises for document or provider failures: exhaustion
returns an OcrResult with confidence 0, no fields and a classified
FailureKind. Exceptions are reserved for programmer errors.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docpipeline.core.config import settings
from docpipeline.core.exceptions import (
    DocumentFailure,
    FailureKind,
    FileTooLarge,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
)
from docpipeline.processing.extraction import (
    classify_category,
    estimate_transport_co2,
    extract_fields,
)
from docpipeline.processing.ocr import OcrProvider, ProviderExtraction, default_providers
from docpipeline.processing.parsers import DocumentFormat, detect_format, parse_document
from docpipeline.processing.postprocess import GenerativePostProcessor
from docpipeline.schemas.documents import DocumentCategory, StepKind

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]
CancelCheck = Callable[[], Awaitable[bool]]

# Progress checkpoints reported to the worker (0–100 scale)
PROGRESS_PARSING     = 40
PROGRESS_OCR         = 50
PROGRESS_OCR_STEP    = 10    # added per further provider
PROGRESS_POSTPROCESS = 80

TEXT_PREVIEW_CHARS = 200


class StepStatus(str, Enum):
    ACCEPTED       = "accepted"         # met the threshold; chain stopped here
    LOW_CONFIDENCE = "low_confidence"   # usable text below threshold
    EMPTY          = "empty"            # provider ran but found no text
    FAILED         = "failed"           # document or request rejected
    UNAVAILABLE    = "unavailable"      # network / auth / engine missing
    TIMEOUT        = "timeout"
    SKIPPED        = "skipped"          # provider not configured


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ProviderStep:
    """One entry of the provenance list."""
    provider:     str
    kind:         StepKind
    status:       StepStatus
    confidence:   Optional[float] = None
    latency_ms:   float = 0.0
    error:        Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    used:         bool = False   # contributed to the final result

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider":     self.provider,
            "kind":         self.kind.value,
            "status":       self.status.value,
            "confidence":   self.confidence,
            "latency_ms":   round(self.latency_ms, 1),
            "error":        self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "used":         self.used,
        }


@dataclass
class OcrResult:
    """
    Normalized orchestrator output, embedded in Document.ocr_payload.

    confidence is 0.0 and fields empty whenever failure_kind is set.
    """
    category:     DocumentCategory
    text:         str = ""
    confidence:   float = 0.0
    fields:       dict[str, Any] = field(default_factory=dict)
    steps:        list[ProviderStep] = field(default_factory=list)
    provider:     Optional[str] = None
    duration_ms:  float = 0.0
    failure_kind: Optional[FailureKind] = None
    cancelled:    bool = False

    @property
    def ok(self) -> bool:
        return self.failure_kind is None and not self.cancelled

    @property
    def provider_chain(self) -> list[str]:
        return [step.provider for step in self.steps]

    @property
    def message(self) -> str:
        if self.failure_kind is not None:
            return self.failure_kind.message
        if self.cancelled:
            return "cancelled"
        return f"processed by {self.provider} (confidence {self.confidence:.2f})"

    def to_payload(self) -> dict[str, Any]:
        return {
            "category":     self.category.value,
            "confidence":   self.confidence,
            "provider":     self.provider,
            "steps":        [step.to_dict() for step in self.steps],
            "fields":       self.fields,
            "text":         self.text,
            "text_preview": self.text[:TEXT_PREVIEW_CHARS],
            "text_length":  len(self.text),
            "duration_ms":  round(self.duration_ms, 1),
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
        }


@dataclass
class _Candidate:
    text:       str
    confidence: float
    cost:       float
    step:       ProviderStep


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

_DOCUMENT_FAULT_PRIORITY = (
    FailureKind.CORRUPTED_FILE,
    FailureKind.UNSUPPORTED_FORMAT,
    FailureKind.FILE_TOO_LARGE,
)


def classify_failure(steps: list[ProviderStep]) -> FailureKind:
    """
    Pick the user-facing reason an exhausted chain failed.

    A fault in the document itself outranks provider trouble (retrying will
    not help). Provider trouble is "timeout" only if every failed OCR
    attempt timed out, otherwise "provider outage". A chain that ran but
    produced no text at all means the file is unreadable.
    """
    kinds = [s.failure_kind for s in steps if s.failure_kind is not None]
    for kind in _DOCUMENT_FAULT_PRIORITY:
        if kind in kinds:
            return kind

    provider_faults = [
        s for s in steps
        if s.kind is not StepKind.PARSER and s.failure_kind is not None
    ]
    if provider_faults and all(s.status is StepStatus.TIMEOUT for s in provider_faults):
        return FailureKind.TIMEOUT
    if provider_faults:
        return FailureKind.PROVIDER_OUTAGE
    return FailureKind.CORRUPTED_FILE


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class OcrOrchestrator:
    """
    Runs the escalation chain for one document.

    Usage::

        orchestrator = OcrOrchestrator()
        result = await orchestrator.process(data, "application/pdf", DocumentCategory.TRANSPORT)
    """

    def __init__(
        self,
        providers: list[OcrProvider] | None = None,
        postprocessor: GenerativePostProcessor | None = None,
        *,
        confidence_threshold: float | None = None,
        min_text_length: int | None = None,
        max_file_size_bytes: int | None = None,
        min_chars_per_page: int | None = None,
        retry_attempts: int | None = None,
        retry_wait_seconds: float = 0.5,
    ) -> None:
        self._providers = list(providers) if providers is not None else default_providers()
        self._postprocessor = postprocessor if postprocessor is not None else GenerativePostProcessor()
        self._threshold = (
            confidence_threshold if confidence_threshold is not None
            else settings.ocr_confidence_threshold
        )
        self._min_text_length = (
            min_text_length if min_text_length is not None else settings.ocr_min_text_length
        )
        self._max_size = max_file_size_bytes or settings.max_file_size_bytes
        self._min_chars_per_page = min_chars_per_page or settings.parser_min_chars_per_page
        self._retry_attempts = max(1, (
            retry_attempts if retry_attempts is not None else settings.provider_retry_attempts
        ))
        self._retry_wait = retry_wait_seconds

    @property
    def providers(self) -> list[OcrProvider]:
        return list(self._providers)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(
        self,
        data: bytes,
        media_type: str | None,
        category: DocumentCategory | str,
        *,
        filename: str | None = None,
        should_cancel: CancelCheck | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> OcrResult:
        t0 = time.monotonic()
        category = DocumentCategory(category)
        steps: list[ProviderStep] = []

        def finish(result: OcrResult) -> OcrResult:
            result.steps = steps
            result.duration_ms = (time.monotonic() - t0) * 1000
            logger.info(
                "OCR chain finished | chain=%s provider=%s confidence=%.3f failure=%s cancelled=%s duration_ms=%.0f",
                "→".join(result.provider_chain), result.provider, result.confidence,
                result.failure_kind.value if result.failure_kind else "-",
                result.cancelled, result.duration_ms,
            )
            return result

        def exhausted() -> OcrResult:
            return finish(OcrResult(category=category, failure_kind=classify_failure(steps)))

        # --- Level 0: admission ----------------------------------------
        try:
            if len(data) > self._max_size:
                raise FileTooLarge(f"{len(data)} bytes exceeds limit of {self._max_size}")
            fmt = detect_format(data, media_type, filename)
        except DocumentFailure as exc:
            steps.append(ProviderStep(
                provider="admission", kind=StepKind.PARSER, status=StepStatus.FAILED,
                error=exc.message, failure_kind=exc.failure_kind,
            ))
            return exhausted()

        # --- Level 1: structural parser ----------------------------------
        await _report(on_progress, PROGRESS_PARSING, "parsing")
        chosen: _Candidate | None = None
        t_parse = time.monotonic()
        try:
            parsed = await parse_document(data, fmt, min_chars_per_page=self._min_chars_per_page)
        except DocumentFailure as exc:
            steps.append(ProviderStep(
                provider=fmt.value, kind=StepKind.PARSER, status=StepStatus.FAILED,
                latency_ms=(time.monotonic() - t_parse) * 1000,
                error=exc.message, failure_kind=exc.failure_kind,
            ))
        else:
            step = ProviderStep(
                provider=parsed.parser, kind=StepKind.PARSER,
                status=StepStatus.EMPTY if not parsed.text else StepStatus.LOW_CONFIDENCE,
                confidence=parsed.confidence, latency_ms=parsed.elapsed_ms,
            )
            steps.append(step)
            if not parsed.needs_ocr and parsed.text and parsed.confidence >= self._threshold:
                step.status = StepStatus.ACCEPTED
                chosen = _Candidate(parsed.text, parsed.confidence, 0.0, step)

        # --- Levels 2–3: OCR providers -----------------------------------
        if chosen is None:
            candidates: list[_Candidate] = []
            progress = PROGRESS_OCR
            for provider in self._providers:
                if not provider.supports(fmt):
                    continue
                if await _cancelled(should_cancel):
                    return finish(OcrResult(category=category, cancelled=True))
                if not provider.is_configured():
                    steps.append(ProviderStep(
                        provider=provider.name, kind=provider.kind, status=StepStatus.SKIPPED,
                        error="not configured", failure_kind=FailureKind.PROVIDER_OUTAGE,
                    ))
                    continue

                await _report(on_progress, progress, provider.kind.value)
                progress += PROGRESS_OCR_STEP

                step, extraction = await self._attempt(provider, data, fmt)
                steps.append(step)
                if extraction is None:
                    continue
                candidate = _Candidate(extraction.text, extraction.confidence, provider.cost, step)
                if self._acceptable(extraction.text, extraction.confidence):
                    step.status = StepStatus.ACCEPTED
                    chosen = candidate
                    break
                candidates.append(candidate)

            if chosen is None and candidates:
                # Ties prefer the cheaper provider; no re-query
                chosen = max(candidates, key=lambda c: (c.confidence, -c.cost))
                logger.info(
                    "No provider met threshold | using=%s confidence=%.3f threshold=%.2f",
                    chosen.step.provider, chosen.confidence, self._threshold,
                )

        if chosen is None:
            return exhausted()
        chosen.step.used = True

        # --- Level 4: structured fields + generative post-processing -----
        if category is DocumentCategory.OTHER:
            category = classify_category(chosen.text)
        extraction = extract_fields(chosen.text, category)
        confidences = [chosen.confidence]
        fields = dict(extraction.fields)

        needs_help = not extraction.is_complete or chosen.confidence < self._threshold
        if needs_help and self._postprocessor is not None and self._postprocessor.is_configured():
            if await _cancelled(should_cancel):
                return finish(OcrResult(category=category, cancelled=True))
            await _report(on_progress, PROGRESS_POSTPROCESS, "postprocess")
            step, post = await self._postprocess(chosen.text, category, extraction)
            steps.append(step)
            if post is not None:
                step.used = True
                confidences.append(post.confidence)
                for key, value in post.fields.items():
                    fields.setdefault(key, value)

        if category is DocumentCategory.TRANSPORT:
            co2 = estimate_transport_co2(fields)
            if co2 is not None:
                fields["co2_kg"] = co2

        return finish(OcrResult(
            category=category,
            text=chosen.text,
            confidence=round(min(confidences), 3),
            fields=fields,
            provider=chosen.step.provider,
        ))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _acceptable(self, text: str, confidence: float) -> bool:
        return confidence >= self._threshold and len(text.strip()) > self._min_text_length

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=8),
            retry=retry_if_exception_type(ProviderUnavailable),
            reraise=True,
        )

    async def _attempt(
        self,
        provider: OcrProvider,
        data: bytes,
        fmt: DocumentFormat,
    ) -> tuple[ProviderStep, ProviderExtraction | None]:
        """One provider, bounded by its timeout, retried while unavailable."""
        t0 = time.monotonic()
        step = ProviderStep(provider=provider.name, kind=provider.kind, status=StepStatus.FAILED)
        extraction: ProviderExtraction | None = None

        try:
            async for attempt in self._retrying():
                with attempt:
                    try:
                        extraction = await asyncio.wait_for(
                            provider.attempt(data, fmt),
                            timeout=provider.timeout_seconds,
                        )
                    except asyncio.TimeoutError as exc:
                        raise ProviderTimeout(
                            f"{provider.name} exceeded {provider.timeout_seconds}s",
                            provider=provider.name,
                        ) from exc
        except ProviderTimeout as exc:
            step.status, step.error, step.failure_kind = StepStatus.TIMEOUT, exc.message, exc.failure_kind
        except ProviderUnavailable as exc:
            step.status, step.error, step.failure_kind = StepStatus.UNAVAILABLE, exc.message, exc.failure_kind
        except DocumentFailure as exc:
            step.error, step.failure_kind = exc.message, exc.failure_kind

        step.latency_ms = (time.monotonic() - t0) * 1000
        if extraction is not None:
            step.confidence = extraction.confidence
            if not extraction.text.strip():
                step.status = StepStatus.EMPTY
                extraction = None
            else:
                step.status = StepStatus.LOW_CONFIDENCE

        logger.info(
            "OCR attempt | provider=%s status=%s confidence=%s latency_ms=%.0f error=%s",
            provider.name, step.status.value, step.confidence, step.latency_ms, step.error or "-",
        )
        return step, extraction

    async def _postprocess(self, text, category, extraction):
        processor = self._postprocessor
        t0 = time.monotonic()
        step = ProviderStep(provider=processor.name, kind=StepKind.POSTPROCESS, status=StepStatus.FAILED)
        result = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    try:
                        result = await asyncio.wait_for(
                            processor.reconcile(text, category, extraction),
                            timeout=processor.timeout_seconds,
                        )
                    except asyncio.TimeoutError as exc:
                        raise ProviderTimeout(f"{processor.name} timed out") from exc
        except ProviderTimeout as exc:
            step.status, step.error = StepStatus.TIMEOUT, exc.message
        except ProviderUnavailable as exc:
            step.status, step.error = StepStatus.UNAVAILABLE, exc.message
        except ProviderError as exc:
            step.error = exc.message

        step.latency_ms = (time.monotonic() - t0) * 1000
        if result is not None:
            step.status = StepStatus.ACCEPTED
            step.confidence = result.confidence
        else:
            logger.warning(
                "Post-processing skipped | status=%s error=%s", step.status.value, step.error,
            )
        return step, result


async def _report(callback: ProgressCallback | None, progress: int, stage: str) -> None:
    if callback is not None:
        await callback(progress, stage)


async def _cancelled(check: CancelCheck | None) -> bool:
    return bool(check is not None and await check())
