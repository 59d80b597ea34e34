"""
Unit tests for the multi-level OCR orchestrator.

Coverage:
  - confident structural parse skips OCR entirely
  - escalation order and acceptance rule (threshold + minimum text length)
  - timeouts and unavailable providers escalate; unavailable is retried in place
  - best low-confidence candidate, ties going to the cheaper provider
  - overall confidence is the minimum of the steps used
  - post-processing only fills missing fields
  - exhaustion classification (corrupted, unsupported, too large, timeout, outage)
  - cancellation between levels
"""

import pytest

from docpipeline.core.exceptions import (
    CorruptedFile,
    FailureKind,
    ProviderError,
    ProviderUnavailable,
)
from docpipeline.processing.orchestrator import (
    OcrOrchestrator,
    ProviderStep,
    StepStatus,
    classify_failure,
)
from docpipeline.processing.parsers import DocumentFormat
from docpipeline.processing.postprocess import GenerativePostProcessor
from docpipeline.schemas.documents import DocumentCategory, StepKind

pytestmark = pytest.mark.unit

LONG_TEXT = "Счет-фактура № 42 от 01.03.2024, поставщик ООО Ромашка"


def _orchestrator(providers, postprocessor, **overrides) -> OcrOrchestrator:
    options = {
        "confidence_threshold": 0.6,
        "min_text_length": 10,
        "retry_attempts": 2,
        "retry_wait_seconds": 0,
    }
    options.update(overrides)
    return OcrOrchestrator(providers, postprocessor, **options)


def _statuses(result) -> list[tuple[str, StepStatus]]:
    return [(step.provider, step.status) for step in result.steps]


# ─────────────────────────────────────────────────────────────────────────────
# Structural parse
# ─────────────────────────────────────────────────────────────────────────────

class TestStructuralParse:

    async def test_text_document_skips_ocr(self, fake_provider, disabled_postprocessor, waybill_text):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.99)
        orchestrator = _orchestrator([cloud], disabled_postprocessor)

        result = await orchestrator.process(waybill_text.encode(), "text/plain", DocumentCategory.TRANSPORT)

        assert result.ok
        assert result.provider == "text"
        assert result.confidence == 1.0
        assert cloud.calls == 0
        assert _statuses(result) == [("text", StepStatus.ACCEPTED)]
        assert result.steps[0].used

    async def test_transport_fields_and_co2(self, fake_provider, disabled_postprocessor, waybill_text):
        orchestrator = _orchestrator([], disabled_postprocessor)

        result = await orchestrator.process(waybill_text.encode(), "text/plain", DocumentCategory.TRANSPORT)

        assert result.fields["distance_km"] == 180
        assert result.fields["fuel_consumption_liters"] == 54
        assert result.fields["fuel_type"] == "diesel"
        assert result.fields["co2_kg"] == round(54 * 2.67 * 0.84, 2)

    async def test_other_category_is_classified(self, disabled_postprocessor, waybill_text):
        orchestrator = _orchestrator([], disabled_postprocessor)
        result = await orchestrator.process(waybill_text.encode(), "text/plain", DocumentCategory.OTHER)
        assert result.category is DocumentCategory.TRANSPORT

    async def test_progress_is_reported(self, disabled_postprocessor, fake_provider, png_bytes):
        seen = []

        async def on_progress(progress, stage):
            seen.append((progress, stage))

        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.9)
        orchestrator = _orchestrator([cloud], disabled_postprocessor)
        await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS, on_progress=on_progress)

        assert seen == [(40, "parsing"), (50, "cloud_ocr")]


# ─────────────────────────────────────────────────────────────────────────────
# Escalation
# ─────────────────────────────────────────────────────────────────────────────

class TestEscalation:

    async def test_first_acceptable_provider_stops_the_chain(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.92)
        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.99)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.provider == "textract"
        assert local.calls == 0
        assert result.provider_chain == ["image", "textract"]

    async def test_timeout_falls_back_to_next_provider(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider(
            "textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.95,
            delay=1.0, timeout_seconds=0.05,
        )
        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.8)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.ok
        assert result.provider == "tesseract"
        assert _statuses(result)[1:] == [
            ("textract", StepStatus.TIMEOUT),
            ("tesseract", StepStatus.ACCEPTED),
        ]
        assert result.steps[1].failure_kind is FailureKind.TIMEOUT
        assert result.steps[1].confidence is None

    async def test_unavailable_provider_is_retried_then_skipped(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider(
            "textract", kind=StepKind.CLOUD_OCR,
            errors=[ProviderUnavailable("throttled"), ProviderUnavailable("throttled")],
        )
        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.7)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor, retry_attempts=2)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert cloud.calls == 2
        assert result.provider == "tesseract"
        assert result.steps[1].status is StepStatus.UNAVAILABLE

    async def test_transient_unavailability_recovers_in_place(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider(
            "textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.9,
            errors=[ProviderUnavailable("connection reset"), None],
        )
        orchestrator = _orchestrator([cloud], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert cloud.calls == 2
        assert result.provider == "textract"

    async def test_short_text_is_not_accepted(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text="ИНН 77", confidence=0.99)
        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.7)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.provider == "tesseract"
        assert result.steps[1].status is StepStatus.LOW_CONFIDENCE

    async def test_unconfigured_provider_is_recorded_as_skipped(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, configured=False)
        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.8)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert cloud.calls == 0
        assert result.steps[1].status is StepStatus.SKIPPED
        assert result.provider == "tesseract"

    async def test_best_candidate_when_nothing_meets_threshold(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.45)
        local = fake_provider("tesseract", text=LONG_TEXT + " (tesseract)", confidence=0.52)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.ok
        assert result.provider == "tesseract"
        assert result.confidence == 0.52
        assert [s.used for s in result.steps] == [False, False, True]

    async def test_confidence_tie_prefers_cheaper_provider(self, fake_provider, disabled_postprocessor, png_bytes):
        expensive = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.5, cost=1.0)
        cheap = fake_provider("tesseract", text=LONG_TEXT, confidence=0.5, cost=0.1)
        orchestrator = _orchestrator([expensive, cheap], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.provider == "tesseract"
        assert expensive.calls == 1 and cheap.calls == 1

    async def test_providers_skip_formats_they_do_not_support(self, fake_provider, disabled_postprocessor, png_bytes):
        pdf_only = fake_provider("pdf-only", text=LONG_TEXT, confidence=0.9, formats=frozenset({DocumentFormat.PDF}))
        orchestrator = _orchestrator([pdf_only], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.OTHER)

        assert pdf_only.calls == 0
        assert result.provider_chain == ["image"]
        assert result.failure_kind is FailureKind.CORRUPTED_FILE


# ─────────────────────────────────────────────────────────────────────────────
# Post-processing
# ─────────────────────────────────────────────────────────────────────────────

class TestPostProcessing:

    async def test_overall_confidence_is_minimum_of_used_steps(self, fake_provider, fake_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.9)
        llm = fake_postprocessor({"quantity": 10, "total_amount": 1500.0}, confidence=0.4)
        orchestrator = _orchestrator([cloud], llm)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert llm.calls == 1
        assert result.confidence == 0.4
        assert result.steps[-1].kind is StepKind.POSTPROCESS
        assert result.steps[-1].used

    async def test_postprocessor_only_fills_missing_fields(self, fake_provider, fake_postprocessor, png_bytes):
        text = "Счет-фактура\nИНН 7707083893\nКоличество: 12"
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=text, confidence=0.9)
        llm = fake_postprocessor({"supplier_inn": "0000000000", "total_amount": 990.0}, confidence=0.8)
        orchestrator = _orchestrator([cloud], llm)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.fields["supplier_inn"] == "7707083893"
        assert result.fields["total_amount"] == 990.0
        assert result.fields["quantity"] == 12

    async def test_complete_confident_extraction_skips_postprocessor(self, fake_postprocessor, waybill_text):
        llm = fake_postprocessor({"route": "elsewhere"})
        orchestrator = _orchestrator([], llm)

        result = await orchestrator.process(waybill_text.encode(), "text/plain", DocumentCategory.TRANSPORT)

        assert llm.calls == 0
        assert result.fields["route"] == "Москва — Тверь"

    async def test_postprocessor_failure_keeps_ocr_result(self, fake_provider, fake_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.85)
        llm = fake_postprocessor(error=ProviderError("invalid JSON"))
        orchestrator = _orchestrator([cloud], llm)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.ok
        assert result.confidence == 0.85
        assert result.steps[-1].status is StepStatus.FAILED
        assert not result.steps[-1].used

    async def test_unclassified_model_error_keeps_ocr_result(self, fake_provider, png_bytes):
        class ConflictError(Exception):
            pass

        class _ConflictingChatModel:
            async def ainvoke(self, messages):
                raise ConflictError("409 from gateway")

        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.9)
        orchestrator = _orchestrator([local], GenerativePostProcessor(llm=_ConflictingChatModel()))

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert result.ok
        assert result.confidence == 0.9
        assert result.steps[-1].kind is StepKind.POSTPROCESS
        assert result.steps[-1].status is StepStatus.FAILED
        assert "ConflictError" in result.steps[-1].error

    async def test_postprocessor_is_never_run_without_text(self, fake_provider, fake_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text="", confidence=0.0)
        llm = fake_postprocessor({"total_amount": 1.0})
        orchestrator = _orchestrator([cloud], llm)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.SUPPLIERS)

        assert llm.calls == 0
        assert not result.ok
        assert result.steps[-1].status is StepStatus.EMPTY


# ─────────────────────────────────────────────────────────────────────────────
# Exhaustion and classification
# ─────────────────────────────────────────────────────────────────────────────

class TestExhaustion:

    async def test_corrupted_pdf(self, fake_provider, disabled_postprocessor, corrupted_pdf_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, errors=[CorruptedFile("bad pdf")])
        local = fake_provider("tesseract", errors=[CorruptedFile("cannot render")])
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(corrupted_pdf_bytes, "application/pdf", DocumentCategory.ENERGY)

        assert result.failure_kind is FailureKind.CORRUPTED_FILE
        assert result.message == "file corrupted"
        assert result.confidence == 0.0
        assert result.fields == {}
        assert not result.ok

    async def test_all_providers_timed_out(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, delay=1.0, timeout_seconds=0.05)
        local = fake_provider("tesseract", delay=1.0, timeout_seconds=0.05)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.ENERGY)

        assert result.failure_kind is FailureKind.TIMEOUT
        assert result.message == "timeout"

    async def test_mixed_provider_failures_are_an_outage(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, errors=[ProviderUnavailable("503")] * 2)
        local = fake_provider("tesseract", delay=1.0, timeout_seconds=0.05)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.ENERGY)

        assert result.failure_kind is FailureKind.PROVIDER_OUTAGE
        assert result.message.startswith("provider outage")

    async def test_unsupported_format(self, fake_provider, disabled_postprocessor):
        orchestrator = _orchestrator([fake_provider("tesseract")], disabled_postprocessor)

        result = await orchestrator.process(b"MZ\x90\x00" + b"\x00" * 32, None, DocumentCategory.OTHER)

        assert result.failure_kind is FailureKind.UNSUPPORTED_FORMAT
        assert result.steps[0].provider == "admission"

    async def test_file_too_large(self, fake_provider, disabled_postprocessor, png_bytes):
        orchestrator = _orchestrator([fake_provider("tesseract")], disabled_postprocessor, max_file_size_bytes=16)

        result = await orchestrator.process(png_bytes, "image/png", DocumentCategory.OTHER)

        assert result.failure_kind is FailureKind.FILE_TOO_LARGE
        assert result.message == "file too large"

    async def test_payload_shape(self, fake_provider, disabled_postprocessor, png_bytes):
        orchestrator = _orchestrator([fake_provider("tesseract", text="", confidence=0.0)], disabled_postprocessor)

        payload = (await orchestrator.process(png_bytes, "image/png", DocumentCategory.OTHER)).to_payload()

        assert payload["failure_kind"] == "corrupted_file"
        assert payload["confidence"] == 0.0
        assert [s["provider"] for s in payload["steps"]] == ["image", "tesseract"]
        assert payload["text_preview"] == ""

    def test_document_fault_outranks_provider_trouble(self):
        steps = [
            ProviderStep("textract", StepKind.CLOUD_OCR, StepStatus.TIMEOUT, failure_kind=FailureKind.TIMEOUT),
            ProviderStep("tesseract", StepKind.LOCAL_OCR, StepStatus.FAILED, failure_kind=FailureKind.CORRUPTED_FILE),
        ]
        assert classify_failure(steps) is FailureKind.CORRUPTED_FILE

    def test_no_faults_means_unreadable(self):
        steps = [ProviderStep("tesseract", StepKind.LOCAL_OCR, StepStatus.EMPTY, confidence=0.0)]
        assert classify_failure(steps) is FailureKind.CORRUPTED_FILE


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:

    async def test_cancel_before_ocr(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, text=LONG_TEXT, confidence=0.9)
        orchestrator = _orchestrator([cloud], disabled_postprocessor)

        async def should_cancel():
            return True

        result = await orchestrator.process(
            png_bytes, "image/png", DocumentCategory.SUPPLIERS, should_cancel=should_cancel,
        )

        assert result.cancelled
        assert not result.ok
        assert cloud.calls == 0

    async def test_cancel_between_providers(self, fake_provider, disabled_postprocessor, png_bytes):
        cloud = fake_provider("textract", kind=StepKind.CLOUD_OCR, errors=[ProviderUnavailable("down")] * 2)
        local = fake_provider("tesseract", text=LONG_TEXT, confidence=0.9)
        orchestrator = _orchestrator([cloud, local], disabled_postprocessor)
        checks = []

        async def should_cancel():
            checks.append(True)
            return len(checks) > 1

        result = await orchestrator.process(
            png_bytes, "image/png", DocumentCategory.SUPPLIERS, should_cancel=should_cancel,
        )

        assert result.cancelled
        assert cloud.calls == 2
        assert local.calls == 0
