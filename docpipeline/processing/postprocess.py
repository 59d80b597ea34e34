"""
Generative post-processing — the last escalation level.

Given noisy OCR text and the fields the rule-based pass could not find, ask
the LLM to reconcile the structured extraction and report its own
confidence. Runs only after a text layer exists.

Error mapping (mirrors the provider adapters):
  - transient / auth failures (rate limit, connection, 5xx, 401/403)
      → ProviderUnavailable   (retried in place, then the step is skipped)
  - request rejected (400/404/422), unparseable answer or any other
    model error
      → ProviderError         (step recorded as failed, no retry)
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from docpipeline.core.config import settings
from docpipeline.core.exceptions import ProviderError, ProviderUnavailable
from docpipeline.processing.extraction import FieldExtraction
from docpipeline.schemas.documents import DocumentCategory, StepKind

logger = logging.getLogger(__name__)

# Upper bound on OCR text sent to the model
MAX_PROMPT_CHARS = 12_000

_UNAVAILABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "AuthenticationError",
    "PermissionDeniedError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)

_REJECTED_EXCEPTION_TYPES = (
    "BadRequestError",
    "NotFoundError",
    "UnprocessableEntityError",
)

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)

_SYSTEM_PROMPT = (
    "You extract emissions-reporting data from OCR text of business documents "
    "(often Russian). OCR output may contain recognition errors; correct obvious "
    "ones. Answer with a single JSON object and nothing else:\n"
    '{"fields": {<field>: <value or null>}, "confidence": <0.0-1.0>}\n'
    "Numbers must be plain numbers without units. Use null when a field is absent. "
    "confidence is your estimate that every non-null field is correct."
)


def _exception_matches(exc: Exception, names: tuple[str, ...]) -> bool:
    name = type(exc).__name__
    return any(name.endswith(n) for n in names)


@dataclass
class PostProcessResult:
    fields:     dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    provider:   str = "openai"
    elapsed_ms: float = 0.0


class GenerativePostProcessor:
    """
    LangChain chat-model wrapper. Any BaseChatModel can be injected (tests
    use a fake); by default an OpenAI model is built from settings.
    """

    name = "openai"
    kind = StepKind.POSTPROCESS
    cost = 2.0

    def __init__(
        self,
        llm: BaseChatModel | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._llm = llm
        self.timeout_seconds = timeout_seconds or settings.postprocess_timeout_seconds

    def is_configured(self) -> bool:
        return self._llm is not None or bool(settings.openai_api_key)

    def _get_llm(self) -> BaseChatModel:
        if self._llm is None:
            from langchain_openai import ChatOpenAI
            self._llm = ChatOpenAI(
                model=settings.llm_model,
                api_key=settings.openai_api_key,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                timeout=self.timeout_seconds,
                max_retries=0,   # retries are the orchestrator's job
            )
        return self._llm

    async def reconcile(
        self,
        text: str,
        category: DocumentCategory,
        extraction: FieldExtraction,
    ) -> PostProcessResult:
        messages = [
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(content=self._build_prompt(text, category, extraction)),
        ]

        t0 = time.monotonic()
        try:
            response = await self._get_llm().ainvoke(messages)
        except Exception as exc:
            if _exception_matches(exc, _UNAVAILABLE_EXCEPTION_TYPES):
                raise ProviderUnavailable(f"{type(exc).__name__}: {exc}", provider=self.name) from exc
            if _exception_matches(exc, _REJECTED_EXCEPTION_TYPES):
                raise ProviderError(f"{type(exc).__name__}: {exc}", provider=self.name) from exc
            logger.exception("Post-processing error | category=%s", category.value)
            raise ProviderError(f"{type(exc).__name__}: {exc}", provider=self.name) from exc

        result = self._parse_response(response.content)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Post-processing | category=%s fields=%d confidence=%.3f elapsed_ms=%.0f",
            category.value, len(result.fields), result.confidence, result.elapsed_ms,
        )
        return result

    @staticmethod
    def _build_prompt(text: str, category: DocumentCategory, extraction: FieldExtraction) -> str:
        wanted = list(extraction.required) or ["document_type", "date", "total_amount"]
        return (
            f"Document category: {category.value}\n"
            f"Fields to return: {', '.join(wanted)}\n"
            f"Already extracted (verify, keep if correct): "
            f"{json.dumps(extraction.fields, ensure_ascii=False, default=str)}\n"
            f"Missing: {', '.join(extraction.missing) or 'none'}\n\n"
            f"OCR text:\n{text[:MAX_PROMPT_CHARS]}"
        )

    def _parse_response(self, content: Any) -> PostProcessResult:
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        match = _JSON_BLOCK_RE.search(content or "")
        if not match:
            raise ProviderError("Post-processor returned no JSON object", provider=self.name)
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Post-processor returned invalid JSON: {exc}", provider=self.name) from exc

        raw_fields = payload.get("fields") or {}
        if not isinstance(raw_fields, dict):
            raise ProviderError("Post-processor 'fields' is not an object", provider=self.name)

        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0

        return PostProcessResult(
            fields={k: v for k, v in raw_fields.items() if v not in (None, "")},
            confidence=max(0.0, min(1.0, confidence)),
            provider=self.name,
        )
