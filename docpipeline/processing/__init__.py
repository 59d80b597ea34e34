"""
Document Processing Package
════════════════════════════

Turns raw document bytes into text plus structured emissions fields:

  Format detection → Structural parse → Cloud OCR → Local OCR → Generative post-processing

Modules
───────
  parsers.py       Magic-byte format detection + CSV / XLSX / DOCX / PDF / text parsers
  ocr.py           OcrProvider interface, Textract (cloud) and Tesseract (local) adapters
  extraction.py    Category keyword classification + rule-based field extraction
  postprocess.py   LLM reconciliation of incomplete fields (LangChain)
  orchestrator.py  Escalation policy across all of the above

Design principles
─────────────────
  • Providers are stateless and injected as an ordered list.
  • All heavy computation runs in the worker, never in the API process.
  • Every step emits structured log lines and a provenance entry.
"""

from docpipeline.processing.orchestrator import OcrOrchestrator, OcrResult, ProviderStep
from docpipeline.processing.ocr import OcrProvider, ProviderExtraction, TesseractProvider, TextractProvider
from docpipeline.processing.postprocess import GenerativePostProcessor

__all__ = [
    "OcrOrchestrator",
    "OcrResult",
    "ProviderStep",
    "OcrProvider",
    "ProviderExtraction",
    "TesseractProvider",
    "TextractProvider",
    "GenerativePostProcessor",
]
