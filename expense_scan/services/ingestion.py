"""
Receipt scan pipeline: source -> image -> text -> suggestion -> draft.

Every step runs to completion before the next one starts. Nothing is kept
between calls; each scan owns its source, buffers and result.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool

from expense_scan.config import settings
from expense_scan.models.receipt import (
    Category,
    CategoryHint,
    ExtractionSuggestion,
    OcrMode,
    ReceiptDraft,
    ReceiptSource,
    RecognitionOutcome,
)
from expense_scan.services.categories import DEFAULT_CATEGORY_HINTS, suggest_category
from expense_scan.services.ocr import OCRService, ProgressCallback
from expense_scan.services.parser import ReceiptParser
from expense_scan.services.rasterizer import Rasterizer
from expense_scan.utils.errors import UnsupportedSourceError

logger = logging.getLogger(__name__)

CONTENT_TYPES_BY_EXTENSION = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def content_type_for(filename: str) -> str:
    """
    Content type of a receipt file by its extension.

    Raises:
        UnsupportedSourceError: Not a PDF, PNG or JPEG file
    """
    extension = Path(filename).suffix.lower()
    content_type = CONTENT_TYPES_BY_EXTENSION.get(extension)
    if content_type is None:
        raise UnsupportedSourceError(
            f"Unsupported receipt format: {extension or filename}",
            code="RECEIPT_TYPE",
        )
    return content_type


def check_source_size(size: int, max_bytes: int = None) -> None:
    max_bytes = max_bytes if max_bytes is not None else settings.OCR_FILE_MAX_BYTES
    if size > max_bytes:
        raise UnsupportedSourceError(
            f"Receipt file too large for OCR: {size / (1024 * 1024):.2f}MB",
            code="RECEIPT_SIZE",
        )


def load_receipt_source(path: str, max_bytes: int = None) -> ReceiptSource:
    """
    Read a receipt file from disk.

    Raises:
        UnsupportedSourceError: Missing file, unsupported extension or too large
    """
    file_path = Path(path)
    if not file_path.is_file():
        raise UnsupportedSourceError(f"Receipt file not found: {path}", code="RECEIPT_NOT_FOUND")

    content_type = content_type_for(file_path.name)
    check_source_size(file_path.stat().st_size, max_bytes)

    return ReceiptSource(data=file_path.read_bytes(), content_type=content_type)


def category_text(text: str, suggestion: ExtractionSuggestion) -> str:
    """Text the category suggester sees: OCR text plus description and note."""
    parts = [text, suggestion.description, suggestion.note]
    return " ".join(part for part in parts if part)


class IngestionService:
    """Service combining rasterizing, OCR, parsing and category suggestion."""

    def __init__(
        self,
        rasterizer: Optional[Rasterizer] = None,
        ocr_service: Optional[OCRService] = None,
        parser: Optional[ReceiptParser] = None,
        category_hints: Sequence[CategoryHint] = DEFAULT_CATEGORY_HINTS
    ):
        """Initialize ingestion service."""
        self.rasterizer = rasterizer or Rasterizer()
        self.ocr_service = ocr_service or OCRService()
        self.parser = parser or ReceiptParser()
        self.category_hints = category_hints

    def recognize(
        self,
        source: ReceiptSource,
        mode: OcrMode = OcrMode.AUTO,
        credential: Optional[str] = None,
        ui_language: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> RecognitionOutcome:
        """
        Rasterize the source and recognize its text.

        Raises:
            RasterizationError, RemoteRecognitionError, LocalRecognitionError
        """
        image = self.rasterizer.rasterize(source)
        return self.ocr_service.recognize(
            image,
            mode=mode,
            credential=credential,
            ui_language=ui_language,
            on_progress=on_progress,
        )

    def build_draft(
        self,
        outcome: RecognitionOutcome,
        categories: Iterable[Category] = ()
    ) -> ReceiptDraft:
        """
        Turn recognized text into a reviewable draft.

        When the text carries no tax rate, the suggested category's default
        rate is proposed instead.
        """
        active: List[Category] = [c for c in categories if c.is_active]
        suggestion = self.parser.suggest(outcome.text)
        category_id = suggest_category(
            category_text(outcome.text, suggestion),
            active,
            self.category_hints,
        )

        tax_rate = suggestion.tax_rate
        if tax_rate is None and category_id is not None:
            category = next(c for c in active if c.id == category_id)
            tax_rate = category.default_tax_rate

        return ReceiptDraft(
            text=outcome.text,
            engine=outcome.engine,
            date=suggestion.date,
            amount=suggestion.amount,
            tax_rate=tax_rate,
            description=suggestion.description,
            note=suggestion.note,
            category_id=category_id,
        )

    def scan(
        self,
        source: ReceiptSource,
        mode: OcrMode = OcrMode.AUTO,
        credential: Optional[str] = None,
        ui_language: Optional[str] = None,
        categories: Iterable[Category] = (),
        on_progress: Optional[ProgressCallback] = None
    ) -> ReceiptDraft:
        """
        Full scan of one receipt.

        Args:
            source: Receipt bytes and content type
            mode: auto, offline or online
            credential: Remote OCR API key
            ui_language: "de" or "it"
            categories: Categories from the store (inactive ones are ignored)
            on_progress: Progress callback (fraction, status)

        Returns:
            ReceiptDraft for human review
        """
        logger.info("Scanning receipt", extra={
            "content_type": source.content_type,
            "size": len(source.data),
            "mode": OcrMode(mode).value,
        })
        outcome = self.recognize(source, mode, credential, ui_language, on_progress)
        return self.build_draft(outcome, categories)

    async def scan_async(self, source: ReceiptSource, **kwargs) -> ReceiptDraft:
        """Run scan() in a worker thread so the event loop stays free."""
        return await run_in_threadpool(self.scan, source, **kwargs)
