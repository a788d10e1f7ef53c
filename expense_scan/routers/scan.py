"""
Scan API router: receipt upload to draft, plus the pure text endpoints.
"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, ValidationError

from expense_scan.config import settings
from expense_scan.models.receipt import Category, ExtractionSuggestion, OcrMode, ReceiptDraft, ReceiptSource
from expense_scan.services.categories import suggest_category
from expense_scan.services.ingestion import IngestionService, check_source_size
from expense_scan.services.parser import suggest_from_text
from expense_scan.utils.errors import ExtractionError, UnsupportedSourceError

router = APIRouter(prefix="/scan", tags=["scan"])
logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = ["application/pdf", "image/jpeg", "image/jpg", "image/png"]


class SuggestRequest(BaseModel):
    """Request model for parsing already-recognized text."""
    text: str


class CategoryRequest(BaseModel):
    """Request model for category suggestion."""
    text: str
    categories: List[Category] = []


class CategoryResponse(BaseModel):
    category_id: Optional[int] = None


def get_ingestion_service() -> IngestionService:
    return IngestionService()


def _parse_categories(raw: Optional[str]) -> List[Category]:
    if not raw:
        return []
    try:
        return [Category.model_validate(item) for item in json.loads(raw)]
    except (ValueError, TypeError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid categories: {e}")


@router.post("", response_model=ReceiptDraft)
async def scan_receipt(
    file: UploadFile = File(...),
    mode: Optional[OcrMode] = Form(None),
    api_key: Optional[str] = Form(None),
    ui_language: Optional[str] = Form(None),
    categories: Optional[str] = Form(None),
    ingestion: IngestionService = Depends(get_ingestion_service)
):
    """
    Scan a receipt (PDF, JPG, PNG) into a draft expense.

    This endpoint:
    1. Validates type and size
    2. Rasterizes the first PDF page (images pass through)
    3. Runs remote or local OCR depending on the mode
    4. Parses date, amount, tax rate, description and items
    5. Suggests a category from the given list

    Args:
        file: Uploaded receipt
        mode: auto, offline or online (default from settings)
        api_key: Remote OCR key (default from settings)
        ui_language: "de" or "it"
        categories: JSON list of categories to choose from

    Returns:
        ReceiptDraft with the proposed values
    """
    content_type = file.content_type or ""
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type: {content_type}. Allowed: PDF, JPG, PNG"
        )
    if content_type == "image/jpg":
        content_type = "image/jpeg"

    file_data = await file.read()
    category_list = _parse_categories(categories)

    try:
        check_source_size(len(file_data))
        draft = await ingestion.scan_async(
            ReceiptSource(data=file_data, content_type=content_type),
            mode=mode or OcrMode(settings.OCR_MODE),
            credential=api_key or settings.OCR_API_KEY or None,
            ui_language=ui_language or settings.DEFAULT_UI_LANGUAGE,
            categories=category_list,
        )
    except UnsupportedSourceError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except ExtractionError as e:
        logger.warning("Receipt scan failed", extra={
            "upload_name": file.filename,
            "stage": e.stage,
            "code": e.code,
        })
        raise HTTPException(status_code=422, detail=e.to_dict())

    logger.info("Receipt scanned", extra={
        "upload_name": file.filename,
        "engine": draft.engine.value,
        "category_id": draft.category_id,
    })
    return draft


@router.post("/suggest", response_model=ExtractionSuggestion)
async def suggest(request: SuggestRequest):
    """Parse already-recognized receipt text into suggested fields."""
    return suggest_from_text(request.text)


@router.post("/category", response_model=CategoryResponse)
async def category(request: CategoryRequest):
    """Suggest a category id for receipt text, or null when nothing fits."""
    return CategoryResponse(category_id=suggest_category(request.text, request.categories))
