"""
Data model for receipt scanning: sources, recognition outcomes and drafts.
"""

import base64
from dataclasses import dataclass
import datetime as dt
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field


PDF_CONTENT_TYPE = "application/pdf"


class OcrMode(str, Enum):
    """Recognition mode chosen by the caller."""
    AUTO = "auto"
    OFFLINE = "offline"  # local engine only
    ONLINE = "online"    # remote service only, no fallback


class RecognitionEngine(str, Enum):
    """Engine that actually produced the recognized text."""
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class ReceiptSource:
    """Raw receipt payload plus its declared content type."""
    data: bytes
    content_type: str

    @property
    def is_pdf(self) -> bool:
        return self.content_type == PDF_CONTENT_TYPE

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


@dataclass(frozen=True)
class RasterImage:
    """Encoded raster image ready for text recognition."""
    data: bytes
    content_type: str

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass(frozen=True)
class RecognitionOutcome:
    text: str
    engine: RecognitionEngine


@dataclass(frozen=True)
class CategoryHint:
    """
    Static pairing of category-name fragments with vendor/product keywords.

    A hint applies to a category when one of ``match_terms`` occurs in the
    normalized category name; it then boosts the category when one of
    ``keyword_terms`` occurs in the receipt text.
    """
    match_terms: Tuple[str, ...]
    keyword_terms: Tuple[str, ...]


class Category(BaseModel):
    """Expense category as provided by the category store (read-only here)."""
    id: int
    name: str
    description: Optional[str] = None
    default_tax_rate: float = 0.0
    is_active: bool = True


class ExtractionSuggestion(BaseModel):
    """
    Best-effort field values recovered from recognized receipt text.

    Every field is optional; a missing field means "no suggestion".
    """
    date: Optional[dt.date] = None
    amount: Optional[float] = Field(default=None, gt=0)
    tax_rate: Optional[float] = Field(default=None, ge=0, lt=100)
    description: Optional[str] = None
    note: Optional[str] = None

    model_config = {"frozen": True}


class ReceiptDraft(BaseModel):
    """Proposed expense values handed to the review step."""
    text: str
    engine: RecognitionEngine
    date: Optional[dt.date] = None
    amount: Optional[float] = None
    tax_rate: Optional[float] = None
    description: Optional[str] = None
    note: Optional[str] = None
    category_id: Optional[int] = None
