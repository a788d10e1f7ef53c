"""
Receipt parser service for recovering expense fields from OCR text.

The parser works on an immutable sequence of classified lines. Every field
extractor is an independent read-only pass over that sequence; the results
are only combined at the very end into an ExtractionSuggestion.
"""

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from expense_scan.models.receipt import ExtractionSuggestion
from expense_scan.utils.candidates import AmountCandidate
from expense_scan.utils.money import parse_decimal_input
from expense_scan.utils.scoring import rank_candidates, score_amount, select_best_candidate

logger = logging.getLogger(__name__)


MAX_ITEMS = 6
MAX_FALLBACK_ITEMS = 4
MIN_ITEM_LENGTH = 3

# 1'234.50 / 1.234,50 / 1 234.50 / 12,50 / 3.20
_AMOUNT = r"\d{1,3}(?:[\s'.]\d{3})*(?:[.,]\d{2})|\d+[.,]\d{2}"
_CURRENCY = r"(?:chf|fr|eur)"


@dataclass(frozen=True)
class PatternSpec:
    """A named regex pattern with example and notes for documentation."""
    name: str
    pattern: str
    example: str
    notes: Optional[str] = None
    flags: int = re.IGNORECASE
    compiled: re.Pattern = field(default=None, init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, 'compiled', re.compile(self.pattern, self.flags))


@dataclass(frozen=True)
class ParserVocabulary:
    """
    Keyword tables used by the line classifier and field extractors.

    Loaded once and never mutated; pass a different instance to parse with
    other vocabularies (e.g. in tests).
    """
    # Totals/tax labels: such lines are never descriptions or items
    noise_keywords: Tuple[str, ...] = (
        "total", "summe", "gesamt", "betrag", "zu zahlen",
        "da pagare", "importo", "mwst", "ust", "vat", "iva",
    )
    # Labels that mark the payable total
    total_keywords: Tuple[str, ...] = (
        "total", "summe", "gesamt", "betrag", "totale",
        "importo", "da pagare", "zu zahlen",
    )
    tax_keywords: Tuple[str, ...] = ("mwst", "ust", "vat", "iva")
    currency_tokens: Tuple[str, ...] = ("chf", "fr")


DEFAULT_VOCABULARY = ParserVocabulary()


class LineKind(str, Enum):
    NOISE = "noise"
    PRICE_ONLY = "price_only"
    ITEM = "item"
    TEXT = "text"


@dataclass(frozen=True)
class ClassifiedLine:
    """A normalized receipt line, its position and its classification."""
    index: int
    text: str
    kind: LineKind

    @property
    def lower(self) -> str:
        return self.text.lower()


class ReceiptParser:
    """Service for parsing receipt text into an ExtractionSuggestion."""

    def __init__(self, vocabulary: ParserVocabulary = DEFAULT_VOCABULARY):
        """Initialize parser with a keyword vocabulary and regex patterns."""
        self.vocabulary = vocabulary
        self._init_patterns()

    def _init_patterns(self):
        """Initialize regex patterns for parsing."""
        self.amount_pattern = PatternSpec(
            name='amount',
            pattern=rf"(?<![\d.,])({_AMOUNT})",
            example="1'234.50",
            notes='Monetary-looking token: two decimals, optional thousands separators',
        )
        self.price_only_pattern = PatternSpec(
            name='price_only',
            pattern=rf"^\s*{_CURRENCY}?\.?\s*({_AMOUNT})\s*{_CURRENCY}?\.?\s*[a-z]?\s*[.,;:]?\s*$",
            example='CHF 3.20 A',
            notes='Whole line is one price, optional currency and VAT code letter',
        )
        self.trailing_price_pattern = PatternSpec(
            name='trailing_price',
            pattern=rf"[-–]?\s*{_CURRENCY}?\.?\s*({_AMOUNT})\s*{_CURRENCY}?\.?\s*[a-z]?\s*[.,;:]?\s*$",
            example='Brot 3.20 A',
            notes='Price at the end of an item line',
        )
        self.date_patterns = [
            PatternSpec(
                name='day_month_year',
                pattern=r'(?<!\d)(\d{1,2})[.\-/](\d{1,2})[.\-/](\d{4}|\d{2})(?!\d)',
                example='05.03.24',
            ),
            PatternSpec(
                name='year_month_day',
                pattern=r'(?<!\d)(\d{4})[.\-/](\d{1,2})[.\-/](\d{1,2})(?!\d)',
                example='2024-03-05',
            ),
        ]
        self.percent_pattern = PatternSpec(
            name='percent',
            pattern=r'(?<![\d.,])(\d{1,2}(?:[.,]\d{1,2})?)\s*%',
            example='MWST 8.1%',
        )
        self.contact_pattern = PatternSpec(
            name='contact',
            pattern=r'\btel(?:efon)?\b|\bfax\b|www\.|https?:|@',
            example='Tel. 044 123 45 67',
            notes='Phone, fax, website or email lines are never items',
        )
        self.currency_pattern = PatternSpec(
            name='currency',
            pattern=r'(?<![a-z])(?:' + '|'.join(map(re.escape, self.vocabulary.currency_tokens)) + r')(?![a-z])',
            example='Total CHF 18.50',
        )

    # ------------------------------------------------------------------
    # Normalization and classification
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_line(line: str) -> str:
        """Collapse OCR column bars and whitespace, drop trailing punctuation."""
        line = re.sub(r'\|+', ' ', line)
        line = re.sub(r'\s+', ' ', line).strip()
        line = re.sub(r'[.,;:]+$', '', line)
        return line.strip()

    def normalize_lines(self, text: str) -> List[str]:
        """Split raw OCR text into non-empty normalized lines."""
        lines = (self.normalize_line(line) for line in re.split(r'\r?\n', text or ''))
        return [line for line in lines if line]

    def is_noise_line(self, line: str) -> bool:
        lower = line.lower()
        return any(keyword in lower for keyword in self.vocabulary.noise_keywords)

    def is_price_only_line(self, line: str) -> bool:
        return bool(self.price_only_pattern.compiled.match(line))

    def looks_like_item_line(self, line: str) -> bool:
        """
        Heuristic for a purchased-item line.

        Requires at least two letters and some length, rejects totals/tax labels,
        digit-dominated lines (more than twice as many digits as letters) and
        contact lines.
        """
        if len(line) <= 3 or self.is_noise_line(line):
            return False
        letters = sum(1 for ch in line if ch.isalpha())
        if letters < 2:
            return False
        digits = sum(1 for ch in line if ch.isdigit())
        if digits > letters * 2:
            return False
        if self.contact_pattern.compiled.search(line):
            return False
        return True

    def classify_line(self, index: int, line: str) -> ClassifiedLine:
        if self.is_noise_line(line):
            kind = LineKind.NOISE
        elif self.is_price_only_line(line):
            kind = LineKind.PRICE_ONLY
        elif self.looks_like_item_line(line):
            kind = LineKind.ITEM
        else:
            kind = LineKind.TEXT
        return ClassifiedLine(index=index, text=line, kind=kind)

    def classify(self, text: str) -> Tuple[ClassifiedLine, ...]:
        """Normalize and classify every line of the recognized text."""
        return tuple(
            self.classify_line(index, line)
            for index, line in enumerate(self.normalize_lines(text))
        )

    # ------------------------------------------------------------------
    # Field extractors
    # ------------------------------------------------------------------

    def find_date(self, lines: Sequence[ClassifiedLine]) -> Optional[dt.date]:
        """
        First date on the receipt, DD.MM.YY[YY] preferred over YYYY-MM-DD.

        Two-digit years >= 70 are 19xx, otherwise 20xx. A line whose first
        date match is impossible contributes nothing; scanning goes on.
        """
        for line in lines:
            for spec in self.date_patterns:
                match = spec.compiled.search(line.text)
                if not match:
                    continue
                if spec.name == 'day_month_year':
                    day, month, year = (int(group) for group in match.groups())
                    if len(match.group(3)) == 2:
                        year += 1900 if year >= 70 else 2000
                else:
                    year, month, day = (int(group) for group in match.groups())
                found = _to_date(year, month, day)
                if found is not None:
                    return found
                logger.debug("Skipping impossible date", extra={
                    "line_index": line.index,
                    "raw": match.group(0),
                })
                break
        return None

    def collect_amount_candidates(self, lines: Sequence[ClassifiedLine]) -> List[AmountCandidate]:
        """Every positive monetary token on every line, scored by its line context."""
        candidates: List[AmountCandidate] = []
        for line in lines:
            lower = line.lower
            has_total_keyword = any(keyword in lower for keyword in self.vocabulary.total_keywords)
            has_currency = bool(self.currency_pattern.compiled.search(lower))
            for match in self.amount_pattern.compiled.finditer(line.text):
                value = parse_decimal_input(match.group(1))
                if value is None or value <= 0:
                    continue
                candidates.append(AmountCandidate(
                    value=value,
                    score=score_amount(value, has_total_keyword, has_currency),
                    position=len(candidates),
                    raw_text=match.group(1),
                    line_index=line.index,
                    has_total_keyword=has_total_keyword,
                    has_currency=has_currency,
                ))
        return candidates

    def find_amount(self, lines: Sequence[ClassifiedLine]) -> Optional[float]:
        candidates = self.collect_amount_candidates(lines)
        best = select_best_candidate(candidates)
        if best is None:
            return None
        logger.debug("Amount candidates", extra={
            "top": [(c.raw_text, c.score) for c in rank_candidates(candidates)],
        })
        return best.value

    def find_tax_rate(self, lines: Sequence[ClassifiedLine]) -> Optional[float]:
        """First percentage on a VAT/tax labelled line."""
        for line in lines:
            lower = line.lower
            if not any(keyword in lower for keyword in self.vocabulary.tax_keywords):
                continue
            match = self.percent_pattern.compiled.search(line.text)
            if not match:
                continue
            rate = parse_decimal_input(match.group(1))
            if rate is None or not 0 <= rate < 100:
                continue
            return rate
        return None

    def extract_items(self, lines: Sequence[ClassifiedLine]) -> List[str]:
        """
        Purchased items, at most six.

        An item is either a line with a trailing price (price stripped) or an
        item line directly followed by a price-only line. If neither rule
        finds anything, up to four plain item lines are returned instead.
        """
        items: List[str] = []
        index = 0
        while index < len(lines) and len(items) < MAX_ITEMS:
            line = lines[index]
            index += 1
            if line.kind in (LineKind.NOISE, LineKind.PRICE_ONLY):
                continue

            if self.amount_pattern.compiled.search(line.text):
                cleaned = self.trailing_price_pattern.compiled.sub('', line.text, count=1).strip()
                if len(cleaned) >= MIN_ITEM_LENGTH and self.looks_like_item_line(cleaned):
                    items.append(cleaned)
                continue

            if line.kind != LineKind.ITEM:
                continue
            if index < len(lines) and lines[index].kind == LineKind.PRICE_ONLY:
                items.append(line.text)
                index += 1  # price line consumed with its item

        if not items:
            items = [line.text for line in lines if line.kind == LineKind.ITEM][:MAX_FALLBACK_ITEMS]

        return items

    def find_description(
        self,
        lines: Sequence[ClassifiedLine],
        items: Sequence[str] = ()
    ) -> Optional[str]:
        """First item-like line, else the first extracted item."""
        for line in lines:
            if line.kind == LineKind.ITEM:
                return line.text
        return items[0] if items else None

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def suggest(self, text: str) -> ExtractionSuggestion:
        """
        Recover date, total, tax rate, description and items from OCR text.

        Args:
            text: Raw recognized text

        Returns:
            ExtractionSuggestion with only the fields that were found
        """
        lines = self.classify(text)
        items = self.extract_items(lines)

        suggestion = ExtractionSuggestion(
            date=self.find_date(lines),
            amount=self.find_amount(lines),
            tax_rate=self.find_tax_rate(lines),
            description=self.find_description(lines, items),
            note=", ".join(items) if items else None,
        )

        logger.info("Parsed receipt text", extra={
            "lines": len(lines),
            "items": len(items),
            "fields": sorted(suggestion.model_dump(exclude_none=True)),
        })
        return suggestion


def _to_date(year: int, month: int, day: int) -> Optional[dt.date]:
    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


def suggest_from_text(text: str, vocabulary: ParserVocabulary = DEFAULT_VOCABULARY) -> ExtractionSuggestion:
    """Parse already-recognized receipt text. Pure: no engine, no I/O."""
    return ReceiptParser(vocabulary).suggest(text)
