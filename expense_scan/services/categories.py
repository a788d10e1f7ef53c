"""
Category suggestion from recognized receipt text.

Each active category is scored by how many of its own name/description
words appear in the text, plus a bonus from a static hint table that maps
category-name fragments to typical vendors and products.
"""

import logging
import re
from typing import Iterable, List, Optional, Sequence

from expense_scan.models.receipt import Category, CategoryHint
from expense_scan.utils.candidates import CategoryCandidate
from expense_scan.utils.scoring import (
    CATEGORY_HINT_BONUS,
    CATEGORY_MIN_SCORE,
    score_category_keyword,
    select_best_candidate,
)

logger = logging.getLogger(__name__)


DEFAULT_CATEGORY_HINTS = (
    CategoryHint(
        match_terms=("lebensmittel", "zutaten", "einkauf", "food", "aliment"),
        keyword_terms=("migros", "coop", "lidl", "aldi", "market", "cash"),
    ),
    CategoryHint(
        match_terms=("verpack", "pack", "box", "becher"),
        keyword_terms=("box", "becher", "deckel", "folie", "take", "away", "verpack"),
    ),
    CategoryHint(
        match_terms=("fahr", "treib", "tank", "fuel", "benz", "diesel"),
        keyword_terms=("shell", "bp", "avia", "agip", "eni", "esso", "tank"),
    ),
    CategoryHint(
        match_terms=("reinigung", "clean", "deterg"),
        keyword_terms=("reinigung", "putz", "deterg", "clean", "soap"),
    ),
    CategoryHint(
        match_terms=("marketing", "werbung", "promo"),
        keyword_terms=("werbung", "promo", "promotion", "facebook", "instagram", "ads", "flyer"),
    ),
    CategoryHint(
        match_terms=("standplatz", "miete", "gebuehr", "gebuehren"),
        keyword_terms=("miete", "rent", "gebuehr", "stand", "platz"),
    ),
    CategoryHint(
        match_terms=("versicherung", "insurance", "assicur"),
        keyword_terms=("versicherung", "insurance", "assicur"),
    ),
    CategoryHint(
        match_terms=("reparatur", "wartung", "service"),
        keyword_terms=("reparatur", "wartung", "service", "officina"),
    ),
)

_DIGRAPHS = (("ä", "ae"), ("ö", "oe"), ("ü", "ue"), ("ß", "ss"))

MIN_KEYWORD_LENGTH = 3


def normalize_text(value: str) -> str:
    """Lower-case and fold umlauts/sharp s to digraphs (Müller -> mueller)."""
    value = value.lower()
    for char, digraph in _DIGRAPHS:
        value = value.replace(char, digraph)
    return value


def tokenize(value: str) -> List[str]:
    """Words of three or more characters from the normalized value."""
    return [word for word in re.split(r'[^a-z0-9]+', normalize_text(value)) if len(word) >= MIN_KEYWORD_LENGTH]


def score_category(
    category: Category,
    haystack: str,
    hints: Sequence[CategoryHint] = DEFAULT_CATEGORY_HINTS
) -> float:
    """
    Score one category against normalized receipt text.

    Args:
        category: Category to score
        haystack: Receipt text, already passed through normalize_text
        hints: Hint table

    Returns:
        Running score (0 when nothing matches)
    """
    name = normalize_text(category.name)
    description = normalize_text(category.description or "")

    score = 0.0
    for keyword in tokenize(f"{name} {description}"):
        if keyword in haystack:
            score += score_category_keyword(keyword)

    for hint in hints:
        if not any(term in name for term in hint.match_terms):
            continue
        if any(keyword in haystack for keyword in hint.keyword_terms):
            score += CATEGORY_HINT_BONUS

    return score


def suggest_category(
    text: str,
    categories: Iterable[Category],
    hints: Sequence[CategoryHint] = DEFAULT_CATEGORY_HINTS
) -> Optional[int]:
    """
    Suggest the id of the best-matching active category.

    Inactive categories are ignored. The strictly highest score wins (the
    first category in list order on a tie) and must reach the confidence
    floor, otherwise there is no suggestion.

    Args:
        text: Recognized receipt text (may include description and note)
        categories: Categories from the store, active or not
        hints: Hint table

    Returns:
        Category id, or None
    """
    if not text:
        return None

    haystack = normalize_text(text)
    candidates = [
        CategoryCandidate(
            value=category.id,
            score=score_category(category, haystack, hints),
            position=position,
            name=category.name,
        )
        for position, category in enumerate(c for c in categories if c.is_active)
    ]

    best = select_best_candidate(candidates, min_score=CATEGORY_MIN_SCORE)
    if best is None:
        logger.debug("No category reached the confidence floor", extra={
            "categories": len(candidates),
        })
        return None

    logger.debug("Suggested category", extra={
        "category_id": best.value,
        "category_name": best.name,
        "score": best.score,
    })
    return best.value
