"""
Scoring functions for extraction candidates.

Scores are unbounded running totals. The highest-scoring candidate is
selected; on an exact tie the candidate found first wins.
"""

from typing import Iterable, List, Optional, TypeVar

from .candidates import Candidate

__all__ = [
    'TOTAL_KEYWORD_BONUS', 'CURRENCY_BONUS',
    'CATEGORY_HINT_BONUS', 'CATEGORY_MIN_SCORE', 'MAX_KEYWORD_SCORE',
    'score_amount', 'score_category_keyword',
    'select_best_candidate', 'rank_candidates',
]

T = TypeVar('T', bound=Candidate)

# Amount scoring: labelled totals dominate any raw magnitude seen on a receipt
TOTAL_KEYWORD_BONUS = 1000.0
CURRENCY_BONUS = 500.0

# Category scoring
MAX_KEYWORD_SCORE = 4.0
CATEGORY_HINT_BONUS = 3.0
CATEGORY_MIN_SCORE = 2.0  # Confidence floor


def score_amount(value: float, has_total_keyword: bool, has_currency: bool) -> float:
    """
    Score an amount candidate.

    Base score is the amount itself, +1000 on a total/tax line,
    +500 more when the line also names the currency.
    """
    score = value
    if has_total_keyword:
        score += TOTAL_KEYWORD_BONUS
    if has_currency:
        score += CURRENCY_BONUS
    return score


def score_category_keyword(keyword: str) -> float:
    """Score a category-name token found in the receipt text (longer = stronger, capped)."""
    return min(MAX_KEYWORD_SCORE, 1 + len(keyword) / 5)


def select_best_candidate(
    candidates: Iterable[T],
    min_score: Optional[float] = None
) -> Optional[T]:
    """
    Select the highest-scoring candidate.

    Args:
        candidates: Candidates in the order they were found
        min_score: Optional floor; a best score below it yields None

    Returns:
        Best candidate, or None if there is none or it is below the floor
    """
    best: Optional[T] = None
    for candidate in candidates:
        # Strict comparison keeps the first candidate on ties
        if best is None or candidate.score > best.score:
            best = candidate

    if best is None:
        return None

    if min_score is not None and best.score < min_score:
        return None

    return best


def rank_candidates(candidates: Iterable[T], top_n: int = 3) -> List[T]:
    """Top N candidates by score, ties kept in discovery order (for review UIs and debugging)."""
    return sorted(candidates, key=lambda c: c.score, reverse=True)[:top_n]
