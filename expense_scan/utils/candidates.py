"""
Candidate dataclasses for extraction scoring.

Each candidate represents a potential extracted value with the metadata
used to score it. Candidates are collected in scan order; that order is
what breaks score ties.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Candidate:
    """Base class for extraction candidates."""
    value: Any
    score: float
    position: int  # Order in which the candidate was found


@dataclass(frozen=True)
class AmountCandidate(Candidate):
    """
    Candidate for the receipt total.

    Scoring factors:
    - value: the parsed amount itself (larger amounts win among equals)
    - has_total_keyword: line carries a total/tax label
    - has_currency: line carries a CHF/Fr. token
    """
    value: float
    raw_text: str = ""
    line_index: int = -1
    has_total_keyword: bool = False
    has_currency: bool = False


@dataclass(frozen=True)
class CategoryCandidate(Candidate):
    """Candidate for the suggested category (value is the category id)."""
    value: int
    name: str = ""
