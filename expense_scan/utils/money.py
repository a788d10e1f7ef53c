"""
Locale-tolerant decimal parsing for receipt amounts and rates.

Handles the formats seen on Swiss, German and Italian receipts:
- Swiss: 1'234.50 (apostrophe or typographic apostrophe as thousands separator)
- German/Italian: 1.234,50
- Comma decimals: 12,5
- Plain: 8.1
"""

import math
import re
from typing import Optional, Union


# Whitespace and apostrophe-style thousands separators
_SEPARATOR_PATTERN = re.compile(r"[\s'’]")

# What remains after separator handling must be a plain decimal literal
_NUMBER_PATTERN = re.compile(r'^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$')


def parse_decimal_input(value: Union[None, int, float, str]) -> Optional[float]:
    """
    Parse a locale-ambiguous decimal into a finite float.

    The parser is not range-limited: negative values come back as negative
    floats and callers enforce their own bounds.

    Args:
        value: None, a number, or a string such as "1'234.50" or "1.234,50"

    Returns:
        Finite float, or None when the input carries no usable number

    Examples:
        >>> parse_decimal_input("1'234.50")
        1234.5
        >>> parse_decimal_input("1.234,50")
        1234.5
        >>> parse_decimal_input("  8,1 ")
        8.1
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    if not isinstance(value, str):
        return None

    normalized = value.strip()
    if not normalized:
        return None

    normalized = _SEPARATOR_PATTERN.sub('', normalized)

    if ',' in normalized and '.' in normalized:
        # 1.234,50 -> dot is the thousands separator, comma the decimal mark
        normalized = normalized.replace('.', '').replace(',', '.')
    else:
        normalized = normalized.replace(',', '.')

    if not _NUMBER_PATTERN.match(normalized):
        return None

    number = float(normalized)
    return number if math.isfinite(number) else None
