"""Field-level comparison helpers for gates and reconciliation."""
import re
from typing import Any, Dict, Optional


def normalize_text(text: str) -> str:
    """Normalize text for comparison.

    Args:
        text: The text to normalize

    Returns:
        Upper-cased string with trailing punctuation and repeated spaces removed
    """
    text = text.strip().upper()

    # Remove trailing punctuation (periods, commas)
    text = re.sub(r'[.,;:]+$', '', text)

    # Normalize multiple spaces
    text = re.sub(r'\s+', ' ', text).strip()

    return text


def relative_deviation(value: float, expected: float, floor: float = 0.1) -> float:
    """|value - expected| / |expected|, with the denominator floored to avoid division by zero."""
    return abs(value - expected) / max(abs(expected), floor)


def get_tolerance_for_field(field_name: str, tolerances: Dict, categories: Dict) -> Dict:
    """Determine which tolerance band to use for a field."""
    for category, fragments in categories.items():
        if any(f in field_name for f in fragments):
            return tolerances.get(category, tolerances["default"])

    return tolerances["default"]


def as_number(value: Any) -> Optional[float]:
    """Coerce an extracted value to float, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return None
