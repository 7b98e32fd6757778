"""
JSON utilities for cleaning LLM responses.
"""

from typing import Any, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def as_float(value: Any, low: float, high: float, default: Optional[float] = None) -> Optional[float]:
    """Coerce a model-provided number into [low, high], falling back to default when invalid."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not low <= number <= high:
        return default
    return number


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1')
    return bool(value)
