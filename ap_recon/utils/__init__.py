"""
Shared utilities and helpers.
"""

import json
from typing import Any, Dict, Optional
from datetime import datetime


def serialize_for_json(obj: Any) -> Any:
    """Serialize objects that aren't JSON-serializable by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    elif hasattr(obj, 'model_dump'):  # Pydantic model
        return obj.model_dump()
    elif hasattr(obj, '__dict__'):
        return obj.__dict__
    return str(obj)


def dict_to_json_string(data: Dict) -> str:
    """Convert dict to JSON string, handling non-serializable types."""
    return json.dumps(data, default=serialize_for_json, indent=2)


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Coerce store values ("12.5", 12, None) to float."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def calculate_percentage_variance(actual: float, expected: float) -> float:
    """Signed percentage difference of actual against expected."""
    if expected == 0:
        return 0.0
    return (actual - expected) / expected * 100


def format_money(value: float) -> str:
    """Format a non-negative amount as $1,234.56."""
    return f"${abs(value):,.2f}"


def format_signed_money(value: float) -> str:
    """Format a dollar impact with an explicit sign: +$5.00 / -$5.00."""
    sign = "+" if value > 0 else "-" if value < 0 else ""
    return f"{sign}${abs(value):.2f}"


def format_number(value: Any) -> str:
    """Render 10.0 as "10" and 2.5 as "2.5"."""
    number = to_float(value)
    if number is None:
        return str(value)
    if number == int(number):
        return str(int(number))
    return f"{number:g}"
