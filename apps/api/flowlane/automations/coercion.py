from __future__ import annotations

import json
import math
from typing import Any


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def to_number(value: Any) -> float:
    """Numeric reading of a field value; anything non-numeric becomes NaN."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return math.nan
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan
