# =============================================================================
# caseflow_core/offline/serialization.py
# Canonical JSON for payload, metadata and snapshot columns
# =============================================================================
"""
Opaque blob columns (form payloads, attachment metadata, sync payloads and
conflict snapshots) are stored as canonical JSON text: sorted keys, compact
separators, UTF-8. The same value always serializes to the same string, so
`loads(canonical_json(x)) == x` and snapshots compare byte-for-byte.
"""

from __future__ import annotations
import json
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

import numpy as np
import pandas as pd

from caseflow_core.errors import ValidationError


def _default(value: Any) -> Any:
    """Normalise values json cannot encode natively."""
    if value is pd.NaT or value is pd.NA:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return _clean_float(float(value))
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.ndarray):
        return _normalise(value.tolist())
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(_normalise(v) for v in value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _clean_float(value: float) -> Optional[float]:
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def _normalise(value: Any) -> Any:
    """Recursively replace NaN/inf floats with None (JSON has no NaN)."""
    if isinstance(value, float):
        return _clean_float(value)
    if isinstance(value, dict):
        return {str(k): _normalise(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    """
    Serialize a value to canonical JSON text.

    Raises:
        ValidationError: If the value contains something that cannot be
            represented as JSON
    """
    try:
        return json.dumps(
            _normalise(value),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_default,
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Value is not JSON serializable: {e}") from e


def loads(text: Optional[str], default: Any = None) -> Any:
    """Deserialize a JSON column; empty/NULL columns yield `default`."""
    if text is None or text == "":
        return default
    return json.loads(text)
