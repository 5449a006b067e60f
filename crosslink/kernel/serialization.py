"""
JSONB payload helpers.

Evidence, audit details, identity metadata and raw platform data are stored as
JSONB. Values are coerced to JSON primitives before they leave Python, and
read back as plain dicts whatever form the driver returns them in.
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from crosslink.kernel.time import isoformat_z


def to_jsonable(value: Any) -> Any:
    """Coerce evidence and audit values into JSON-compatible primitives."""
    if value is None or isinstance(value, (str, bool, int)):
        return value

    if isinstance(value, float):
        # JSONB has no NaN or Infinity.
        return value if math.isfinite(value) else None

    if isinstance(value, Enum):
        return to_jsonable(value.value)

    if isinstance(value, datetime):
        return isoformat_z(value)

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return to_jsonable(model_dump())

    raise TypeError(f"Unsupported type for JSONB payload: {type(value)!r}")


def json_dumps_canonical(value: Any) -> str:
    """Stable encoding: sorted keys, compact separators."""
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    )


def to_jsonb_param(value: Mapping[str, Any] | None) -> str | None:
    """Bind parameter for a `CAST(:param AS JSONB)` placeholder."""
    if value is None:
        return None
    return json_dumps_canonical(value)


def from_jsonb(value: Any) -> dict[str, Any]:
    """Read a JSONB column; asyncpg returns text unless a codec is registered."""
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        decoded = json.loads(value)
        return decoded if isinstance(decoded, dict) else {}
    return dict(value)
