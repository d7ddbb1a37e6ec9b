"""Typed accessors over open provider JSON maps.

Provider payloads are arbitrary ``dict`` trees. ``PayloadView`` reads one key
at a time and only returns a value when it has the requested JSON type;
anything else (missing key, ``null``, wrong type) comes back as ``None``.
That keeps "not reported upstream" distinct from "reported as zero".
"""

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def parse_instant(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into a naive UTC datetime.

    Returns None for empty or unparseable input.
    """
    if not value:
        return None
    # fromisoformat before 3.11 only accepts 3 or 6 fractional digits
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value)
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Could not parse instant {value!r}")
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def id_to_string(value: Any) -> str:
    """Render a provider identifier (string or integral number) as text."""
    if isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value))
    return ""


class PayloadView:
    """Read-only view of one JSON object."""

    def __init__(self, data: Any):
        self._data = data if isinstance(data, dict) else {}

    @property
    def raw(self) -> dict:
        return self._data

    def string(self, key: str) -> str | None:
        value = self._data.get(key)
        return value if isinstance(value, str) else None

    def number(self, key: str) -> float | None:
        value = self._data.get(key)
        # bool is an int subclass but never a JSON number
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        value = float(value)
        return value if math.isfinite(value) else None

    def integer(self, key: str) -> int | None:
        """Number rounded half away from zero to an int (44.5 -> 45)."""
        value = self.number(key)
        if value is None:
            return None
        return int(math.copysign(math.floor(abs(value) + 0.5), value))

    def boolean(self, key: str) -> bool | None:
        value = self._data.get(key)
        return value if isinstance(value, bool) else None

    def mapping(self, key: str) -> "PayloadView":
        """Nested object; an empty view when absent or not an object."""
        return PayloadView(self._data.get(key))

    def instant(self, key: str) -> datetime | None:
        return parse_instant(self.string(key))
