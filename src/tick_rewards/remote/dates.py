"""TickTick timestamp parsing."""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_ticktick_date(value: str | int | float | None) -> datetime | None:
    """Parse TickTick timestamps such as ``2025-10-23T01:00:00.000+0000``.

    Numbers are treated as epoch milliseconds. Returns None for absent or
    unparseable input.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        if not math.isfinite(value):
            return None
        return datetime.fromtimestamp(value / 1000, tz=UTC)

    text = value.strip()
    if not text:
        return None
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
