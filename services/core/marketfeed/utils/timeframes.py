from __future__ import annotations

import re


INTERVAL_RE = re.compile(r"^(\d+)(s|m|h|d|w)?$")


def interval_to_seconds(interval: str) -> int:
    """Convert intervals like 300/30s/5m/1h/1d/1w into seconds. Bare numbers are seconds."""
    m = INTERVAL_RE.match(str(interval).strip().lower())
    if not m:
        raise ValueError(f"Unsupported interval '{interval}'. Use seconds or like 5m,1h,1d,1w.")
    n = int(m.group(1))
    unit = m.group(2) or "s"
    if n <= 0:
        raise ValueError(f"Interval must be positive, got '{interval}'.")
    if unit == "s":
        return n
    if unit == "m":
        return n * 60
    if unit == "h":
        return n * 3600
    if unit == "d":
        return n * 86400
    if unit == "w":
        return n * 7 * 86400
    raise ValueError(f"Unsupported interval unit '{unit}'.")
