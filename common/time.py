from __future__ import annotations

import re
from datetime import datetime, timezone

_MONTH_DIRECTIVE = re.compile(r"%([%B])")

_MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def now_ms() -> float:
    return datetime.now(tz=timezone.utc).timestamp() * 1000.0


def to_iso_utc(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


def date_partition(ts_ms: float, fmt: str = "%d%B%Y") -> str:
    """Render the local calendar date of ``ts_ms`` for use as a key partition.

    ``%B`` is expanded with English month names regardless of the process
    locale, so the default format yields e.g. ``"07October2024"``.
    """
    dt = datetime.fromtimestamp(ts_ms / 1000.0)
    month = _MONTHS[dt.month - 1]
    fmt = _MONTH_DIRECTIVE.sub(lambda m: month if m.group(1) == "B" else "%%", fmt)
    return dt.strftime(fmt)
