from __future__ import annotations

from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
import re
from typing import Any

from esgflow.core.errors import ValidationError


MONTH_PERIOD_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
QUARTER_PERIOD_RE = re.compile(r"^\d{4}-Q[1-4]$")
_EPOCH_RE = re.compile(r"^\d{9,}(\.\d+)?$")
# Epoch values above this are milliseconds (1e11 seconds is past the year 5000).
EPOCH_MILLIS_THRESHOLD = 1e11

# Payload keys probed, in order, when a connector does not name its date field.
DATE_FIELD_CANDIDATES = (
    "period",
    "reporting_period",
    "recorded_at",
    "date",
    "period_start",
    "timestamp",
    "created_at",
    "updated_at",
    "published_at",
    "pubDate",
    "lastModifiedDateTime",
    "created",
    "updated",
    "ts",
)


def is_valid_period(value: str) -> bool:
    return bool(MONTH_PERIOD_RE.match(value) or QUARTER_PERIOD_RE.match(value))


def require_period(value: str) -> str:
    if not isinstance(value, str) or not is_valid_period(value):
        raise ValidationError(f"Malformed period {value!r}; expected YYYY-MM or YYYY-QN")
    return value


def format_period(moment: date, granularity: str = "month") -> str:
    if granularity == "quarter":
        return f"{moment.year:04d}-Q{(moment.month - 1) // 3 + 1}"
    return f"{moment.year:04d}-{moment.month:02d}"


def parse_moment(value: Any) -> date | None:
    # Accept dates, ISO strings, YYYY-MM / YYYY-QN periods and epoch seconds.
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Slack style epoch timestamps; ignore small numbers that are clearly not epochs.
        if value < 946684800:
            return None
        seconds = float(value)
        if seconds > EPOCH_MILLIS_THRESHOLD:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate:
        return None
    if _EPOCH_RE.match(candidate):
        return parse_moment(float(candidate))
    if MONTH_PERIOD_RE.match(candidate):
        return date(int(candidate[:4]), int(candidate[5:7]), 1)
    if QUARTER_PERIOD_RE.match(candidate):
        quarter = int(candidate[-1])
        return date(int(candidate[:4]), (quarter - 1) * 3 + 1, 1)
    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        # RFC 822 dates used by RSS.
        return parsedate_to_datetime(candidate)
    except (TypeError, ValueError, IndexError):
        return None


def derive_period(
    payload: dict[str, Any],
    *,
    arrived_at: datetime,
    granularity: str = "month",
    period_field: str | None = None,
) -> str:
    """Bucket a staged payload into a reporting period.

    The configured ``period_field`` wins; otherwise the first usable
    candidate field is used. Without a usable date the arrival date is used.
    """
    fields = (period_field,) if period_field else DATE_FIELD_CANDIDATES
    for name in fields:
        if name is None or name not in payload:
            continue
        raw = payload[name]
        if isinstance(raw, str) and QUARTER_PERIOD_RE.match(raw.strip()) and granularity == "quarter":
            return raw.strip()
        moment = parse_moment(raw)
        if moment is not None:
            return format_period(moment, granularity)
    return format_period(arrived_at, granularity)


def period_sort_key(period: str) -> tuple[int, int]:
    # Quarters sort at their first month so mixed granularities interleave sensibly.
    year = int(period[:4])
    if "Q" in period:
        return year, (int(period[-1]) - 1) * 3 + 1
    return year, int(period[5:7])
