import dateparser
from datetime import date, datetime, timedelta
from typing import Optional, Union
import pytz
import re

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def utc_now() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(pytz.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if dt.tzinfo is None:
        return pytz.utc.localize(dt)
    return dt


def to_iso_date(value: Union[str, date, datetime, None]) -> str:
    """Normalize a date-ish value to YYYY-MM-DD.

    Accepts date objects, ISO strings (with or without a time part) and
    free-form text understood by dateparser. Returns "" when nothing parses.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if not text:
        return ""

    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            pass

    dt = dateparser.parse(text, settings={"PREFER_DAY_OF_MONTH": "first"})
    if dt:
        return dt.date().isoformat()
    return ""


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware datetime (None if empty)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = str(value).strip().replace("Z", "+00:00")
    return ensure_aware(datetime.fromisoformat(text))


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start) / timedelta(milliseconds=1))


def format_duration_minutes(total_minutes: int) -> str:
    """
    Convert duration in minutes to a compact human string, e.g. 85 -> "1h 25min".
    """
    if total_minutes is None or total_minutes < 0:
        return ""
    h = total_minutes // 60
    m = total_minutes % 60
    if h and m:
        return f"{h}h {m}min"
    if h:
        return f"{h}h"
    return f"{m}min"
