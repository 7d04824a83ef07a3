# formatting.py
from datetime import datetime
from typing import Optional, Union
from urllib.parse import unquote

DateLike = Union[datetime, str, None]


def parse_date(value: DateLike) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def timestamp_of(value: DateLike) -> float:
    """Seconds since the epoch; missing or unparsable dates count as 0."""
    parsed = parse_date(value)
    if parsed is None:
        return 0.0
    return parsed.timestamp()


def format_date(value: DateLike) -> str:
    """Long US form, e.g. "March 5, 2024"."""
    if value is None or value == "":
        return "N/A"
    parsed = parse_date(value)
    if parsed is None:
        return "Invalid Date"
    return f"{parsed:%B} {parsed.day}, {parsed.year}"


def format_long_date(value: datetime) -> str:
    """Weekday form used on the dashboard, e.g. "Tuesday, March 5, 2024"."""
    return f"{value:%A}, {format_date(value)}"


def format_doctor_name(name: Optional[str]) -> str:
    """Shorten "Jane Alice Smith" to "J. Smith"."""
    if not name:
        return "N/A"
    parts = name.split()
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0][0].upper()}. {parts[-1]}"


def first_name(name: Optional[str], default: str = "") -> str:
    if not name or not name.split():
        return default
    return name.split()[0]


def file_name_from_url(url: Optional[str]) -> str:
    """Trailing path segment of a URL, ignoring any query string, percent-decoded."""
    if not url:
        return ""
    return unquote(url.split("?", 1)[0].split("/")[-1])
