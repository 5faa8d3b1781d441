from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form stored in every table"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    """
    Normalize a datetime or ISO-8601 string to naive UTC.

    Aware values are converted to UTC first; naive values are assumed to be UTC already.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        value = datetime.fromisoformat(text)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
