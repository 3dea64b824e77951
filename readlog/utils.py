import calendar
from datetime import datetime, timezone


def normalize_email(email: str) -> str:
    """Normalize email by stripping spaces and lowercasing."""
    return email.strip().lower()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Shift a datetime by whole calendar months, clamping to the last day of the month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
