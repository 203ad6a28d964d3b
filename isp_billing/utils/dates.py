from datetime import date, datetime, timezone

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from ..core.errors import InvalidInput


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value, field: str = "date") -> datetime:
    """
    Accept a datetime, a date or an ISO-like string.
    Aware values are converted to naive UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            raise InvalidInput(f"Invalid date format for {field}: {value!r}")
    else:
        raise InvalidInput(f"Invalid date format for {field}: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def add_months(moment: datetime, months: int) -> datetime:
    # relativedelta clamps Jan 31 + 1 month to Feb 28/29
    return moment + relativedelta(months=months)
