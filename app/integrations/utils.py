"""
Integration Utilities
Shared helpers for provider payload processing.
"""

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Xero's legacy JSON date format: /Date(1518685950940+0000)/
_MS_DATE_PATTERN = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def to_json_serializable(obj: Any) -> Any:
    """
    Recursively convert any object to JSON-serializable format.

    Handles Xero SDK objects, enums, dates, decimals, etc. Decimals become
    strings, not floats, so amounts keep their exact digits.

    Args:
        obj: Object to convert

    Returns:
        JSON-serializable representation
    """
    if obj is None:
        return None

    if isinstance(obj, dict):
        return {k: to_json_serializable(v) for k, v in obj.items()}

    if isinstance(obj, (list, tuple)):
        return [to_json_serializable(item) for item in obj]

    # Xero SDK models
    if hasattr(obj, "to_dict"):
        return to_json_serializable(obj.to_dict())

    if isinstance(obj, (str, int, float, bool)):
        return obj

    if isinstance(obj, Decimal):
        return str(obj)

    if isinstance(obj, (date, datetime)):
        return obj.isoformat()

    # Enums
    if hasattr(obj, "value"):
        return to_json_serializable(obj.value)

    return str(obj)


def parse_amount(value: Any) -> Decimal:
    """
    Parse a provider amount into a Decimal without losing digits.

    Floats go through ``str`` so 10.1 stays 10.1 rather than
    10.0999999999999996447286321199499070644378662109375.

    Raises:
        ValueError: If the value is missing or not numeric
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"not an amount: {value!r}")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"not an amount: {value!r}") from None

    if not result.is_finite():
        raise ValueError(f"not a finite amount: {value!r}")
    return result


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a provider date.

    Accepts ISO dates (``2024-03-01``), ISO datetimes, Xero's
    ``/Date(ms+0000)/`` format, and date/datetime objects.

    Raises:
        ValueError: If the value is present but unparseable
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    match = _MS_DATE_PATTERN.match(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc).date()

    if "T" in text:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime into aware UTC; None when absent or unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Ignoring unparseable datetime %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_since(since: datetime) -> str:
    """UTC ISO-8601 timestamp used in provider modified-since filters."""
    return since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")
