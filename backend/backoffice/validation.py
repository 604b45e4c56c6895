from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import InvalidInput
from backoffice.time_utils import parse_iso_datetime


# Maximum money amount: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_CENTS = 999_999_999

# 1000% expressed in basis points
MAX_TAX_RATE_BPS = 100_000


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to send (security boundary)
    - required: fields that must be present
    """
    writable_fields: set[str]
    required: set[str] = field(default_factory=set)


def check_payload(payload: Any, policy: PayloadPolicy) -> dict:
    """
    Reject non-object payloads, unknown fields and missing required fields.
    Returns the payload unchanged (coercion happens field by field).
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidInput("Invalid JSON payload")

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise InvalidInput(f"Field not allowed: {k}")

    missing = sorted(f for f in policy.required if payload.get(f) is None)
    if missing:
        raise InvalidInput(f"Missing required fields: {', '.join(missing)}")

    return payload


def coerce_int(value: Any, name: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer parsing: rejects bools, floats with a fraction,
    scientific notation and decimal strings.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInput(f"{name} must be an integer")

    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidInput(f"{name} must be an integer, not a decimal")
        result = int(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise InvalidInput(f"{name} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise InvalidInput(f"{name} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise InvalidInput(f"{name} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise InvalidInput(f"{name} must be an integer")
    else:
        raise InvalidInput(f"{name} must be an integer")

    if minimum is not None and result < minimum:
        raise InvalidInput(f"{name} must be at least {minimum}")
    if maximum is not None and result > maximum:
        raise InvalidInput(f"{name} must be at most {maximum}")
    return result


def coerce_cents(value: Any, name: str) -> int:
    """Non-negative money amount in minor units."""
    return coerce_int(value, name, minimum=0, maximum=MAX_AMOUNT_CENTS)


def coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise InvalidInput(f"{name} must be a boolean")


def coerce_text(value: Any, name: str, *, max_length: int | None = None, required: bool = False) -> str | None:
    if value is None:
        if required:
            raise InvalidInput(f"{name} is required")
        return None
    if not isinstance(value, str):
        raise InvalidInput(f"{name} must be a string")
    text = value.strip()
    if required and not text:
        raise InvalidInput(f"{name} is required")
    if max_length is not None and len(text) > max_length:
        raise InvalidInput(f"{name} must be at most {max_length} characters")
    return text


def coerce_datetime(value: Any, name: str) -> datetime | None:
    """Accept datetimes or ISO-8601 strings; normalize to UTC-naive."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise InvalidInput(f"{name} must be an ISO-8601 datetime")
    raise InvalidInput(f"{name} must be an ISO-8601 datetime")


def percent_to_bps(value: Any, name: str = "tax_percent") -> int:
    """
    Convert a percentage (e.g. 7.5) to basis points (750).

    At most two decimal places are accepted; anything finer is rejected
    rather than silently rounded.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise InvalidInput(f"{name} must be a number")
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{name} must be a number")
    if not pct.is_finite():
        raise InvalidInput(f"{name} must be a number")
    if pct < 0:
        raise InvalidInput(f"{name} cannot be negative")
    bps = pct * 100
    if bps != bps.to_integral_value():
        raise InvalidInput(f"{name} supports at most two decimal places")
    bps_int = int(bps)
    if bps_int > MAX_TAX_RATE_BPS:
        raise InvalidInput(f"{name} is too large")
    return bps_int


def round_half_up(value: Decimal) -> int:
    """Nearest integer, halves rounded away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp_pagination(page: Any, limit: Any, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    """
    Lenient page/limit parsing for list endpoints: bad values fall back
    to defaults instead of failing the request.
    """
    try:
        page_num = int(page)
    except (TypeError, ValueError):
        page_num = 1
    try:
        limit_num = int(limit)
    except (TypeError, ValueError):
        limit_num = default_limit

    # Clamp
    if page_num < 1:
        page_num = 1
    if limit_num < 1:
        limit_num = 1
    if limit_num > max_limit:
        limit_num = max_limit
    return page_num, limit_num
