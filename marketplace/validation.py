"""Input cleaning shared by the services."""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

import bleach

from marketplace.errors import ValidationError

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
CENTS = Decimal("0.01")
# Largest amount a Numeric(10, 2) column holds
MAX_MONEY = Decimal("99999999.99")
# Largest value a 64-bit integer column holds
MAX_INT = 2**63 - 1


def clean_text(value: Any) -> Optional[str]:
    """Strip markup and surrounding whitespace; blank becomes None."""
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], strip=True).strip()
    return cleaned or None


def require_fields(data: Dict[str, Any], names: Iterable[str]) -> Dict[str, str]:
    """Return the named fields cleaned, or raise for the first blank one."""
    cleaned: Dict[str, str] = {}
    for name in names:
        value = clean_text(data.get(name))
        if not value:
            raise ValidationError(f"{name.capitalize()} is required", field=name)
        cleaned[name] = value
    return cleaned


def normalize_username(value: str) -> str:
    if not USERNAME_PATTERN.match(value):
        raise ValidationError(
            "Username may only contain letters, digits, '.', '_' or '-' (3-50 characters)",
            field="username",
        )
    return value.lower()


def validate_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValidationError("Email address is invalid", field="email")
    return value


def parse_money(value: Any, field: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", field=field) from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be zero or more", field=field)
    return quantize_money(amount, field)


def quantize_money(amount: Decimal, field: str) -> Decimal:
    """Round half-up to cents; amounts that do not fit a Numeric(10, 2) column are rejected."""
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} must not exceed {MAX_MONEY}", field=field, maximum=str(MAX_MONEY))
    rounded = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if rounded > MAX_MONEY:
        raise ValidationError(f"{field} must not exceed {MAX_MONEY}", field=field, maximum=str(MAX_MONEY))
    return rounded


def parse_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a whole number", field=field)
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{field} must be a whole number", field=field)
        number = int(value)
    else:
        try:
            number = int(str(value).strip())
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a whole number", field=field) from None
    if abs(number) > MAX_INT:
        raise ValidationError(f"{field} is out of range", field=field)
    return number


def parse_date(value: Any, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError(f"{field} is required", field=field)
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format", field=field) from None
