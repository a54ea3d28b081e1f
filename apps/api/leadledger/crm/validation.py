from __future__ import annotations

import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from leadledger.errors import ValidationError

MIN_NAME_LENGTH = 2
MIN_PHONE_DIGITS = 10

# Amounts are stored as Numeric(14, 2).
CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("999999999999.99")

_NON_DIGITS = re.compile(r"[^0-9]")


def cell_text(value: Any) -> str:
    """Render a raw field (form value or spreadsheet cell) as trimmed text."""

    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def normalize_phone(value: Any) -> str:
    """Keep ASCII digits only, preserving a leading ``+``."""

    text = cell_text(value)
    digits = _NON_DIGITS.sub("", text)
    if not digits:
        return ""
    return f"+{digits}" if text.startswith("+") else digits


def require_phone(value: Any) -> str:
    phone = normalize_phone(value)
    if not phone:
        raise ValidationError("phone is required", details={"field": "phone"})
    if len(phone.lstrip("+")) < MIN_PHONE_DIGITS:
        raise ValidationError(
            f"phone must contain at least {MIN_PHONE_DIGITS} digits",
            details={"field": "phone"},
        )
    return phone


def require_text(value: Any, field: str, *, min_length: int = 1) -> str:
    text = cell_text(value)
    if not text:
        raise ValidationError(f"{field} is required", details={"field": field})
    if len(text) < min_length:
        raise ValidationError(
            f"{field} must be at least {min_length} characters",
            details={"field": field},
        )
    return text


def optional_text(value: Any) -> str | None:
    text = cell_text(value)
    return text or None


def to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"{field} must be a finite number", details={"field": field})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", details={"field": field}) from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"field": field})
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} is too large", details={"field": field})
    if amount != amount.quantize(CENT):
        raise ValidationError(
            f"{field} cannot have more than 2 decimal places",
            details={"field": field},
        )
    return amount.quantize(CENT)


def require_positive_amount(value: Any, field: str = "amount") -> Decimal:
    if value is None:
        raise ValidationError(f"{field} is required", details={"field": field})
    amount = to_decimal(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than 0", details={"field": field})
    return amount


def require_non_negative_amount(value: Any, field: str) -> Decimal:
    amount = to_decimal(value, field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative", details={"field": field})
    return amount
