from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text

from .time_utils import parse_iso_datetime


# Upper bound for unit prices: 9,999,999.99 in minor units
MAX_PRICE_CENTS = 999_999_999

# Upper bound for a single allocation; guards integer overflow in snapshots and points
MAX_REQUEST_QUANTITY = 1_000_000


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., request already decided)."""


class NotFoundError(LookupError):
    """404-level missing entity."""


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Allowlist for JSON payloads:
    - writable_fields: what callers are allowed to set (security boundary)
    - required: fields that must be present
    """
    writable_fields: frozenset[str]
    required: frozenset[str] = field(default_factory=frozenset)


def _columns_by_key(model) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def coerce_int(key: str, value: Any) -> int:
    """
    Strict integer coercion: rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(*, model, payload: dict | None, policy: PayloadPolicy) -> dict:
    """
    Validate + normalize incoming JSON against the model's column metadata
    and a writable-field allowlist. Returns a cleaned dict.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    missing = sorted(f for f in policy.required if f not in payload)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)
    cleaned: dict = {}

    for key, raw in payload.items():
        if key not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {key}")
        col = cols.get(key)
        if col is None:
            raise ValidationError(f"Unknown field: {key}")

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null")
            cleaned[key] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            raise ValidationError(f"{key} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{key} exceeds max length {col.type.length}")

        cleaned[key] = val

    return cleaned


def enforce_rules_purchase_request(quantity: int, unit_price_cents: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be > 0")
    if quantity > MAX_REQUEST_QUANTITY:
        raise ValidationError(f"quantity cannot exceed {MAX_REQUEST_QUANTITY}")
    if unit_price_cents is None or unit_price_cents < 0:
        raise ValidationError("unit_price_cents must be >= 0")
    if unit_price_cents > MAX_PRICE_CENTS:
        raise ValidationError(f"unit_price_cents cannot exceed {MAX_PRICE_CENTS}")


def require_reason(reason: str | None, *, field_name: str = "reason") -> str:
    """Non-empty, trimmed free-text reason (rejections, manual releases)."""
    if reason is None or not str(reason).strip():
        raise ValidationError(f"{field_name} is required")
    cleaned = str(reason).strip()
    if len(cleaned) > 255:
        raise ValidationError(f"{field_name} exceeds max length 255")
    return cleaned
