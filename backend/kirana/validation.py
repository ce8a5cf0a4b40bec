from __future__ import annotations
from datetime import datetime
from kirana.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Largest single amount accepted from a client: ₹99,99,999.99
MAX_AMOUNT_CENTS = 999_999_999

BPS_MAX = 10_000


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate coupon code)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer parsing for JSON input.

    Rejects bools, floats, decimal strings and scientific notation so that
    money never passes through a float.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_datetime(value: Any, field: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime")
    raise ValidationError(f"{field} must be a datetime")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false")

    if isinstance(coltype, DateTime):
        dt = coerce_datetime(value, col.key)
        if dt is None:
            raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
        return dt

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _non_negative(patch: dict, key: str) -> None:
    val = patch.get(key)
    if val is not None and val < 0:
        raise ValidationError(f"{key} must be >= 0")


def enforce_rules_coupon(patch: dict, *, existing=None) -> None:
    """
    Coupon rules not captured by column metadata.

    `existing` is the stored coupon for PATCH, so cross-field checks see the
    merged result.
    """
    def merged(key):
        if key in patch:
            return patch[key]
        return getattr(existing, key, None) if existing is not None else None

    if "code" in patch and patch["code"] is not None:
        code = patch["code"].upper()
        if not code.replace("-", "").replace("_", "").isalnum():
            raise ValidationError("code may only contain letters, digits, '-' and '_'")
        patch["code"] = code

    discount_type = merged("discount_type")
    if discount_type not in ("percentage", "fixed"):
        raise ValidationError("discount_type must be 'percentage' or 'fixed'")

    for key in ("discount_value", "min_order_cents", "max_discount_cents"):
        _non_negative(patch, key)
        if patch.get(key) is not None and patch[key] > MAX_AMOUNT_CENTS:
            raise ValidationError(f"{key} cannot exceed {MAX_AMOUNT_CENTS}")

    discount_value = merged("discount_value")
    if discount_value is not None and discount_value <= 0:
        raise ValidationError("discount_value must be > 0")
    if discount_type == "percentage" and discount_value is not None and discount_value > BPS_MAX:
        raise ValidationError("percentage discount_value is basis points and cannot exceed 10000")

    for key in ("usage_limit", "per_user_limit"):
        val = patch.get(key)
        if val is not None and val < 1:
            raise ValidationError(f"{key} must be >= 1")

    usage_limit = merged("usage_limit")
    if existing is not None and usage_limit is not None and usage_limit < existing.used_count:
        raise ConflictError(f"usage_limit cannot be below used_count ({existing.used_count})")

    valid_from = merged("valid_from")
    valid_until = merged("valid_until")
    if valid_from is not None and valid_until is not None and valid_until < valid_from:
        raise ValidationError("valid_until must be after valid_from")


def enforce_rules_loyalty_settings(patch: dict) -> None:
    for key in (
        "min_redeem_points",
        "points_per_rupee_bps",
        "min_points_to_convert",
        "return_window_minutes",
    ):
        _non_negative(patch, key)
    for key in ("point_value_cents", "currency_per_point_cents"):
        val = patch.get(key)
        if val is not None and val <= 0:
            raise ValidationError(f"{key} must be > 0")
    val = patch.get("max_redeem_bps")
    if val is not None and not 0 <= val <= BPS_MAX:
        raise ValidationError("max_redeem_bps must be between 0 and 10000")
