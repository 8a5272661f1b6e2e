"""
Typed payloads accepted at the lead boundary.

Request bodies arrive as loose dicts. They are turned into these frozen
structs once, on the way in; anything with unknown keys or an unsupported
schema version is rejected there, so business logic never has to guess at
legacy shapes. The struct's as_dict() form is what gets persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from ..errors import ValidationError

CUSTOMER_SNAPSHOT_VERSION = 1


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _to_positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer", {"field": field_name})
    if value <= 0:
        raise ValidationError(f"{field_name} must be positive", {"field": field_name})
    return value


def _reject_unknown(raw: dict, allowed: set[str], what: str) -> None:
    unknown = set(raw) - allowed
    if unknown:
        raise ValidationError(f"unknown {what} fields: {sorted(unknown)}", {"fields": sorted(unknown)})


@dataclass(frozen=True)
class CustomerSnapshot:
    phone: str
    name: str | None = None
    address: str | None = None
    city: str | None = None
    landmark: str | None = None
    version: int = CUSTOMER_SNAPSHOT_VERSION

    FIELDS = ("version", "phone", "name", "address", "city", "landmark")

    @classmethod
    def from_dict(cls, raw: Any) -> "CustomerSnapshot":
        if isinstance(raw, CustomerSnapshot):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError("customer must be an object")
        _reject_unknown(raw, set(cls.FIELDS), "customer")

        version = raw.get("version", CUSTOMER_SNAPSHOT_VERSION)
        if version != CUSTOMER_SNAPSHOT_VERSION:
            raise ValidationError(f"unsupported customer snapshot version: {version}")

        phone = _to_text(raw.get("phone"))
        if not phone:
            raise ValidationError("customer phone is required")

        return cls(
            phone=phone,
            name=_to_text(raw.get("name")),
            address=_to_text(raw.get("address")),
            city=_to_text(raw.get("city")),
            landmark=_to_text(raw.get("landmark")),
        )

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LeadItem:
    variant_id: int
    quantity: int = 1
    unit_price_cents: int | None = None

    FIELDS = ("variant_id", "quantity", "unit_price_cents")

    @classmethod
    def from_dict(cls, raw: Any) -> "LeadItem":
        if isinstance(raw, LeadItem):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError("lead item must be an object")
        _reject_unknown(raw, set(cls.FIELDS), "lead item")

        price = raw.get("unit_price_cents")
        if price is not None and (isinstance(price, bool) or not isinstance(price, int) or price < 0):
            raise ValidationError("unit_price_cents must be a non-negative integer")

        return cls(
            variant_id=_to_positive_int(raw.get("variant_id"), "variant_id"),
            quantity=_to_positive_int(raw.get("quantity", 1), "quantity"),
            unit_price_cents=price,
        )

    def as_dict(self) -> dict:
        return asdict(self)


def parse_lead_items(raw_items: Any) -> list[LeadItem]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, (list, tuple)):
        raise ValidationError("items must be a list")
    return [LeadItem.from_dict(item) for item in raw_items]
