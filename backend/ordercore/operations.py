# Overview: Result-returning operation surface over the services; the entry point for callers.

"""
Operation surface.

Each function wraps one service call and returns a plain value:

    {"success": True, "data": ...}
    {"success": False, "error": {"code": ..., "message": ..., "details": ...}}

Expected business failures (EngineError) come back as error values. Anything
else is logged with its traceback and reported as INTERNAL_ERROR; the
session has already been rolled back by run_with_retry.

Every mutating operation takes an explicit actor_id. Privileged moves take
an `override_reason`, which is turned into an Override for that call only.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable

from .errors import EngineError, ValidationError
from .services import (
    archive_service,
    dispatch_service,
    inventory_service,
    lead_service,
    order_service,
    payment_service,
    return_service,
    settlement_service,
    vendor_service,
)
from .services.state_machine import Override
from .time_utils import parse_iso_date, parse_iso_datetime, to_utc_z

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# RESULT HELPERS
# =============================================================================

def serialize(value: Any) -> Any:
    """Convert models (anything with to_dict) and containers into JSON-safe data."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def execute(func: Callable[[], Any], *, name: str | None = None) -> dict:
    name = name or getattr(func, "__name__", "operation")
    try:
        return {"success": True, "data": serialize(func())}
    except EngineError as exc:
        logger.info("%s failed: %s %s", name, exc.code, exc.message)
        return {"success": False, "error": exc.to_dict()}
    except Exception:
        logger.exception("%s failed unexpectedly", name)
        return {
            "success": False,
            "error": {"code": INTERNAL_ERROR, "message": "internal error", "details": {}},
        }


def _override(reason: str | None, actor_id: int) -> Override | None:
    if reason is None:
        return None
    return Override(reason=reason, actor_id=actor_id)


def _as_date(value, field: str = "date") -> date:
    if isinstance(value, date):
        return value
    try:
        parsed = parse_iso_date(value)
    except (TypeError, ValueError, AttributeError):
        parsed = None
    if parsed is None:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", {field: value})
    return parsed


def _as_datetime(value, field: str = "datetime") -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"{field} must be an ISO-8601 datetime", {field: value}) from None


# =============================================================================
# LEADS
# =============================================================================

def create_lead(*, customer: dict, items: list, actor_id: int, **fields) -> dict:
    def _create():
        if "follow_up_at" in fields:
            fields["follow_up_at"] = _as_datetime(fields["follow_up_at"], "follow_up_at")
        return lead_service.create_lead(customer=customer, items=items, actor_id=actor_id, **fields)

    return execute(_create, name="create_lead")


def change_lead_status(lead_id: int, status: str, *, actor_id: int, follow_up_at=None, notes=None) -> dict:
    return execute(
        lambda: lead_service.change_lead_status(
            lead_id, status, actor_id=actor_id,
            follow_up_at=_as_datetime(follow_up_at, "follow_up_at"), notes=notes,
        ),
        name="change_lead_status",
    )


def restore_lead(lead_id: int, *, actor_id: int, override_reason: str) -> dict:
    return execute(
        lambda: lead_service.restore_lead(lead_id, actor_id=actor_id, override=_override(override_reason, actor_id)),
        name="restore_lead",
    )


def convert_lead(lead_id: int, *, actor_id: int) -> dict:
    return execute(lambda: lead_service.convert(lead_id, actor_id=actor_id), name="convert_lead")


def redirect_order(failed_order_id: int, target_lead_id: int, *, reason: str, actor_id: int) -> dict:
    return execute(
        lambda: lead_service.redirect(failed_order_id, target_lead_id, reason=reason, actor_id=actor_id),
        name="redirect_order",
    )


# =============================================================================
# ORDERS
# =============================================================================

def create_order(*, actor_id: int, **fields) -> dict:
    return execute(lambda: order_service.create_order(actor_id=actor_id, **fields), name="create_order")


def get_order(order_id: int) -> dict:
    return execute(lambda: order_service.get_order(order_id).to_dict(include_items=True), name="get_order")


def get_order_by_code(code: str) -> dict:
    return execute(lambda: order_service.get_order_by_code(code).to_dict(include_items=True), name="get_order_by_code")


def get_order_activity(order_id: int) -> dict:
    return execute(lambda: order_service.get_order_activity(order_id), name="get_order_activity")


def change_order_status(
    order_id: int,
    status: str,
    *,
    actor_id: int,
    reason: str | None = None,
    override_reason: str | None = None,
) -> dict:
    return execute(
        lambda: order_service.change_order_status(
            order_id, status, actor_id=actor_id, reason=reason, override=_override(override_reason, actor_id),
        ),
        name="change_order_status",
    )


def pack_order(order_id: int, *, actor_id: int) -> dict:
    return execute(lambda: order_service.pack_order(order_id, actor_id=actor_id), name="pack_order")


def cancel_order(order_id: int, *, actor_id: int, reason: str, override_reason: str | None = None) -> dict:
    return execute(
        lambda: order_service.cancel_order(
            order_id, actor_id=actor_id, reason=reason, override=_override(override_reason, actor_id),
        ),
        name="cancel_order",
    )


def dispatch_order(order_id: int, *, actor_id: int, rider_id=None, courier_partner=None) -> dict:
    return execute(
        lambda: order_service.dispatch_order(
            order_id, actor_id=actor_id, rider_id=rider_id, courier_partner=courier_partner,
        ),
        name="dispatch_order",
    )


# =============================================================================
# PAYMENTS
# =============================================================================

def record_advance_payment(order_id: int, amount_cents: int, method: str, *, actor_id: int, **refs) -> dict:
    return execute(
        lambda: payment_service.record_advance_payment(order_id, amount_cents, method, actor_id=actor_id, **refs),
        name="record_advance_payment",
    )


def void_payment(payment_id: int, *, actor_id: int, reason: str) -> dict:
    return execute(
        lambda: payment_service.void_payment(payment_id, actor_id=actor_id, reason=reason),
        name="void_payment",
    )


# =============================================================================
# INVENTORY
# =============================================================================

def create_variant(*, actor_id: int | None = None, **fields) -> dict:
    return execute(lambda: inventory_service.create_variant(actor_id=actor_id, **fields), name="create_variant")


def receive_stock(variant_id: int, quantity: int, *, actor_id: int | None = None, **refs) -> dict:
    return execute(
        lambda: inventory_service.receive_stock(variant_id, quantity, actor_id=actor_id, **refs),
        name="receive_stock",
    )


def adjust_stock(variant_id: int, delta: int, *, reason: str, actor_id: int | None = None) -> dict:
    return execute(
        lambda: inventory_service.adjust_stock(variant_id, delta, reason=reason, actor_id=actor_id),
        name="adjust_stock",
    )


def restock(variant_id: int, quantity: int, condition: str, *, actor_id: int | None = None, **fields) -> dict:
    return execute(
        lambda: inventory_service.restock(variant_id, quantity, condition, actor_id=actor_id, **fields),
        name="restock",
    )


def batch_reserve(items: list, *, actor_id: int | None = None, all_or_nothing: bool = False) -> dict:
    return execute(
        lambda: inventory_service.batch_reserve(items, actor_id=actor_id, all_or_nothing=all_or_nothing),
        name="batch_reserve",
    )


def batch_deduct(items: list, *, actor_id: int | None = None, all_or_nothing: bool = False) -> dict:
    return execute(
        lambda: inventory_service.batch_deduct(items, actor_id=actor_id, all_or_nothing=all_or_nothing),
        name="batch_deduct",
    )


def audit_inventory(variant_id: int | None = None) -> dict:
    if variant_id is not None:
        return execute(lambda: inventory_service.audit_variant(variant_id), name="audit_inventory")
    return execute(inventory_service.audit_all, name="audit_inventory")


# =============================================================================
# VENDORS
# =============================================================================

def create_vendor(*, name: str, phone: str | None = None, opening_balance_cents: int = 0) -> dict:
    return execute(
        lambda: vendor_service.create_vendor(name=name, phone=phone, opening_balance_cents=opening_balance_cents),
        name="create_vendor",
    )


def adjust_vendor_balance(vendor_id: int, amount_cents: int, kind: str, *, actor_id: int, **refs) -> dict:
    return execute(
        lambda: vendor_service.adjust_vendor_balance(vendor_id, amount_cents, kind, actor_id=actor_id, **refs),
        name="adjust_vendor_balance",
    )


def record_purchase(*, actor_id: int, **fields) -> dict:
    return execute(lambda: vendor_service.record_purchase(actor_id=actor_id, **fields), name="record_purchase")


def record_purchase_return(*, actor_id: int, **fields) -> dict:
    return execute(
        lambda: vendor_service.record_purchase_return(actor_id=actor_id, **fields),
        name="record_purchase_return",
    )


# =============================================================================
# DISPATCH & SETTLEMENT
# =============================================================================

def create_manifest(order_ids: list, *, actor_id: int, rider_id=None, courier_partner=None) -> dict:
    return execute(
        lambda: dispatch_service.create_manifest(
            order_ids, actor_id=actor_id, rider_id=rider_id, courier_partner=courier_partner,
        ),
        name="create_manifest",
    )


def start_manifest_run(manifest_id: int, *, actor_id: int) -> dict:
    return execute(
        lambda: dispatch_service.start_manifest_run(manifest_id, actor_id=actor_id),
        name="start_manifest_run",
    )


def record_delivery_outcome(manifest_id: int, order_id: int, outcome: str, *, actor_id: int, **fields) -> dict:
    return execute(
        lambda: dispatch_service.record_delivery_outcome(manifest_id, order_id, outcome, actor_id=actor_id, **fields),
        name="record_delivery_outcome",
    )


def settle_manifest(manifest_id: int, cash_received_cents: int, *, actor_id: int, notes=None) -> dict:
    return execute(
        lambda: dispatch_service.settle_manifest(manifest_id, cash_received_cents, actor_id=actor_id, notes=notes),
        name="settle_manifest",
    )


def create_rider(*, name: str, phone: str) -> dict:
    return execute(lambda: settlement_service.create_rider(name=name, phone=phone), name="create_rider")


def init_rider_settlement(rider_id: int, settlement_date, *, actor_id: int | None = None) -> dict:
    return execute(
        lambda: settlement_service.init_rider_settlement(
            rider_id, _as_date(settlement_date, "settlement_date"), actor_id=actor_id,
        ),
        name="init_rider_settlement",
    )


def complete_rider_settlement(
    settlement_id: int,
    cash_received_cents: int,
    *,
    actor_id: int,
    deduct_from_wallet: bool = False,
    notes: str | None = None,
) -> dict:
    return execute(
        lambda: settlement_service.complete_rider_settlement(
            settlement_id, cash_received_cents,
            actor_id=actor_id, deduct_from_wallet=deduct_from_wallet, notes=notes,
        ),
        name="complete_rider_settlement",
    )


# =============================================================================
# RETURNS / RTO
# =============================================================================

def mark_rto_initiated(order_id: int, *, actor_id: int, reason: str | None = None) -> dict:
    return execute(
        lambda: return_service.mark_rto_initiated(order_id, actor_id=actor_id, reason=reason),
        name="mark_rto_initiated",
    )


def mark_rto_verification_pending(order_id: int, *, actor_id: int) -> dict:
    return execute(
        lambda: return_service.mark_rto_verification_pending(order_id, actor_id=actor_id),
        name="mark_rto_verification_pending",
    )


def verify_return(order_id: int, condition: str, *, inspector_id: int, notes=None, item_conditions=None) -> dict:
    return execute(
        lambda: return_service.verify_return(
            order_id, condition, inspector_id=inspector_id, notes=notes, item_conditions=item_conditions,
        ),
        name="verify_return",
    )


def mark_lost(order_id: int, *, actor_id: int, evidence: str) -> dict:
    return execute(lambda: return_service.mark_lost(order_id, actor_id=actor_id, evidence=evidence), name="mark_lost")


def request_item_return(order_item_id: int, *, actor_id: int, reason: str | None = None) -> dict:
    return execute(
        lambda: return_service.request_item_return(order_item_id, actor_id=actor_id, reason=reason),
        name="request_item_return",
    )


def mark_item_picked_up(order_item_id: int, *, actor_id: int) -> dict:
    return execute(
        lambda: return_service.mark_item_picked_up(order_item_id, actor_id=actor_id),
        name="mark_item_picked_up",
    )


def receive_item_at_hub(order_item_id: int, condition: str, *, inspector_id: int, notes=None) -> dict:
    return execute(
        lambda: return_service.receive_item_at_hub(order_item_id, condition, inspector_id=inspector_id, notes=notes),
        name="receive_item_at_hub",
    )


def exchange_order(order_id: int, *, return_items: list, reason: str, actor_id: int, new_items=None) -> dict:
    return execute(
        lambda: return_service.exchange_order(
            order_id, return_items=return_items, new_items=new_items, reason=reason, actor_id=actor_id,
        ),
        name="exchange_order",
    )


# =============================================================================
# ARCHIVE
# =============================================================================

def sweep_archive(*, actor_id: int | None = None) -> dict:
    return execute(lambda: archive_service.sweep_archive(actor_id=actor_id), name="sweep_archive")
