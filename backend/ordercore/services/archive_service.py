# Overview: Snapshots terminal leads and orders into immutable archive records.

"""
Archive

When a lead or order reaches a designated terminal status, a full snapshot
(orders include their items) is written to ArchiveRecord with reason
"auto_archive_<status>".

Archival is a collaborator, not part of the business outcome: it runs in a
SAVEPOINT and any failure there is logged and swallowed so that the status
change that triggered it still commits. sweep_archive() picks up anything a
failed or skipped hook left behind.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import ArchiveRecord, Lead, Order
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)

ENTITY_LEAD = "lead"
ENTITY_ORDER = "order"


def _order_statuses() -> tuple[str, ...]:
    return tuple(current_app.config.get("ORDERCORE_ARCHIVE_ORDER_STATUSES", ("cancelled", "refunded")))


def _lead_statuses() -> tuple[str, ...]:
    return tuple(current_app.config.get("ORDERCORE_ARCHIVE_LEAD_STATUSES", ("CANCELLED",)))


def _already_archived(entity_type: str, entity_id: int) -> bool:
    return db.session.query(ArchiveRecord.id).filter_by(
        entity_type=entity_type, entity_id=entity_id,
    ).first() is not None


def _archive(entity_type: str, entity_id: int, snapshot: dict, reason: str, actor_id: int | None) -> ArchiveRecord | None:
    """Write one record inside a savepoint; never raises."""
    try:
        with db.session.begin_nested():
            if _already_archived(entity_type, entity_id):
                return None
            record = ArchiveRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                snapshot=snapshot,
                reason=reason,
                archived_by=actor_id,
            )
            db.session.add(record)
        return record
    except SQLAlchemyError:
        logger.exception("archival of %s %s failed", entity_type, entity_id)
        return None


def archive_order_if_terminal(order: Order, *, actor_id: int | None = None) -> ArchiveRecord | None:
    if order.status not in _order_statuses():
        return None
    snapshot = order.to_dict(include_items=True)
    return _archive(ENTITY_ORDER, order.id, snapshot, f"auto_archive_{order.status}", actor_id)


def archive_lead_if_terminal(lead: Lead, *, actor_id: int | None = None) -> ArchiveRecord | None:
    if lead.status not in _lead_statuses():
        return None
    return _archive(ENTITY_LEAD, lead.id, lead.to_dict(), f"auto_archive_{lead.status.lower()}", actor_id)


def get_archive_record(entity_type: str, entity_id: int) -> ArchiveRecord | None:
    return ArchiveRecord.query.filter_by(entity_type=entity_type, entity_id=entity_id).first()


def sweep_archive(*, actor_id: int | None = None) -> dict:
    """Archive every terminal lead/order that has no record yet."""
    def _op() -> dict:
        archived = {"orders": 0, "leads": 0}

        order_ids = db.session.query(ArchiveRecord.entity_id).filter_by(entity_type=ENTITY_ORDER)
        orders = Order.query.filter(
            Order.status.in_(_order_statuses()),
            ~Order.id.in_(order_ids),
        ).all()
        for order in orders:
            if archive_order_if_terminal(order, actor_id=actor_id) is not None:
                archived["orders"] += 1

        lead_ids = db.session.query(ArchiveRecord.entity_id).filter_by(entity_type=ENTITY_LEAD)
        leads = Lead.query.filter(
            Lead.status.in_(_lead_statuses()),
            ~Lead.id.in_(lead_ids),
        ).all()
        for lead in leads:
            if archive_lead_if_terminal(lead, actor_id=actor_id) is not None:
                archived["leads"] += 1
        return archived

    result = run_with_retry(_op)
    logger.info("archive sweep: %(orders)d orders, %(leads)d leads", result)
    return result
