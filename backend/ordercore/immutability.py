# Overview: ORM-level enforcement of the append-only audit tables.

"""
Append-only enforcement.

StockMovement, VendorLedgerEntry, OrderActivity, RiderBalanceLog,
ReturnSettlement and ArchiveRecord are audit rows: once flushed they are never
updated or deleted. OrderPayment rows are never deleted and only their void
columns may change.

A before_flush listener on the Session class rejects violations with
ImmutableRecordError before any SQL is emitted, so the whole unit of work is
aborted. Bulk query.update()/delete() bypass the ORM and are not used on these
tables outside test teardown.
"""

from __future__ import annotations

import logging

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from .errors import ImmutableRecordError
from .models import (
    ArchiveRecord,
    OrderActivity,
    OrderPayment,
    ReturnSettlement,
    RiderBalanceLog,
    StockMovement,
    VendorLedgerEntry,
)

logger = logging.getLogger(__name__)

APPEND_ONLY_MODELS = (
    StockMovement,
    VendorLedgerEntry,
    OrderActivity,
    RiderBalanceLog,
    ReturnSettlement,
    ArchiveRecord,
)

PAYMENT_MUTABLE_COLUMNS = frozenset({"voided_at", "voided_by", "void_reason"})


def _changed_columns(obj) -> set[str]:
    state = inspect(obj)
    changed = set()
    for attr in state.mapper.column_attrs:
        if state.attrs[attr.key].history.has_changes():
            changed.add(attr.key)
    return changed


def _check_append_only(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, APPEND_ONLY_MODELS + (OrderPayment,)):
            raise ImmutableRecordError(
                f"{type(obj).__name__} {obj.id} is append-only and cannot be deleted",
                {"model": type(obj).__name__, "id": obj.id},
            )

    for obj in session.dirty:
        if isinstance(obj, APPEND_ONLY_MODELS):
            changed = _changed_columns(obj)
            if changed:
                raise ImmutableRecordError(
                    f"{type(obj).__name__} {obj.id} is append-only",
                    {"model": type(obj).__name__, "id": obj.id, "fields": sorted(changed)},
                )
        elif isinstance(obj, OrderPayment):
            changed = _changed_columns(obj) - PAYMENT_MUTABLE_COLUMNS
            if changed:
                raise ImmutableRecordError(
                    f"payment {obj.id} can only be voided, not edited",
                    {"model": "OrderPayment", "id": obj.id, "fields": sorted(changed)},
                )


def register_immutability_listeners() -> None:
    """Install the before_flush guard once per process."""
    if not event.contains(Session, "before_flush", _check_append_only):
        event.listen(Session, "before_flush", _check_append_only)
        logger.debug("append-only guard registered")
