# Overview: Service-layer allocation and parsing of human-readable codes.

"""
Human-readable codes.

FORMATS:
- ORD-000123       regular orders (6-digit global counter)
- RDR-000007       orders created by redirecting a failed order
- RUN-260129-001   rider delivery run (per-day counter)
- CM-260129-001    courier manifest / handover (per-day counter)
- STL-20260129-001 rider settlement (per-day counter)

DESIGN:
- Counters live in DocumentSequence rows and are advanced with a single
  atomic UPDATE ... SET next_number = next_number + 1, inside the caller's
  unit of work. Two concurrent allocations can never hand out the same code.
- Codes are NEVER derived by parsing the latest existing code. Legacy or
  irregular codes therefore cannot poison the counter; parse_order_code
  rejects them outright instead of falling back to guesses.
"""

from __future__ import annotations

import re
from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import utcnow


ORDER_PREFIX = "ORD"
REDIRECT_PREFIX = "RDR"
RIDER_RUN_PREFIX = "RUN"
COURIER_MANIFEST_PREFIX = "CM"
SETTLEMENT_PREFIX = "STL"

ORDER_CODE_RE = re.compile(r"^(ORD|RDR)-(\d{6,})$")


def _allocate(sequence_key: str) -> int:
    """Reserve the next number for `sequence_key` (flushes, does not commit)."""
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.sequence_key == sequence_key)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        # First use of this key. Insert inside a savepoint so a concurrent
        # insert of the same key only loses the savepoint, not the caller's work.
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(sequence_key=sequence_key, next_number=2))
            return 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(sequence_key=sequence_key)
        .scalar()
    )
    return current - 1


def next_order_code(*, redirect: bool = False) -> str:
    prefix = REDIRECT_PREFIX if redirect else ORDER_PREFIX
    return f"{prefix}-{_allocate(prefix):06d}"


def next_manifest_code(manifest_type: str, on_date: date | None = None) -> str:
    prefix = RIDER_RUN_PREFIX if manifest_type == "rider" else COURIER_MANIFEST_PREFIX
    stamp = (on_date or utcnow().date()).strftime("%y%m%d")
    key = f"{prefix}-{stamp}"
    return f"{key}-{_allocate(key):03d}"


def next_settlement_number(on_date: date) -> str:
    key = f"{SETTLEMENT_PREFIX}-{on_date.strftime('%Y%m%d')}"
    return f"{key}-{_allocate(key):03d}"


def parse_order_code(code: str) -> tuple[str, int]:
    """
    Split an order code into (prefix, number).

    Raises ValidationError for anything that is not a well-formed ORD/RDR code,
    including legacy date-based or random-suffix codes.
    """
    if not isinstance(code, str):
        raise ValidationError("order code must be a string")
    match = ORDER_CODE_RE.match(code.strip().upper())
    if not match:
        raise ValidationError(f"malformed order code: {code!r}", {"code": code})
    return match.group(1), int(match.group(2))
