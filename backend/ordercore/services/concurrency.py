# Overview: Unit-of-work and row-locking helpers shared by every mutating service.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict
from ..extensions import db
from . import events

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Versioned models (version_id_col) still catch lost updates on SQLite via
    StaleDataError, which run_with_retry turns into a retry.
    """
    return query.with_for_update()


def _begin_immediate_if_sqlite() -> None:
    """
    SQLite has no row locks; take the database write lock up front so the
    read-modify-write inside the unit cannot interleave with another writer.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute `func` as ONE atomic unit and commit it.

    - Any exception rolls the whole unit back (no partial effects).
    - OperationalError (lock timeouts, deadlocks) and StaleDataError
      (optimistic version conflicts) are retried with exponential backoff.
    - When retries are exhausted the conflict surfaces as ConcurrencyConflict.
    - Domain events queued by `func` are published only after the commit;
      a rollback discards them.

    `func` must not commit; it flushes as needed and returns the result.
    """
    if attempts is None:
        attempts = current_app.config.get("ORDERCORE_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("ORDERCORE_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        try:
            _begin_immediate_if_sqlite()
            result = func()
            db.session.commit()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            events.discard_pending()
            if attempt >= attempts - 1:
                logger.warning("giving up after %d attempts: %s", attempts, exc)
                raise ConcurrencyConflict(
                    "the record was changed by another request; retry the operation",
                    {"attempts": attempts},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
            continue
        except Exception:
            db.session.rollback()
            events.discard_pending()
            raise
        events.publish_pending()
        return result
    raise ConcurrencyConflict("no attempts made", {"attempts": attempts})
