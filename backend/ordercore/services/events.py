# Overview: In-process domain events, queued during a unit of work and delivered after commit.

"""
Domain events.

Services call `emit(name, **payload)` while a unit of work is open. Events are
parked on the session and handed to subscribers only after the commit in
concurrency.run_with_retry succeeds; a rollback throws them away. Subscribers
(SMS, webhooks, analytics) are fire-and-forget: a failing subscriber is logged
and never reaches the caller of the business operation.

Event names:
- order.created
- order.status_changed
- lead.converted
- settlement.completed
- manifest.settled
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ..extensions import db
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

_PENDING_KEY = "ordercore.pending_events"

_subscribers: dict[str, list[Callable[["DomainEvent"], None]]] = defaultdict(list)


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=utcnow)


def subscribe(name: str, handler: Callable[[DomainEvent], None]) -> None:
    """Register `handler` for events called `name` ("*" receives everything)."""
    if handler not in _subscribers[name]:
        _subscribers[name].append(handler)


def unsubscribe(name: str, handler: Callable[[DomainEvent], None]) -> None:
    if handler in _subscribers.get(name, []):
        _subscribers[name].remove(handler)


def emit(name: str, **payload) -> DomainEvent:
    event = DomainEvent(name=name, payload=payload)
    db.session.info.setdefault(_PENDING_KEY, []).append(event)
    return event


def discard_pending() -> None:
    db.session.info.pop(_PENDING_KEY, None)


def publish_pending() -> None:
    pending = db.session.info.pop(_PENDING_KEY, [])
    for event in pending:
        for handler in list(_subscribers.get(event.name, [])) + list(_subscribers.get("*", [])):
            try:
                handler(event)
            except Exception:
                logger.exception("event subscriber failed for %s", event.name)
