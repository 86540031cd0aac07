# trustwork/services/events.py
"""Outbox writer. Rows join the caller's transaction and are dispatched later."""
import logging
from datetime import datetime
from decimal import Decimal

from ..extensions import db
from ..models.outbox import DomainEvent

log = logging.getLogger(__name__)


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


def emit(aggregate_type: str, aggregate_id, event_type: str, **payload) -> DomainEvent:
    ev = DomainEvent(
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        event_type=event_type,
        payload=_jsonable(payload),
    )
    db.session.add(ev)
    log.debug("outbox %s %s:%s", event_type, aggregate_type, aggregate_id)
    return ev


def operator_alert(message: str, **context) -> DomainEvent:
    log.error("OPERATOR ALERT: %s | %s", message, context)
    return emit("system", context.get("escrow_id") or "-", "OperatorAlert", message=message, **context)
