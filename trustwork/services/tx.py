# trustwork/services/tx.py
"""Transaction helpers shared by every write operation.

``serialized`` runs an operation in one transaction and commits it. A writer
that loses a race (stale version, lock timeout, unique-key collision) is
rolled back and re-run once; a second loss surfaces as CONFLICT. Nested
calls join the outer transaction.

A re-run must not repeat side effects outside the database. Gateway commands
sent during the first run are remembered for the whole call and their
responses replayed, and references minted with ``retry_stable`` keep the
value they had on the first run.
"""
import logging
from functools import wraps

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConflictError, NotFoundError

log = logging.getLogger(__name__)

_DEPTH_KEY = "trustwork.tx_depth"
_MEMO_KEY = "trustwork.tx_memo"
RETRYABLE = (StaleDataError, OperationalError, IntegrityError)


def in_transaction() -> bool:
    return db.session.info.get(_DEPTH_KEY, 0) > 0


def operation_memo():
    """Per-call scratch space that survives a rollback and re-run, or None outside ``serialized``."""
    return db.session.info.get(_MEMO_KEY)


def retry_stable(name, factory):
    """Value from ``factory()``, minted once per serialized call."""
    memo = operation_memo()
    if memo is None:
        return factory()
    values = memo.setdefault("values", {})
    if name not in values:
        values[name] = factory()
    return values[name]


def serialized(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        session = db.session
        if in_transaction():
            return fn(*args, **kwargs)

        session.info[_MEMO_KEY] = {}
        try:
            for attempt in (1, 2):
                session.info[_DEPTH_KEY] = 1
                try:
                    result = fn(*args, **kwargs)
                    session.commit()
                    return result
                except RETRYABLE as e:
                    session.rollback()
                    if attempt == 2:
                        log.warning("%s lost a concurrent write twice: %s", fn.__name__, e)
                        raise ConflictError(
                            "The record was changed by someone else, please retry",
                            details={"operation": fn.__name__},
                        ) from e
                    log.info("%s lost a concurrent write, retrying once", fn.__name__)
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.info[_DEPTH_KEY] = 0
        finally:
            session.info.pop(_MEMO_KEY, None)
    return wrapper


def lock(model, ident, *, label=None):
    """Load a row for update (SELECT ... FOR UPDATE where the backend has it)."""
    stmt = (
        select(model)
        .where(model.id == ident)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(f"{label or model.__name__} not found", details={"id": ident})
    return obj


def get_or_404(model, ident, *, label=None):
    obj = db.session.get(model, ident) if ident is not None else None
    if obj is None:
        raise NotFoundError(f"{label or model.__name__} not found", details={"id": ident})
    return obj
