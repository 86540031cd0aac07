# trustwork/services/escrow.py
"""Escrow & payout engine.

An EscrowPayment has two coupled sub-states: custody (pending, held,
released, refunded, disputed) and payout (pending, processing, completed,
failed). Money is Decimal throughout; the platform fee is withheld from the
tail, so partial releases are capped at ``net - released``.
"""
import logging

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..errors import AuthorizationError, InvalidTransition, ValidationError, GatewayError, NotFoundError
from ..models.assignment import Assignment
from ..models.escrow import EscrowPayment
from ..models.dispute import Dispute, ACTIVE as ACTIVE_DISPUTES
from ..security import require_principal, require_participant, require_owner, accepted_freelancer_id
from ..utils import utcnow, new_id, money
from . import payment_service as gateway
from .tx import serialized, lock, get_or_404, retry_stable
from .events import emit, operator_alert

log = logging.getLogger(__name__)

# assignment statuses in which held funds back work already under way
WORK_STARTED = ("in_progress", "pending_review", "disputed", "completed")


def split_amounts(gross, rate=None):
    """Return (platform_fee, net) with fee + net == gross."""
    gross = money(gross)
    if rate is None:
        rate = current_app.config.get("PLATFORM_FEE_RATE")
    fee = money(gross * rate)
    return fee, gross - fee


def by_correlation(correlation_id):
    return db.session.execute(
        select(EscrowPayment).where(EscrowPayment.correlation_id == correlation_id)
        .with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _has_open_dispute(escrow) -> bool:
    return db.session.execute(
        select(Dispute.id).where(Dispute.assignment_id == escrow.assignment_id,
                                 Dispute.status.in_(ACTIVE_DISPUTES)).limit(1)
    ).first() is not None


def _require_escrow_party(caller, escrow):
    require_principal(caller)
    if caller.is_admin or caller.id in (escrow.payer_id, escrow.recipient_id):
        return
    raise AuthorizationError("Not a party to this escrow")


# -----------------
# Create & fund
# -----------------

@serialized
def create(payer, assignment_id, gross_amount, *, correlation_id=None, now=None):
    from .lifecycle import active_escrow

    a = lock(Assignment, assignment_id, label="Assignment")
    require_owner(payer, a)
    if a.status != "assigned":
        raise InvalidTransition("Escrow can only be funded once the assignment is awarded",
                                details={"assignment_status": a.status})
    if active_escrow(a.id) is not None:
        raise InvalidTransition("Assignment already has an active escrow")
    recipient_id = accepted_freelancer_id(a)
    if recipient_id is None:
        raise InvalidTransition("Assignment has no accepted freelancer")

    try:
        gross = money(gross_amount)
    except ValueError:
        raise ValidationError.field("gross_amount", "invalid", "Amount must be a number")
    if gross <= 0:
        raise ValidationError.field("gross_amount", "positive", "Amount must be greater than zero")

    fee, net = split_amounts(gross)
    escrow = EscrowPayment(
        assignment_id=a.id,
        payer_id=payer.id,
        recipient_id=recipient_id,
        gross_amount=gross,
        platform_fee=fee,
        net_amount=net,
        released_amount=money(0),
        refunded_amount=money(0),
        currency=a.currency or current_app.config.get("CURRENCY", "ZAR"),
        status="pending",
        payout_status="pending",
        correlation_id=correlation_id or retry_stable(f"escrow-ref:{a.id}", new_id),
        created_at=now or utcnow(),
    )
    db.session.add(escrow)
    db.session.flush()

    escrow.gateway_meta = gateway.create_hold(
        correlation_id=escrow.correlation_id,
        amount=gross,
        currency=escrow.currency,
        description=a.title,
        payer_email=payer.email,
    )
    emit("escrow", escrow.id, "EscrowCreated", assignment_id=a.id, gross=gross, fee=fee, net=net,
         correlation_id=escrow.correlation_id)
    log.info("escrow %s created for assignment %s gross=%s fee=%s", escrow.id, a.id, gross, fee)
    return escrow


def on_gateway_authorized(correlation_id, provider_fields=None, *, now=None):
    """Payment authorised: pending -> held. Replays are no-ops. Runs inside the caller's transaction."""
    from . import lifecycle

    provider_fields = provider_fields or {}
    escrow = by_correlation(correlation_id)
    if escrow is None:
        raise NotFoundError("Unknown payment reference", details={"correlation_id": correlation_id})
    if escrow.status != "pending":
        log.info("escrow %s already %s, authorisation for %s ignored", escrow.id, escrow.status, correlation_id)
        if escrow.status == "refunded" and escrow.held_at is None:
            # refunded while pending: nothing was returned to the payer for this capture
            operator_alert("Payment authorised for an escrow refunded before funding",
                           escrow_id=escrow.id, assignment_id=escrow.assignment_id,
                           correlation_id=correlation_id, gross=escrow.gross_amount)
        return escrow, False

    now = now or utcnow()
    escrow.status = "held"
    escrow.held_at = now
    escrow.gateway_status = provider_fields.get("payment_status") or "COMPLETE"
    escrow.gateway_payment_id = provider_fields.get("pf_payment_id") or escrow.gateway_payment_id
    emit("escrow", escrow.id, "EscrowHeld", assignment_id=escrow.assignment_id,
         payer_id=escrow.payer_id, recipient_id=escrow.recipient_id, gross=escrow.gross_amount)
    log.info("escrow %s held (ref=%s)", escrow.id, correlation_id)

    a = lock(Assignment, escrow.assignment_id, label="Assignment")
    if a.status == "assigned":
        lifecycle.try_start_work(a, now=now)
    elif a.status in ("cancelled", "closed"):
        operator_alert("Funds held for an assignment that is no longer active",
                       escrow_id=escrow.id, assignment_id=a.id, assignment_status=a.status)
    return escrow, True


def on_gateway_failed(correlation_id, provider_fields=None):
    escrow = by_correlation(correlation_id)
    if escrow is None:
        raise NotFoundError("Unknown payment reference", details={"correlation_id": correlation_id})
    status = (provider_fields or {}).get("payment_status")
    if escrow.status != "pending" or escrow.gateway_status == status:
        return escrow, False
    escrow.gateway_status = status
    log.warning("escrow %s payment not completed: %s", escrow.id, status)
    return escrow, True


# -----------------
# Release
# -----------------

def _ensure_releasable(escrow):
    if escrow.status == "disputed":
        raise InvalidTransition("Escrow is locked by an open dispute",
                                details={"entity": "escrow", "from": "disputed", "to": "released"})
    if escrow.status != "held":
        raise InvalidTransition.between("escrow", escrow.status, "released")


def _finish_release(escrow, now):
    escrow.status = "released"
    escrow.released_at = now
    gateway.capture(correlation_id=escrow.correlation_id, amount=escrow.gross_amount - escrow.refunded_amount)
    emit("escrow", escrow.id, "EscrowReleased", assignment_id=escrow.assignment_id,
         released=escrow.released_amount, recipient_id=escrow.recipient_id)
    log.info("escrow %s released %s", escrow.id, escrow.released_amount)
    initiate_payout(escrow, now=now)


def release_remaining(escrow, *, now=None):
    """Release whatever is still held to the recipient (caller holds the lock)."""
    _ensure_releasable(escrow)
    now = now or utcnow()
    escrow.released_amount = escrow.net_amount
    _finish_release(escrow, now)
    return escrow


@serialized
def release_full(caller, escrow_id, *, now=None):
    escrow = lock(EscrowPayment, escrow_id, label="Escrow")
    require_principal(caller)
    if caller.id != escrow.payer_id:
        raise AuthorizationError("Only the payer can release escrow")
    _ensure_releasable(escrow)
    if _has_open_dispute(escrow):
        raise InvalidTransition("Escrow is locked by an open dispute")
    return release_remaining(escrow, now=now)


def release_partial(milestone, amount, *, now=None):
    """Release a milestone's share. Joins the approval transaction."""
    escrow_id = milestone.escrow_payment_id
    if escrow_id is None:
        raise InvalidTransition("Milestone is not backed by an escrow")
    escrow = lock(EscrowPayment, escrow_id, label="Escrow")
    _ensure_releasable(escrow)
    now = now or utcnow()

    remaining = escrow.net_amount - escrow.released_amount
    portion = min(money(amount), remaining)
    escrow.released_amount = escrow.released_amount + portion
    milestone.released_amount = portion
    milestone.payment_released = True
    milestone.payment_released_at = now

    emit("escrow", escrow.id, "EscrowPartiallyReleased", assignment_id=escrow.assignment_id,
         milestone_id=milestone.id, amount=portion, released_total=escrow.released_amount)
    log.info("escrow %s released %s for milestone %s (total %s/%s)",
             escrow.id, portion, milestone.id, escrow.released_amount, escrow.net_amount)
    if escrow.released_amount >= escrow.net_amount:
        _finish_release(escrow, now)
    return portion


# -----------------
# Refund & dispute lock
# -----------------

def refund_locked(escrow, *, reason="", now=None):
    if escrow.status not in ("pending", "held"):
        raise InvalidTransition.between("escrow", escrow.status, "refunded")
    if escrow.released_amount > 0:
        raise InvalidTransition("Escrow has released funds and cannot be refunded",
                                details={"released_amount": str(escrow.released_amount)})
    now = now or utcnow()
    if escrow.status == "held":
        gateway.refund(correlation_id=escrow.correlation_id, amount=escrow.gross_amount, reason=reason)
        escrow.refunded_amount = escrow.gross_amount
    escrow.status = "refunded"
    escrow.refunded_at = now
    emit("escrow", escrow.id, "EscrowRefunded", assignment_id=escrow.assignment_id,
         amount=escrow.refunded_amount, payer_id=escrow.payer_id, reason=reason)
    log.info("escrow %s refunded %s (%s)", escrow.id, escrow.refunded_amount, reason)
    return escrow


@serialized
def refund(caller, escrow_id, reason="", *, now=None):
    """Direct refund while no work depends on the funds.

    Once work has started the money is recovered through cancellation or a
    dispute, which also move the assignment.
    """
    require_principal(caller)
    a = lock(Assignment, get_or_404(EscrowPayment, escrow_id, label="Escrow").assignment_id,
             label="Assignment")
    escrow = lock(EscrowPayment, escrow_id, label="Escrow")
    if not (caller.is_admin or caller.id == escrow.payer_id):
        raise AuthorizationError("Only the payer or an admin can refund escrow")
    if escrow.status == "held" and a.status in WORK_STARTED:
        raise InvalidTransition("Work has started; cancel the assignment or open a dispute instead",
                                details={"assignment_status": a.status, "escrow_status": escrow.status})
    return refund_locked(escrow, reason=reason, now=now)


def mark_disputed(escrow, *, now=None):
    if escrow.status == "disputed":
        return escrow
    if escrow.status != "held":
        raise InvalidTransition.between("escrow", escrow.status, "disputed")
    escrow.status = "disputed"
    escrow.disputed_at = now or utcnow()
    log.info("escrow %s locked by dispute", escrow.id)
    return escrow


def clear_dispute(escrow):
    if escrow.status == "held":
        return escrow
    if escrow.status != "disputed":
        raise InvalidTransition.between("escrow", escrow.status, "held")
    escrow.status = "held"
    log.info("escrow %s dispute lock cleared", escrow.id)
    return escrow


def settle_split(escrow, share, *, now=None, reason=""):
    """Release ``share`` of the unreleased net to the recipient and refund the rest.

    The platform keeps its fee. Returns (to_recipient, to_payer).
    """
    _ensure_releasable(escrow)
    now = now or utcnow()
    remaining = escrow.net_amount - escrow.released_amount
    to_recipient = money(remaining * share)
    to_payer = remaining - to_recipient

    if to_payer > 0:
        gateway.refund(correlation_id=escrow.correlation_id, amount=to_payer, reason=reason)
        escrow.refunded_amount = escrow.refunded_amount + to_payer
    escrow.released_amount = escrow.released_amount + to_recipient

    if escrow.released_amount > 0:
        _finish_release(escrow, now)
    else:
        escrow.status = "refunded"
        escrow.refunded_at = now
        emit("escrow", escrow.id, "EscrowRefunded", assignment_id=escrow.assignment_id,
             amount=to_payer, payer_id=escrow.payer_id, reason=reason)
    if to_payer > 0:
        escrow.refunded_at = now
    log.info("escrow %s settled: %s to recipient, %s to payer", escrow.id, to_recipient, to_payer)
    return to_recipient, to_payer


# -----------------
# Payouts
# -----------------

def initiate_payout(escrow, *, now=None):
    """Ask the gateway to pay the recipient. Retryable failures leave payout_status pending."""
    if escrow.payout_status in ("processing", "completed"):
        return escrow
    now = now or utcnow()
    escrow.payout_correlation_id = escrow.payout_correlation_id or retry_stable(
        f"payout-ref:{escrow.id}", lambda: f"po-{new_id()}")
    escrow.payout_attempts = (escrow.payout_attempts or 0) + 1
    escrow.payout_initiated_at = escrow.payout_initiated_at or now
    try:
        gateway.payout(
            correlation_id=escrow.payout_correlation_id,
            amount=escrow.released_amount,
            currency=escrow.currency,
            recipient_id=escrow.recipient_id,
        )
    except GatewayError as e:
        escrow.payout_error = e.message
        if e.retryable and escrow.payout_attempts < current_app.config.get("PAYOUT_MAX_RETRIES", 5):
            log.warning("payout for escrow %s deferred (attempt %s): %s",
                        escrow.id, escrow.payout_attempts, e.message)
            return escrow
        _fail_payout(escrow, e.message)
        return escrow

    escrow.payout_status = "processing"
    escrow.payout_error = None
    log.info("payout for escrow %s initiated ref=%s", escrow.id, escrow.payout_correlation_id)
    return escrow


def _fail_payout(escrow, error):
    escrow.payout_status = "failed"
    escrow.payout_error = error
    emit("escrow", escrow.id, "PayoutFailed", recipient_id=escrow.recipient_id,
         amount=escrow.released_amount, attempts=escrow.payout_attempts, error=error)
    operator_alert("Payout failed", escrow_id=escrow.id, attempts=escrow.payout_attempts, error=error)


def on_payout_webhook(correlation_id, outcome, *, now=None):
    """Apply a payout notification. Returns (escrow, changed)."""
    outcome = (outcome or "").lower()
    if outcome not in ("processing", "completed", "failed"):
        raise ValidationError.field("payout_status", "invalid", f"Unknown payout outcome {outcome!r}")
    escrow = db.session.execute(
        select(EscrowPayment).where(EscrowPayment.payout_correlation_id == correlation_id)
        .with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none() or by_correlation(correlation_id)
    if escrow is None:
        raise NotFoundError("Unknown payout reference", details={"correlation_id": correlation_id})

    current = escrow.payout_status
    if current == outcome or current in ("completed", "failed"):
        log.info("escrow %s payout already %s, %s ignored", escrow.id, current, outcome)
        return escrow, False
    if escrow.status != "released":
        log.warning("payout notice for escrow %s in status %s ignored", escrow.id, escrow.status)
        return escrow, False

    now = now or utcnow()
    if outcome == "processing":
        escrow.payout_status = "processing"
    elif outcome == "completed":
        escrow.payout_status = "completed"
        escrow.payout_completed_at = now
        escrow.payout_error = None
        emit("escrow", escrow.id, "PayoutCompleted", recipient_id=escrow.recipient_id,
             amount=escrow.released_amount)
    else:
        _fail_payout(escrow, "provider reported payout failure")
    log.info("escrow %s payout %s -> %s", escrow.id, current, escrow.payout_status)
    return escrow, True


@serialized
def retry_failed_payouts(*, now=None):
    """Re-send deferred payouts; give up after PAYOUT_MAX_RETRIES attempts."""
    cap = current_app.config.get("PAYOUT_MAX_RETRIES", 5)
    rows = db.session.execute(
        select(EscrowPayment).where(
            EscrowPayment.status == "released",
            EscrowPayment.payout_status == "pending",
            EscrowPayment.payout_error.isnot(None),
        ).with_for_update()
    ).scalars().all()
    retried = 0
    for escrow in rows:
        if escrow.payout_attempts >= cap:
            _fail_payout(escrow, escrow.payout_error)
            continue
        initiate_payout(escrow, now=now)
        retried += 1
    return retried


# -----------------
# Queries
# -----------------

def get(caller, escrow_id):
    escrow = get_or_404(EscrowPayment, escrow_id, label="Escrow")
    _require_escrow_party(caller, escrow)
    return escrow


def for_assignment(caller, assignment_id):
    a = get_or_404(Assignment, assignment_id, label="Assignment")
    require_participant(caller, a)
    return db.session.execute(
        select(EscrowPayment).where(EscrowPayment.assignment_id == a.id)
        .order_by(EscrowPayment.created_at, EscrowPayment.id)
    ).scalars().all()