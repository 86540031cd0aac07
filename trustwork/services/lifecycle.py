# trustwork/services/lifecycle.py
"""Assignment lifecycle state machine.

Every status change goes through ``transition`` so that a StatusHistory row
is appended in the same transaction. Illegal moves raise INVALID_TRANSITION.
"""
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..errors import AuthorizationError, InvalidTransition, ValidationError
from ..models.assignment import Assignment
from ..models.status_history import StatusHistory
from ..models.escrow import EscrowPayment
from ..models.milestone import Milestone
from ..models.dispute import Dispute, DisputeEvent
from ..models.review import Review
from ..security import require_participant, require_principal, require_owner, accepted_freelancer_id
from ..utils import utcnow, iso
from .tx import serialized, lock, get_or_404
from .events import emit

log = logging.getLogger(__name__)

ALLOWED = {
    "draft": {"open", "cancelled", "closed"},
    "open": {"assigned", "cancelled", "closed"},
    "assigned": {"in_progress", "disputed", "cancelled"},
    "in_progress": {"pending_review", "disputed", "cancelled"},
    "pending_review": {"completed", "disputed", "cancelled"},
    "disputed": {"assigned", "in_progress", "pending_review", "completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
    "closed": set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED.get(current, set())


def record(assignment, from_status, to_status, by=None, reason=None, now=None):
    """Append a history row for a status already written to ``assignment``."""
    row = StatusHistory(
        assignment_id=assignment.id,
        from_status=from_status,
        to_status=to_status,
        by_principal_id=getattr(by, "id", by),
        reason=reason,
        at=now or utcnow(),
    )
    db.session.add(row)
    emit("assignment", assignment.id, "AssignmentStatusChanged",
         from_status=from_status, to_status=to_status, by=row.by_principal_id, reason=reason)
    log.info("assignment %s: %s -> %s", assignment.id, from_status, to_status)
    return row


def transition(assignment, target, *, by=None, reason=None, now=None):
    current = assignment.status
    if not can_transition(current, target):
        raise InvalidTransition.between("assignment", current, target)
    now = now or utcnow()
    assignment.status = target
    if target == "completed":
        assignment.completed_at = now
    return record(assignment, current, target, by=by, reason=reason, now=now)


def active_escrow(assignment_id):
    return db.session.execute(
        select(EscrowPayment)
        .where(EscrowPayment.assignment_id == assignment_id,
               EscrowPayment.status != "refunded")
        .order_by(EscrowPayment.created_at.desc())
    ).scalars().first()


def try_start_work(assignment, *, by=None, now=None) -> bool:
    """assigned -> in_progress once funds are held and, for gigs, milestones exist."""
    if assignment.status != "assigned":
        return False
    escrow = active_escrow(assignment.id)
    if escrow is None or escrow.status != "held":
        return False
    if assignment.is_gig:
        has_milestones = db.session.execute(
            select(Milestone.id).where(Milestone.gig_id == assignment.id).limit(1)
        ).first()
        if not has_milestones:
            return False
    transition(assignment, "in_progress", by=by, reason="work started", now=now)
    return True


# -----------------
# Completion & cancellation
# -----------------

@serialized
def mark_complete(freelancer, assignment_id, *, now=None):
    """Jobs only: the accepted freelancer hands the work over for review."""
    require_principal(freelancer)
    a = lock(Assignment, assignment_id, label="Assignment")
    if freelancer.id != accepted_freelancer_id(a):
        raise AuthorizationError("Only the accepted freelancer can mark work complete")
    if a.is_gig:
        raise InvalidTransition("Gigs move to review when every milestone is approved",
                                details={"kind": a.kind})
    transition(a, "pending_review", by=freelancer, reason="marked complete", now=now)
    return a


@serialized
def approve_completion(owner, assignment_id, *, now=None):
    from . import escrow as escrow_svc

    a = lock(Assignment, assignment_id, label="Assignment")
    require_owner(owner, a)
    if a.status != "pending_review":
        raise InvalidTransition.between("assignment", a.status, "completed")
    escrow = active_escrow(a.id)
    if escrow is None:
        raise InvalidTransition("Escrow must be funded before completion",
                                details={"escrow_status": None})
    escrow = lock(EscrowPayment, escrow.id)
    if escrow.status == "held":
        escrow_svc.release_remaining(escrow, now=now)
    elif escrow.status != "released":
        raise InvalidTransition("Escrow must be funded before completion",
                                details={"escrow_status": escrow.status})
    transition(a, "completed", by=owner, reason="completion approved", now=now)
    return a


@serialized
def cancel(owner, assignment_id, reason, *, now=None):
    from . import escrow as escrow_svc

    a = lock(Assignment, assignment_id, label="Assignment")
    if not getattr(owner, "is_admin", False):
        require_owner(owner, a)
    if not (reason or "").strip():
        raise ValidationError.field("reason", "required", "A cancellation reason is required")
    if a.status == "disputed":
        raise InvalidTransition("A disputed assignment is settled through its dispute",
                                details={"from": a.status, "to": "cancelled"})
    if not can_transition(a.status, "cancelled"):
        raise InvalidTransition.between("assignment", a.status, "cancelled")

    escrow = active_escrow(a.id)
    if escrow is not None:
        escrow = lock(EscrowPayment, escrow.id)
        if escrow.released_amount > 0 or escrow.status not in ("pending", "held"):
            raise InvalidTransition("Funds were already released; open a dispute instead",
                                    details={"escrow_status": escrow.status})
        escrow_svc.refund_locked(escrow, reason=f"assignment cancelled: {reason}", now=now)

    a.cancel_reason = reason.strip()
    transition(a, "cancelled", by=owner, reason=a.cancel_reason, now=now)
    return a


# -----------------
# Timeline
# -----------------

def timeline(caller, assignment_id):
    """Status history merged with dispute and review events, oldest first."""
    a = get_or_404(Assignment, assignment_id, label="Assignment")
    require_participant(caller, a)

    entries = []
    rows = db.session.execute(
        select(StatusHistory).where(StatusHistory.assignment_id == a.id).order_by(StatusHistory.id)
    ).scalars()
    for seq, h in enumerate(rows):
        entries.append((h.at, 0, seq, {"type": "status", **h.to_dict()}))

    events = db.session.execute(
        select(DisputeEvent).join(Dispute, Dispute.id == DisputeEvent.dispute_id)
        .where(Dispute.assignment_id == a.id).order_by(DisputeEvent.id)
    ).scalars()
    for seq, ev in enumerate(events):
        entries.append((ev.at, 1, seq, {"type": "dispute", **ev.to_dict()}))

    reviews = db.session.execute(
        select(Review).where(Review.assignment_id == a.id).order_by(Review.created_at)
    ).scalars()
    for seq, r in enumerate(reviews):
        entries.append((r.created_at, 2, seq, {
            "type": "review",
            "review_id": r.id,
            "by": r.reviewer_id,
            "reviewer_type": r.reviewer_type,
            "at": iso(r.created_at),
        }))

    entries.sort(key=lambda e: (e[0], e[1], e[2]))
    return [e[3] for e in entries]


def review_window_end(assignment):
    if not assignment.completed_at:
        return None
    days = current_app.config.get("REVIEW_WINDOW_DAYS", 30)
    return assignment.completed_at + timedelta(days=days)
