# trustwork/services/disputes.py
"""Dispute workflow: freezes escrow release until a decision settles it."""
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import select, or_

from ..extensions import db
from ..errors import AuthorizationError, InvalidTransition, ValidationError
from ..models.assignment import Assignment
from ..models.dispute import Dispute, DisputeEvent, REASONS, DECISIONS, ACTIVE
from ..models.escrow import EscrowPayment
from ..security import require_principal, require_role, require_participant, accepted_freelancer_id
from ..utils import utcnow, money
from .tx import serialized, lock, get_or_404
from .events import emit
from . import lifecycle, escrow as escrow_svc, storage_service

log = logging.getLogger(__name__)


def _event(d, actor, action, note=None, now=None):
    ev = DisputeEvent(dispute_id=d.id, actor_id=getattr(actor, "id", actor), action=action,
                      note=note, at=now or utcnow())
    db.session.add(ev)
    return ev


def _parse_ratio(raw, field="split_ratio"):
    """Freelancer share in [0, 1]; values in (1, 100] are read as percentages."""
    if raw in (None, ""):
        return None
    try:
        ratio = Decimal(str(raw))
    except InvalidOperation:
        raise ValidationError.field(field, "invalid", "Split ratio must be a number")
    if 1 < ratio <= 100:
        ratio = ratio / 100
    if not 0 <= ratio <= 1:
        raise ValidationError.field(field, "range", "Split ratio must be between 0 and 1")
    return ratio.quantize(Decimal("0.0001"))


def _party(caller, d):
    require_principal(caller)
    if caller.id not in d.party_ids():
        raise AuthorizationError("Not a party to this dispute")


def _active(d, action):
    if not d.is_active:
        raise InvalidTransition(f"Cannot {action} a {d.status} dispute",
                                details={"entity": "dispute", "from": d.status})


def _locked_escrow(d):
    if not d.escrow_payment_id:
        return None
    return lock(EscrowPayment, d.escrow_payment_id, label="Escrow")


# -----------------
# Open / respond / evidence
# -----------------

@serialized
def open_dispute(initiator, assignment_id, reason, title, description=None, evidence=None, *, now=None):
    require_principal(initiator)
    a = lock(Assignment, assignment_id, label="Assignment")
    freelancer_id = accepted_freelancer_id(a)
    if initiator.id not in (a.owner_id, freelancer_id):
        raise AuthorizationError("Only the client or the assigned freelancer can open a dispute")
    if reason not in REASONS:
        raise ValidationError.field("reason", "invalid", f"reason must be one of {', '.join(REASONS)}")
    if not (title or "").strip():
        raise ValidationError.field("title", "required", "A title is required")

    existing = db.session.execute(
        select(Dispute.id).where(Dispute.assignment_id == a.id, Dispute.status.in_(ACTIVE))
    ).first()
    if existing:
        raise InvalidTransition("This assignment already has an open dispute",
                                details={"dispute_id": existing[0]})

    escrow = lifecycle.active_escrow(a.id)
    if escrow is not None:
        escrow = lock(EscrowPayment, escrow.id, label="Escrow")
    held = escrow is not None and escrow.status == "held"
    if not (held or a.status == "pending_review"):
        raise InvalidTransition("Disputes need held funds or delivered work",
                                details={"assignment_status": a.status,
                                         "escrow_status": escrow.status if escrow else None})

    now = now or utcnow()
    prior = a.status
    lifecycle.transition(a, "disputed", by=initiator, reason=f"dispute: {reason}", now=now)
    if held:
        escrow_svc.mark_disputed(escrow, now=now)

    evidence = evidence or {}
    d = Dispute(
        assignment_id=a.id,
        escrow_payment_id=escrow.id if held else None,
        initiator_id=initiator.id,
        respondent_id=freelancer_id if initiator.id == a.owner_id else a.owner_id,
        reason=reason,
        title=title.strip(),
        description=description,
        evidence_files=list(evidence.get("files") or []),
        initiator_evidence=evidence.get("text"),
        status="open",
        prior_assignment_status=prior,
        response_deadline=now + timedelta(days=current_app.config.get("DISPUTE_RESPONSE_DAYS", 7)),
        created_at=now,
    )
    db.session.add(d)
    db.session.flush()
    _event(d, initiator, "opened", reason, now=now)
    emit("dispute", d.id, "DisputeOpened", assignment_id=a.id, initiator_id=d.initiator_id,
         respondent_id=d.respondent_id, reason=reason)
    log.info("dispute %s opened on %s by %s (%s)", d.id, a.id, initiator.id, reason)
    return d


@serialized
def respond(respondent, dispute_id, evidence=None, *, now=None):
    d = lock(Dispute, dispute_id, label="Dispute")
    require_principal(respondent)
    if respondent.id != d.respondent_id:
        raise AuthorizationError("Only the respondent can respond")
    if d.status not in ("open", "awaiting_response"):
        raise InvalidTransition.between("dispute", d.status, "under_review")
    now = now or utcnow()
    evidence = evidence or {}
    if evidence.get("text"):
        d.respondent_evidence = evidence["text"]
    if evidence.get("files"):
        d.evidence_files = list(d.evidence_files or []) + list(evidence["files"])
    d.status = "under_review"
    d.reviewed_at = now
    _event(d, respondent, "responded", now=now)
    return d


@serialized
def add_evidence(participant, dispute_id, text=None, file_storage=None, *, now=None):
    d = lock(Dispute, dispute_id, label="Dispute")
    _party(participant, d)
    _active(d, "add evidence to")
    if not text and file_storage is None:
        raise ValidationError.field("evidence", "required", "Provide text or a file")
    now = now or utcnow()
    if file_storage is not None:
        filename = getattr(file_storage, "filename", None) or ""
        if not storage_service.allowed_ext(filename):
            raise ValidationError.field("file", "extension", "File type not allowed")
        key = storage_service.put(storage_service.attachment_path(d.assignment_id, filename, now=now), file_storage)
        d.evidence_files = list(d.evidence_files or []) + [key]
    if text:
        field = "initiator_evidence" if participant.id == d.initiator_id else "respondent_evidence"
        prev = getattr(d, field)
        setattr(d, field, f"{prev}\n\n{text}" if prev else text)
    _event(d, participant, "evidence_added", now=now)
    return d


@serialized
def propose_mutual(participant, dispute_id, split_ratio, proposal=None, *, now=None):
    d = lock(Dispute, dispute_id, label="Dispute")
    _party(participant, d)
    _active(d, "propose on")
    ratio = _parse_ratio(split_ratio)
    if ratio is None:
        raise ValidationError.field("split_ratio", "required", "A split ratio is required")
    d.proposed_by_id = participant.id
    d.proposed_split_ratio = ratio
    d.proposal_text = proposal
    d.status = "awaiting_response"
    _event(d, participant, "proposed", f"split {ratio}", now=now)
    return d


@serialized
def request_response(admin, dispute_id, *, now=None):
    require_role(admin, "admin")
    d = lock(Dispute, dispute_id, label="Dispute")
    if d.status != "under_review":
        raise InvalidTransition.between("dispute", d.status, "awaiting_response")
    d.status = "awaiting_response"
    _event(d, admin, "response_requested", now=now)
    return d


# -----------------
# Resolution
# -----------------

def _settle(d, a, escrow, decision, share, summary, now):
    """Move money and the assignment according to the decision. Returns the payer refund."""
    if escrow is not None and escrow.status == "disputed":
        escrow_svc.clear_dispute(escrow)
    releasable = escrow is not None and escrow.status == "held"

    refund = Decimal("0")
    if share is None:
        # resume where the work left off
        lifecycle.transition(a, d.prior_assignment_status, by=d.resolved_by_id, reason="dispute resolved", now=now)
        return refund

    if decision == "favor_client" and releasable and escrow.released_amount == 0:
        escrow_svc.refund_locked(escrow, reason=summary, now=now)
        lifecycle.transition(a, "cancelled", by=d.resolved_by_id, reason="dispute resolved for client", now=now)
        return escrow.refunded_amount
    if decision == "favor_client" and escrow is None and lifecycle.active_escrow(a.id) is None:
        lifecycle.transition(a, "cancelled", by=d.resolved_by_id, reason="dispute resolved for client", now=now)
        return refund

    if releasable:
        _, refund = escrow_svc.settle_split(escrow, share, now=now, reason=summary)
    lifecycle.transition(a, "completed", by=d.resolved_by_id, reason=f"dispute resolved: {decision}", now=now)
    return refund


@serialized
def resolve(caller, dispute_id, decision, summary, split_ratio=None, adjustment=None, *, now=None):
    """Admins may decide anything; a party may only accept the other side's split proposal."""
    require_principal(caller)
    d = lock(Dispute, dispute_id, label="Dispute")
    _active(d, "resolve")
    if decision not in DECISIONS:
        raise ValidationError.field("decision", "invalid", f"decision must be one of {', '.join(DECISIONS)}")
    if not (summary or "").strip():
        raise ValidationError.field("summary", "required", "A resolution summary is required")

    ratio = _parse_ratio(split_ratio)
    if not caller.is_admin:
        _party(caller, d)
        if decision != "mutual_agreement":
            raise AuthorizationError("Only an admin can impose this decision")
        if d.proposed_split_ratio is None or d.proposed_by_id == caller.id:
            raise InvalidTransition("No proposal from the other party to accept",
                                    details={"status": d.status})
        if ratio is not None and ratio != d.proposed_split_ratio:
            raise ValidationError.field("split_ratio", "mismatch", "Split ratio differs from the proposal")
        ratio = d.proposed_split_ratio

    now = now or utcnow()
    a = lock(Assignment, d.assignment_id, label="Assignment")
    escrow = _locked_escrow(d)

    if adjustment not in (None, "") and ratio is None and decision not in ("favor_freelancer", "favor_client"):
        try:
            adj = money(adjustment)
        except ValueError:
            raise ValidationError.field("adjustment", "invalid", "Adjustment must be a number")
        remaining = (escrow.net_amount - escrow.released_amount) if escrow is not None else Decimal("0")
        if adj > 0 or -adj > remaining or remaining == 0:
            raise ValidationError.field("adjustment", "range",
                                        "Adjustment is the refund to the client, between -remaining and 0")
        ratio = ((remaining + adj) / remaining).quantize(Decimal("0.0001"))
    if decision == "favor_freelancer":
        ratio = Decimal("1")
    elif decision == "favor_client":
        ratio = Decimal("0")
    elif decision == "split_payment" and ratio is None:
        raise ValidationError.field("split_ratio", "required", "split_payment needs a split ratio")

    d.resolved_by_id = caller.id
    refund = _settle(d, a, escrow, decision, ratio, summary, now)

    d.status = "resolved"
    d.resolution_decision = decision
    d.resolution_summary = summary.strip()
    d.split_ratio = ratio
    d.payment_adjustment = -refund if refund else money(0)
    d.resolved_at = now
    _event(d, caller, "resolved", f"{decision}: {d.resolution_summary}", now=now)
    emit("dispute", d.id, "DisputeResolved", assignment_id=d.assignment_id, decision=decision,
         initiator_id=d.initiator_id, respondent_id=d.respondent_id, refund=refund)
    log.info("dispute %s resolved: %s (refund %s)", d.id, decision, refund)
    return d


@serialized
def escalate(admin, dispute_id, *, now=None):
    require_role(admin, "admin")
    d = lock(Dispute, dispute_id, label="Dispute")
    now = now or utcnow()
    if d.status != "open":
        raise InvalidTransition.between("dispute", d.status, "escalated")
    if now <= d.response_deadline:
        raise InvalidTransition("Dispute is not overdue yet",
                                details={"response_deadline": d.response_deadline.isoformat()})
    d.status = "escalated"
    _event(d, admin, "escalated", now=now)
    return d


@serialized
def close(admin, dispute_id, *, now=None):
    require_role(admin, "admin")
    d = lock(Dispute, dispute_id, label="Dispute")
    if d.status != "resolved":
        raise InvalidTransition.between("dispute", d.status, "closed")
    d.status = "closed"
    d.closed_at = now or utcnow()
    _event(d, admin, "closed", now=now)
    return d


@serialized
def flag_overdue(*, now=None):
    """Emit DisputeOverdue once per open dispute past its response deadline."""
    now = now or utcnow()
    rows = db.session.execute(
        select(Dispute).where(Dispute.status == "open",
                              Dispute.response_deadline < now,
                              Dispute.overdue_flagged_at.is_(None)).with_for_update()
    ).scalars().all()
    for d in rows:
        d.overdue_flagged_at = now
        _event(d, None, "overdue", now=now)
        emit("dispute", d.id, "DisputeOverdue", assignment_id=d.assignment_id,
             respondent_id=d.respondent_id, response_deadline=d.response_deadline)
    if rows:
        log.info("%s disputes flagged overdue", len(rows))
    return len(rows)


# -----------------
# Queries
# -----------------

def get(caller, dispute_id):
    d = get_or_404(Dispute, dispute_id, label="Dispute")
    require_principal(caller)
    if not (caller.is_admin or caller.id in d.party_ids()):
        raise AuthorizationError("Not a party to this dispute")
    return d


def timeline(caller, dispute_id):
    return [e.to_dict() for e in get(caller, dispute_id).events]


def list_for_assignment(caller, assignment_id):
    a = get_or_404(Assignment, assignment_id, label="Assignment")
    require_participant(caller, a)
    return db.session.execute(
        select(Dispute).where(Dispute.assignment_id == a.id).order_by(Dispute.created_at)
    ).scalars().all()


def list_mine(caller, status=None):
    require_principal(caller)
    stmt = select(Dispute)
    if not caller.is_admin:
        stmt = stmt.where(or_(Dispute.initiator_id == caller.id, Dispute.respondent_id == caller.id))
    if status:
        stmt = stmt.where(Dispute.status == status)
    return db.session.execute(stmt.order_by(Dispute.created_at.desc())).scalars().all()
