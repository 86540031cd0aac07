# trustwork/services/milestones.py
"""Milestone ledger for gigs: ordered deliverables carrying partial amounts."""
import logging
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..errors import AuthorizationError, InvalidTransition, QuotaError, ValidationError
from ..models.assignment import Assignment
from ..models.milestone import Milestone
from ..security import require_principal, require_owner, require_participant, accepted_freelancer_id
from ..utils import utcnow, money, parse_dt
from .tx import serialized, lock, get_or_404
from .events import emit
from . import lifecycle, escrow as escrow_svc, storage_service

log = logging.getLogger(__name__)


def _milestones(gig_id):
    return db.session.execute(
        select(Milestone).where(Milestone.gig_id == gig_id).order_by(Milestone.order_index)
    ).scalars().all()


def _as_freelancer(freelancer, m):
    require_principal(freelancer)
    if freelancer.id != m.freelancer_id:
        raise AuthorizationError("Only the assigned freelancer can do this")


def _as_client(client, m):
    gig = db.session.get(Assignment, m.gig_id)
    require_owner(client, gig)
    return gig


def _move(m, current, target):
    allowed = current if isinstance(current, tuple) else (current,)
    if m.status not in allowed:
        raise InvalidTransition.between("milestone", m.status, target)
    m.status = target


# -----------------
# Creation
# -----------------

@serialized
def create_batch(client, gig_id, items, *, now=None):
    gig = lock(Assignment, gig_id, label="Gig")
    require_owner(client, gig)
    if not gig.is_gig:
        raise ValidationError.field("gig_id", "not_a_gig", "Milestones apply to gigs only")
    if gig.status not in ("assigned", "in_progress"):
        raise InvalidTransition("Milestones are created once the gig is awarded",
                                details={"status": gig.status})
    if _milestones(gig.id):
        raise InvalidTransition("This gig already has milestones")
    escrow = lifecycle.active_escrow(gig.id)
    if escrow is None:
        raise InvalidTransition("Fund the escrow before creating milestones")
    if not items:
        raise ValidationError.field("milestones", "required", "At least one milestone is required")

    now = now or utcnow()
    max_revisions = current_app.config.get("MAX_REVISIONS_PER_MILESTONE", 3)
    freelancer_id = accepted_freelancer_id(gig)
    created, total = [], Decimal("0")
    for idx, item in enumerate(items):
        title = (item.get("title") or "").strip()
        if not title:
            raise ValidationError.field(f"milestones[{idx}].title", "required", "Milestone title is required")
        try:
            amount = money(item.get("amount"))
        except ValueError:
            raise ValidationError.field(f"milestones[{idx}].amount", "invalid", "Amount must be a number")
        if amount <= 0:
            raise ValidationError.field(f"milestones[{idx}].amount", "positive", "Amount must be positive")
        total += amount
        created.append(Milestone(
            gig_id=gig.id,
            order_index=idx,
            freelancer_id=freelancer_id,
            title=title,
            description=item.get("description"),
            amount=amount,
            percentage=(amount * 100 / escrow.gross_amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            due_date=parse_dt(item.get("due_date")),
            status="pending",
            deliverable_files=[],
            deliverable_links=[],
            revision_count=0,
            max_revisions=max_revisions,
            escrow_payment_id=escrow.id,
            released_amount=money(0),
            created_at=now,
        ))
    if total != escrow.gross_amount:
        raise ValidationError.field(
            "milestones", "sum_mismatch",
            f"Milestone amounts add up to {total}, escrow holds {escrow.gross_amount}",
        )
    db.session.add_all(created)
    db.session.flush()
    log.info("gig %s: %s milestones created", gig.id, len(created))
    lifecycle.try_start_work(gig, by=client, now=now)
    return created


# -----------------
# Transitions
# -----------------

@serialized
def start(freelancer, milestone_id, *, now=None):
    m = lock(Milestone, milestone_id, label="Milestone")
    _as_freelancer(freelancer, m)
    if m.status == "in_progress":
        return m
    gig = db.session.get(Assignment, m.gig_id)
    if gig.status != "in_progress":
        raise InvalidTransition("Work starts once the gig is in progress", details={"status": gig.status})
    _move(m, "pending", "in_progress")
    m.started_at = now or utcnow()
    return m


@serialized
def submit(freelancer, milestone_id, *, files=None, links=None, notes=None, now=None):
    m = lock(Milestone, milestone_id, label="Milestone")
    _as_freelancer(freelancer, m)
    files = [str(f) for f in (files or []) if f]
    links = [str(u).strip() for u in (links or []) if str(u or "").strip()]
    if not (files or links or m.deliverable_files):
        raise ValidationError.field("deliverables", "required", "Attach at least one file or link")
    _move(m, ("in_progress", "revision_requested"), "submitted")
    m.deliverable_files = list(m.deliverable_files or []) + files
    m.deliverable_links = list(m.deliverable_links or []) + links
    m.submission_notes = notes
    m.submitted_at = now or utcnow()
    log.info("milestone %s submitted", m.id)
    return m


@serialized
def attach_deliverable(freelancer, milestone_id, file_storage, *, now=None):
    m = lock(Milestone, milestone_id, label="Milestone")
    _as_freelancer(freelancer, m)
    if m.status not in ("pending", "in_progress", "revision_requested"):
        raise InvalidTransition("Deliverables can only be added while work is open",
                                details={"status": m.status})
    filename = getattr(file_storage, "filename", None) or ""
    if not storage_service.allowed_ext(filename):
        raise ValidationError.field("file", "extension", "File type not allowed")
    key = storage_service.put(storage_service.attachment_path(m.gig_id, filename, now=now), file_storage)
    m.deliverable_files = list(m.deliverable_files or []) + [key]
    return m


@serialized
def approve(client, milestone_id, notes=None, *, now=None):
    m = lock(Milestone, milestone_id, label="Milestone")
    gig = _as_client(client, m)
    _move(m, "submitted", "approved")
    now = now or utcnow()
    m.client_notes = notes
    m.approved_at = now

    released = escrow_svc.release_partial(m, m.amount, now=now)
    emit("milestone", m.id, "MilestoneApproved", gig_id=m.gig_id, amount=m.amount,
         released=released, freelancer_id=m.freelancer_id)
    log.info("milestone %s approved, %s released", m.id, released)

    db.session.flush()
    if all(x.status == "approved" for x in _milestones(m.gig_id)):
        gig = lock(Assignment, gig.id, label="Gig")
        if gig.status == "in_progress":
            lifecycle.transition(gig, "pending_review", by=client, reason="all milestones approved", now=now)
    return m


@serialized
def reject(client, milestone_id, notes=None, *, now=None):
    m = lock(Milestone, milestone_id, label="Milestone")
    _as_client(client, m)
    _move(m, "submitted", "rejected")
    m.client_notes = notes
    m.rejected_at = now or utcnow()
    return m


@serialized
def request_revision(client, milestone_id, notes=None, *, now=None):
    m = lock(Milestone, milestone_id, label="Milestone")
    _as_client(client, m)
    if m.status != "submitted":
        raise InvalidTransition.between("milestone", m.status, "revision_requested")
    if m.revision_count >= m.max_revisions:
        raise QuotaError("Revision limit reached for this milestone", code="REVISION_LIMIT",
                         details={"revision_count": m.revision_count, "max_revisions": m.max_revisions})
    m.status = "revision_requested"
    m.revision_count += 1
    m.client_notes = notes
    return m


def update_status(caller, milestone_id, status, **kwargs):
    """Route a requested status to the matching transition."""
    ops = {
        "in_progress": start,
        "submitted": submit,
        "approved": approve,
        "rejected": reject,
        "revision_requested": request_revision,
    }
    op = ops.get(status)
    if op is None:
        raise ValidationError.field("status", "invalid", f"status must be one of {', '.join(ops)}")
    if status in ("approved", "rejected", "revision_requested"):
        return op(caller, milestone_id, kwargs.get("notes"), now=kwargs.get("now"))
    if status == "submitted":
        return op(caller, milestone_id, files=kwargs.get("files"), links=kwargs.get("links"),
                  notes=kwargs.get("notes"), now=kwargs.get("now"))
    return op(caller, milestone_id, now=kwargs.get("now"))


# -----------------
# Queries
# -----------------

def get_for_gig(caller, gig_id):
    gig = get_or_404(Assignment, gig_id, label="Gig")
    require_participant(caller, gig)
    return _milestones(gig.id)


def progress(caller, gig_id):
    rows = get_for_gig(caller, gig_id)
    total = len(rows)
    completed = sum(1 for m in rows if m.status == "approved")
    return {
        "total": total,
        "completed": completed,
        "pending": total - completed,
        "percent": round(completed * 100 / total) if total else 0,
        "total_amount": str(money(sum((m.amount for m in rows), Decimal("0")))),
        "released_amount": str(money(sum((m.released_amount or 0 for m in rows), Decimal("0")))),
    }
