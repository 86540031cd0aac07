# trustwork/services/applications.py
"""Application pipeline: one bid per (assignment, freelancer)."""
import logging

from sqlalchemy import select, update, func

from ..extensions import db
from ..errors import (
    AssignmentAlreadyAwarded, AuthorizationError, CooldownActive, InvalidTransition,
    NotFoundError, QuotaError, ValidationError,
)
from ..models.application import Application, STATUSES, OPEN_STATUSES
from ..models.assignment import Assignment
from ..models.skill_test import SkillTestAttempt
from ..security import require_role, require_principal, require_owner
from ..utils import utcnow, money
from .tx import serialized, lock, get_or_404
from .events import emit
from . import lifecycle, skill_tests, storage_service

log = logging.getLogger(__name__)

OWNER_TARGETS = ("shortlisted", "accepted", "rejected")


def _validate_links(links):
    if links is None:
        return []
    if not isinstance(links, (list, tuple)):
        raise ValidationError.field("portfolio_links", "invalid", "portfolio_links must be a list of URLs")
    out = []
    for link in links:
        link = str(link or "").strip()
        if not link:
            continue
        if not link.lower().startswith(("http://", "https://")):
            raise ValidationError.field("portfolio_links", "invalid_url", f"Not a web address: {link}")
        out.append(link)
    return out


def _visible_assignment(assignment_id, caller):
    a = db.session.get(Assignment, assignment_id) if assignment_id else None
    if a is None or (a.status == "draft" and caller.id != a.owner_id):
        raise NotFoundError("Assignment not found", details={"id": assignment_id})
    return a


def _skill_test_gate(freelancer, a, attempt_id, now):
    """Return the passing attempt for a gated assignment or raise why not."""
    req = a.skill_test_requirement
    if attempt_id:
        attempt = db.session.get(SkillTestAttempt, attempt_id)
        if attempt is None or attempt.applicant_id != freelancer.id:
            raise ValidationError.field("skill_test_attempt_id", "unknown", "Unknown skill test attempt")
    else:
        attempt = skill_tests.latest_finished(freelancer.id, a.id)
        if attempt is None:
            running = skill_tests.in_progress_attempt(freelancer.id, a.id)
            if running is not None and skill_tests.finalize_if_expired(running, now):
                attempt = running

    if attempt is None:
        raise ValidationError.field("skill_test", "skill_test_required",
                                    "This assignment requires a skill test before applying")
    matches = (attempt.assignment_id == a.id and attempt.template_id == req["template_id"]
               and attempt.difficulty == req["difficulty"])
    if matches and attempt.passed:
        return attempt
    if attempt.status in ("completed", "failed_cheat") and now < skill_tests.next_eligible_at(attempt):
        raise CooldownActive(
            "Skill test not passed; you can retake it after the cooldown",
            details={"next_eligible_at": skill_tests.next_eligible_at(attempt).isoformat(),
                     "last_attempt": attempt.summary()},
        )
    raise ValidationError.field("skill_test", "skill_test_required",
                                "A passing skill test is required before applying")


# -----------------
# Freelancer side
# -----------------

@serialized
def submit(freelancer, assignment_id, fields=None, *, now=None):
    require_role(freelancer, "freelancer")
    fields = fields or {}
    now = now or utcnow()
    a = _visible_assignment(assignment_id, freelancer)
    if a.owner_id == freelancer.id:
        raise AuthorizationError("You cannot apply to your own posting")
    if a.status != "open":
        raise InvalidTransition("Assignment is not accepting applications", details={"status": a.status})

    exists = db.session.execute(
        select(Application.id).where(Application.assignment_id == a.id,
                                     Application.freelancer_id == freelancer.id)
    ).first()
    if exists:
        raise QuotaError("You have already applied to this assignment", code="ALREADY_APPLIED",
                         details={"application_id": exists[0]})

    cover = (fields.get("cover_letter") or "").strip()
    if not cover:
        raise ValidationError.field("cover_letter", "required", "A cover letter is required")
    rate = None
    if fields.get("proposed_rate") not in (None, ""):
        try:
            rate = money(fields["proposed_rate"])
        except ValueError:
            raise ValidationError.field("proposed_rate", "invalid", "Proposed rate must be a number")
        if rate <= 0:
            raise ValidationError.field("proposed_rate", "positive", "Proposed rate must be positive")

    attempt = None
    if a.skill_test_requirement:
        attempt = _skill_test_gate(freelancer, a, fields.get("skill_test_attempt_id"), now)

    app_ = Application(
        assignment_id=a.id,
        freelancer_id=freelancer.id,
        cover_letter=cover,
        proposed_rate=rate,
        proposed_timeline=fields.get("proposed_timeline"),
        portfolio_links=_validate_links(fields.get("portfolio_links")),
        attachments=[],
        status="pending",
        viewed_by_employer=False,
        skill_test_attempt_id=attempt.id if attempt else None,
        created_at=now,
        updated_at=now,
    )
    db.session.add(app_)
    db.session.execute(
        update(Assignment).where(Assignment.id == a.id)
        .values(applications_count=Assignment.applications_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.flush()
    db.session.expire(a, ["applications_count"])
    emit("application", app_.id, "ApplicationSubmitted", assignment_id=a.id,
         freelancer_id=freelancer.id, owner_id=a.owner_id)
    log.info("application %s submitted by %s for %s", app_.id, freelancer.id, a.id)
    return app_


@serialized
def withdraw(freelancer, app_id, reason=None, *, now=None):
    require_principal(freelancer)
    app_ = lock(Application, app_id, label="Application")
    if app_.freelancer_id != freelancer.id:
        raise AuthorizationError("Only the applicant can withdraw")
    if app_.status not in OPEN_STATUSES:
        raise InvalidTransition.between("application", app_.status, "withdrawn")
    app_.status = "withdrawn"
    app_.withdraw_reason = reason
    app_.updated_at = now or utcnow()
    log.info("application %s withdrawn", app_.id)
    return app_


@serialized
def add_attachment(freelancer, app_id, file_storage, *, kind="attachment", now=None):
    """Store a file for an open application and append its object key."""
    require_principal(freelancer)
    app_ = lock(Application, app_id, label="Application")
    if app_.freelancer_id != freelancer.id:
        raise AuthorizationError("Only the applicant can attach files")
    if app_.status not in OPEN_STATUSES:
        raise InvalidTransition("Attachments can only be added while the application is open",
                                details={"status": app_.status})
    filename = getattr(file_storage, "filename", None) or ""
    if not storage_service.allowed_ext(filename):
        raise ValidationError.field("file", "extension", "File type not allowed")
    if kind == "resume":
        key = storage_service.resume_path(freelancer.id, filename, now=now)
    else:
        key = storage_service.attachment_path(app_.assignment_id, filename, now=now)
    storage_service.put(key, file_storage)
    app_.attachments = list(app_.attachments or []) + [key]
    return app_


# -----------------
# Owner side
# -----------------

def _accepted_sibling(assignment_id):
    return db.session.execute(
        select(Application).where(Application.assignment_id == assignment_id,
                                  Application.status == "accepted")
    ).scalars().first()


@serialized
def set_status(owner, app_id, new_status, message=None, *, now=None):
    require_principal(owner)
    if new_status not in OWNER_TARGETS:
        raise ValidationError.field("status", "invalid", f"status must be one of {', '.join(OWNER_TARGETS)}")
    now = now or utcnow()
    app_ = lock(Application, app_id, label="Application")
    a = lock(Assignment, app_.assignment_id, label="Assignment")
    require_owner(owner, a)

    if new_status == "accepted" and a.status != "open":
        winner = _accepted_sibling(a.id)
        if winner is not None and winner.id != app_.id:
            raise AssignmentAlreadyAwarded("This assignment has already been awarded",
                                           details={"assignment_id": a.id})

    if app_.status == new_status:
        return app_
    if app_.status not in OPEN_STATUSES:
        raise InvalidTransition.between("application", app_.status, new_status)

    if new_status == "accepted":
        _award(owner, a, app_, now)

    app_.status = new_status
    if message is not None:
        app_.employer_message = message
    app_.updated_at = now
    log.info("application %s -> %s", app_.id, new_status)
    return app_


def _award(owner, a, app_, now):
    # conditional write: only one accept can move the posting off "open"
    res = db.session.execute(
        update(Assignment)
        .where(Assignment.id == a.id, Assignment.status == "open")
        .values(status="assigned", version=Assignment.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.session.refresh(a)
        if _accepted_sibling(a.id) is not None:
            raise AssignmentAlreadyAwarded("This assignment has already been awarded",
                                           details={"assignment_id": a.id})
        raise InvalidTransition.between("assignment", a.status, "assigned")
    db.session.refresh(a)
    lifecycle.record(a, "open", "assigned", by=owner, reason=f"application {app_.id} accepted", now=now)

    siblings = db.session.execute(
        select(Application).where(Application.assignment_id == a.id,
                                  Application.id != app_.id,
                                  Application.status.in_(OPEN_STATUSES))
        .with_for_update()
    ).scalars().all()
    for s in siblings:
        s.status = "rejected"
        s.updated_at = now
    emit("application", app_.id, "ApplicationAccepted", assignment_id=a.id,
         freelancer_id=app_.freelancer_id, owner_id=a.owner_id,
         rejected=[s.id for s in siblings])
    log.info("assignment %s awarded to application %s (%s siblings rejected)", a.id, app_.id, len(siblings))


@serialized
def mark_viewed(owner, app_id, *, now=None):
    app_ = lock(Application, app_id, label="Application")
    require_owner(owner, app_.assignment)
    if not app_.viewed_by_employer:
        app_.viewed_by_employer = True
        app_.viewed_at = now or utcnow()
    return app_


# -----------------
# Queries
# -----------------

def get(caller, app_id):
    require_principal(caller)
    app_ = get_or_404(Application, app_id, label="Application")
    if not (caller.is_admin or caller.id in (app_.freelancer_id, app_.assignment.owner_id)):
        raise AuthorizationError("Not allowed to view this application")
    return app_


def list_for_assignment(owner, assignment_id, status=None):
    a = get_or_404(Assignment, assignment_id, label="Assignment")
    if not owner.is_admin:
        require_owner(owner, a)
    stmt = select(Application).where(Application.assignment_id == a.id)
    if status:
        stmt = stmt.where(Application.status == status)
    return db.session.execute(stmt.order_by(Application.created_at, Application.id)).scalars().all()


def list_mine(freelancer, status=None):
    require_principal(freelancer)
    stmt = select(Application).where(Application.freelancer_id == freelancer.id)
    if status:
        stmt = stmt.where(Application.status == status)
    return db.session.execute(stmt.order_by(Application.created_at.desc(), Application.id)).scalars().all()


def stats(caller, assignment_id=None):
    """Counts by status for an owner's assignment, or for the calling freelancer."""
    require_principal(caller)
    stmt = select(Application.status, func.count(Application.id))
    if assignment_id:
        a = get_or_404(Assignment, assignment_id, label="Assignment")
        if not caller.is_admin:
            require_owner(caller, a)
        stmt = stmt.where(Application.assignment_id == a.id)
    else:
        stmt = stmt.where(Application.freelancer_id == caller.id)
    counts = {s: 0 for s in STATUSES}
    for status, n in db.session.execute(stmt.group_by(Application.status)):
        counts[status] = n
    counts["total"] = sum(counts[s] for s in STATUSES)
    counts["unviewed"] = 0
    if assignment_id:
        counts["unviewed"] = db.session.execute(
            select(func.count(Application.id)).where(Application.assignment_id == assignment_id,
                                                     Application.viewed_by_employer.is_(False))
        ).scalar_one()
    return counts
