# trustwork/services/assignments.py
"""Assignment registry: postings (jobs & gigs) and their visibility."""
import logging

from flask import current_app
from sqlalchemy import select, update as sa_update, or_

from ..extensions import db
from ..errors import ValidationError, InvalidTransition, NotFoundError
from ..models.assignment import Assignment, KINDS, BUDGET_UNITS, EDITABLE
from ..models.skill_test import SkillTestTemplate, DIFFICULTIES
from ..security import require_role, require_owner
from ..utils import utcnow, money, parse_dt, as_int
from .tx import serialized, lock
from . import lifecycle

log = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title", "description", "budget_min", "budget_max", "budget_unit", "currency",
    "deadline_at", "required_skills", "experience_level", "location", "remote_allowed",
    "skill_test",
)
SORTS = {
    "created_at": (Assignment.created_at.desc(), Assignment.id),
    "oldest": (Assignment.created_at.asc(), Assignment.id),
    "budget_high": (Assignment.budget_max.desc(), Assignment.id),
    "budget_low": (Assignment.budget_min.asc(), Assignment.id),
}


def _normalize_skills(raw):
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple, set)):
        raise ValidationError.field("required_skills", "invalid", "Skills must be a list of strings")
    seen, out = set(), []
    for s in raw:
        s = str(s).strip()
        if s and s.lower() not in seen:
            seen.add(s.lower())
            out.append(s)
    return out


def _amount(fields, key):
    val = fields.get(key)
    if val in (None, ""):
        return None
    try:
        amt = money(val)
    except ValueError:
        raise ValidationError.field(key, "invalid", f"{key} must be a number")
    if amt < 0:
        raise ValidationError.field(key, "negative", f"{key} cannot be negative")
    return amt


def _apply_fields(a, fields, *, partial):
    if not partial or "title" in fields:
        title = (fields.get("title") or "").strip()
        if not title:
            raise ValidationError.field("title", "required", "Title is required")
        a.title = title[:200]
    if "description" in fields:
        a.description = fields.get("description")

    if "budget_min" in fields or not partial:
        a.budget_min = _amount(fields, "budget_min")
    if "budget_max" in fields or not partial:
        a.budget_max = _amount(fields, "budget_max")
    if a.budget_min is not None and a.budget_max is not None and a.budget_min > a.budget_max:
        raise ValidationError.field("budget_min", "exceeds_max", "Minimum budget cannot exceed maximum budget")

    if "budget_unit" in fields:
        unit = fields.get("budget_unit") or "fixed"
        if unit not in BUDGET_UNITS:
            raise ValidationError.field("budget_unit", "invalid", f"budget_unit must be one of {', '.join(BUDGET_UNITS)}")
        a.budget_unit = unit
    if "currency" in fields:
        a.currency = (fields.get("currency") or current_app.config.get("CURRENCY", "ZAR")).upper()[:10]

    if "deadline_at" in fields:
        raw = fields.get("deadline_at")
        dt = parse_dt(raw)
        if raw and dt is None:
            raise ValidationError.field("deadline_at", "invalid", "deadline_at must be an ISO timestamp")
        a.deadline_at = dt

    if "required_skills" in fields:
        a.required_skills = _normalize_skills(fields.get("required_skills"))
    for key in ("experience_level", "location"):
        if key in fields:
            setattr(a, key, fields.get(key))
    if "remote_allowed" in fields:
        a.remote_allowed = bool(fields.get("remote_allowed"))

    if "skill_test" in fields:
        _apply_skill_test(a, fields.get("skill_test"))


def _apply_skill_test(a, req):
    if not req:
        a.skill_test_template_id = a.skill_test_difficulty = a.skill_test_passing_score = None
        return
    template = db.session.get(SkillTestTemplate, req.get("template_id"))
    if template is None or not template.is_active:
        raise ValidationError.field("skill_test.template_id", "unknown", "Unknown skill test template")
    difficulty = req.get("difficulty") or "mid"
    if difficulty not in DIFFICULTIES:
        raise ValidationError.field("skill_test.difficulty", "invalid", "Unknown difficulty")
    passing = req.get("passing_score")
    passing = as_int(passing, "skill_test.passing_score", current_app.config.get("SKILL_TEST_PASSING_SCORE", 70))
    if not 0 <= passing <= 100:
        raise ValidationError.field("skill_test.passing_score", "range", "Passing score must be 0-100")
    a.skill_test_template_id = template.id
    a.skill_test_difficulty = difficulty
    a.skill_test_passing_score = passing


# -----------------
# Commands
# -----------------

@serialized
def create_assignment(owner, fields, *, now=None):
    require_role(owner, "client")
    fields = fields or {}
    kind = fields.get("kind") or "job"
    if kind not in KINDS:
        raise ValidationError.field("kind", "invalid", "kind must be job or gig")
    status = fields.get("status") or "draft"
    if status not in ("draft", "open"):
        raise ValidationError.field("status", "invalid", "New postings start as draft or open")

    now = now or utcnow()
    a = Assignment(
        owner_id=owner.id,
        kind=kind,
        status=status,
        budget_unit="fixed",
        currency=current_app.config.get("CURRENCY", "ZAR"),
        required_skills=[],
        created_at=now,
        updated_at=now,
    )
    _apply_fields(a, fields, partial=False)
    db.session.add(a)
    db.session.flush()
    lifecycle.record(a, None, status, by=owner, reason="created", now=now)
    log.info("assignment %s created by %s (%s, %s)", a.id, owner.id, kind, status)
    return a


@serialized
def publish(owner, assignment_id, *, now=None):
    a = lock(Assignment, assignment_id, label="Assignment")
    require_owner(owner, a)
    lifecycle.transition(a, "open", by=owner, reason="published", now=now)
    return a


@serialized
def update(owner, assignment_id, patch):
    a = lock(Assignment, assignment_id, label="Assignment")
    require_owner(owner, a)
    if a.status not in EDITABLE:
        raise InvalidTransition("Postings can only be edited while draft or open",
                                details={"status": a.status})
    patch = {k: v for k, v in (patch or {}).items() if k in EDITABLE_FIELDS}
    _apply_fields(a, patch, partial=True)
    return a


@serialized
def close(owner, assignment_id, reason=None, *, now=None):
    a = lock(Assignment, assignment_id, label="Assignment")
    require_owner(owner, a)
    lifecycle.transition(a, "closed", by=owner, reason=reason or "closed by owner", now=now)
    return a


def cancel(owner, assignment_id, reason, *, now=None):
    return lifecycle.cancel(owner, assignment_id, reason, now=now)


# -----------------
# Queries
# -----------------

def _visible_to(a, caller) -> bool:
    if a.status != "draft":
        return True
    if caller is None or not getattr(caller, "is_authenticated", False):
        return False
    return caller.is_admin or caller.id == a.owner_id


def get(assignment_id, caller=None):
    a = db.session.get(Assignment, assignment_id) if assignment_id else None
    if a is None or not _visible_to(a, caller):
        raise NotFoundError("Assignment not found", details={"id": assignment_id})
    return a


def record_view(assignment_id, caller=None) -> bool:
    """Best-effort views_count bump, committed on its own. Never raises."""
    try:
        owner_id = db.session.execute(
            select(Assignment.owner_id).where(Assignment.id == assignment_id)
        ).scalar_one_or_none()
        if owner_id is None or getattr(caller, "id", None) == owner_id:
            return False
        db.session.execute(
            sa_update(Assignment)
            .where(Assignment.id == assignment_id)
            .values(views_count=Assignment.views_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return True
    except Exception as e:
        db.session.rollback()
        log.warning("views_count update for %s dropped: %s", assignment_id, e)
        return False


def list_assignments(caller=None, filters=None, page=1, per_page=20, sort="created_at"):
    """Open postings for everyone; ``mine`` lists the caller's own, drafts included."""
    filters = filters or {}
    stmt = select(Assignment)
    mine = bool(filters.get("mine")) and caller is not None and getattr(caller, "is_authenticated", False)
    if mine:
        stmt = stmt.where(Assignment.owner_id == caller.id)
        if filters.get("status"):
            stmt = stmt.where(Assignment.status == filters["status"])
    else:
        stmt = stmt.where(Assignment.status == "open")

    if filters.get("kind"):
        stmt = stmt.where(Assignment.kind == filters["kind"])
    if filters.get("remote") is not None:
        stmt = stmt.where(Assignment.remote_allowed.is_(bool(filters["remote"])))
    if filters.get("q"):
        like = f"%{filters['q'].strip()}%"
        stmt = stmt.where(or_(Assignment.title.ilike(like), Assignment.description.ilike(like)))
    if filters.get("min_budget") not in (None, ""):
        try:
            min_budget = money(filters["min_budget"])
        except ValueError:
            raise ValidationError.field("min_budget", "invalid", "min_budget must be a number")
        stmt = stmt.where(Assignment.budget_max >= min_budget)

    if sort not in SORTS:
        raise ValidationError.field("sort", "invalid", f"sort must be one of {', '.join(SORTS)}")
    stmt = stmt.order_by(*SORTS[sort])
    rows = db.session.execute(stmt).scalars().all()

    skills = {s.lower() for s in _normalize_skills(filters.get("skills"))}
    if skills:
        rows = [a for a in rows if skills & {s.lower() for s in (a.required_skills or [])}]

    page = max(1, int(page or 1))
    per_page = max(1, min(100, int(per_page or 20)))
    start = (page - 1) * per_page
    return {
        "items": rows[start:start + per_page],
        "total": len(rows),
        "page": page,
        "per_page": per_page,
    }
