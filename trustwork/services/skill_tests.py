# trustwork/services/skill_tests.py
"""Skill-test gate: time-bounded attempts over a frozen question snapshot."""
import logging
import random
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..errors import (
    AuthorizationError, AttemptInProgress, CooldownActive, InvalidTransition,
    NotFoundError, ValidationError,
)
from ..models.assignment import Assignment
from ..models.skill_test import (
    SkillTestTemplate, SkillTestQuestion, SkillTestAttempt, DIFFICULTIES, OPTIONS, FINISHED,
)
from ..security import require_principal, require_role, require_owner
from ..utils import utcnow, iso, as_int
from .tx import serialized, lock, get_or_404

log = logging.getLogger(__name__)


# -----------------
# Helpers
# -----------------

def score_answers(questions, answers):
    """Return (correct, total, score) with score = round(100 * correct / total)."""
    answers = answers or {}
    total = len(questions or [])
    correct = sum(1 for q in questions or [] if answers.get(q["id"]) == q["correct_option"])
    if not total:
        return 0, 0, 0
    score = int((Decimal(100 * correct) / Decimal(total)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return correct, total, score


def _normalize_answers(questions, raw):
    """Accept {question_id: option}, [{question_id, answer}], or options by position."""
    if raw is None:
        return {}
    ids = [q["id"] for q in questions]
    out = {}
    if isinstance(raw, dict):
        items = raw.items()
    elif isinstance(raw, (list, tuple)):
        items = []
        for pos, item in enumerate(raw):
            if isinstance(item, dict):
                items.append((item.get("question_id"), item.get("answer", item.get("selected_option"))))
            elif pos < len(ids):
                items.append((ids[pos], item))
    else:
        raise ValidationError.field("answers", "invalid", "answers must be a list or mapping")
    for qid, opt in items:
        if qid not in ids or opt in (None, ""):
            continue
        opt = str(opt).strip().upper()
        if opt not in OPTIONS:
            raise ValidationError.field("answers", "invalid_option", f"Answer must be one of {', '.join(OPTIONS)}")
        out[qid] = opt
    return out


def deadline(attempt):
    grace = current_app.config.get("SKILL_TEST_GRACE_SECONDS", 60)
    return attempt.started_at + timedelta(seconds=attempt.time_limit_seconds + grace)


def is_expired(attempt, now=None) -> bool:
    return attempt.status == "in_progress" and (now or utcnow()) > deadline(attempt)


def public_questions(attempt):
    return [{"id": q["id"], "prompt": q["prompt"], "options": q["options"]} for q in attempt.questions_data or []]


def _finalize(attempt, now, *, answers=None, time_taken=None, tab_switches=None):
    if answers is not None:
        attempt.answers_data = answers
    if tab_switches is not None:
        attempt.tab_switches = max(0, int(tab_switches))
    _, _, score = score_answers(attempt.questions_data, attempt.answers_data)
    attempt.score = score
    if attempt.tab_switches > 0:
        attempt.status = "failed_cheat"
        attempt.passed = False
    else:
        attempt.status = "completed"
        attempt.passed = score >= attempt.passing_score
    if time_taken is None:
        time_taken = min(int((now - attempt.started_at).total_seconds()), attempt.time_limit_seconds)
    attempt.time_taken_seconds = max(0, int(time_taken))
    attempt.completed_at = now
    log.info("attempt %s finished: %s score=%s passed=%s",
             attempt.id, attempt.status, attempt.score, attempt.passed)
    return attempt


def finalize_if_expired(attempt, now=None) -> bool:
    """Auto-finalize with the saved answers once time (plus grace) is up."""
    now = now or utcnow()
    if not is_expired(attempt, now):
        return False
    _finalize(attempt, now, time_taken=attempt.time_limit_seconds)
    return True


@serialized
def _finalize_expired_by_id(attempt_id, now):
    attempt = lock(SkillTestAttempt, attempt_id, label="Attempt")
    finalize_if_expired(attempt, now)
    return attempt


def _pair_filter(stmt, applicant_id, assignment_id, template_id=None):
    stmt = stmt.where(SkillTestAttempt.applicant_id == applicant_id)
    if assignment_id:
        return stmt.where(SkillTestAttempt.assignment_id == assignment_id)
    stmt = stmt.where(SkillTestAttempt.assignment_id.is_(None))
    if template_id:
        stmt = stmt.where(SkillTestAttempt.template_id == template_id)
    return stmt


def latest_finished(applicant_id, assignment_id, template_id=None):
    stmt = _pair_filter(select(SkillTestAttempt), applicant_id, assignment_id, template_id)
    stmt = stmt.where(SkillTestAttempt.status.in_(FINISHED)).order_by(SkillTestAttempt.completed_at.desc())
    return db.session.execute(stmt).scalars().first()


def in_progress_attempt(applicant_id, assignment_id, template_id=None):
    stmt = _pair_filter(select(SkillTestAttempt), applicant_id, assignment_id, template_id)
    stmt = stmt.where(SkillTestAttempt.status == "in_progress")
    return db.session.execute(stmt).scalars().first()


def next_eligible_at(attempt):
    days = current_app.config.get("SKILL_TEST_COOLDOWN_DAYS", 7)
    return attempt.completed_at + timedelta(days=days)


def _cooldown_details(prior):
    return {
        "next_eligible_at": iso(next_eligible_at(prior)),
        "last_attempt": prior.summary(),
    }


# -----------------
# Eligibility & attempts
# -----------------

def can_attempt(applicant, assignment_id=None, *, template_id=None, now=None):
    require_principal(applicant)
    now = now or utcnow()
    prior = latest_finished(applicant.id, assignment_id, template_id)
    if prior is None or now >= next_eligible_at(prior):
        return {"eligible": True, "last_attempt": prior.summary() if prior else None, "next_eligible_at": None}
    return {"eligible": False, **_cooldown_details(prior)}


@serialized
def start(applicant, template_id=None, difficulty=None, assignment_id=None, *, now=None):
    require_role(applicant, "freelancer")
    now = now or utcnow()

    passing_score = current_app.config.get("SKILL_TEST_PASSING_SCORE", 70)
    if assignment_id:
        a = get_or_404(Assignment, assignment_id, label="Assignment")
        if a.status != "open":
            raise InvalidTransition("Assignment is not accepting applicants", details={"status": a.status})
        if a.owner_id == applicant.id:
            raise AuthorizationError("You cannot test for your own posting")
        req = a.skill_test_requirement
        if req:
            template_id = template_id or req["template_id"]
            difficulty = difficulty or req["difficulty"]
            if (template_id, difficulty) != (req["template_id"], req["difficulty"]):
                raise ValidationError.field("template_id", "mismatch",
                                            "This assignment requires a different skill test")
            passing_score = req["passing_score"] if req["passing_score"] is not None else passing_score

    template = db.session.get(SkillTestTemplate, template_id) if template_id else None
    if template is None or not template.is_active:
        raise NotFoundError("Skill test not found", details={"template_id": template_id})
    if difficulty not in DIFFICULTIES:
        raise ValidationError.field("difficulty", "invalid", f"difficulty must be one of {', '.join(DIFFICULTIES)}")

    running = in_progress_attempt(applicant.id, assignment_id, template.id)
    if running is not None:
        running = lock(SkillTestAttempt, running.id, label="Attempt")
        if not finalize_if_expired(running, now):
            raise AttemptInProgress("An attempt is already in progress",
                                    details={"attempt_id": running.id})
        db.session.flush()

    prior = latest_finished(applicant.id, assignment_id, template.id)
    if prior is not None and now < next_eligible_at(prior):
        days = current_app.config.get("SKILL_TEST_COOLDOWN_DAYS", 7)
        raise CooldownActive(f"You must wait {days} days between attempts", details=_cooldown_details(prior))

    pool = db.session.execute(
        select(SkillTestQuestion)
        .where(SkillTestQuestion.template_id == template.id,
               SkillTestQuestion.difficulty == difficulty,
               SkillTestQuestion.is_active.is_(True))
        .order_by(SkillTestQuestion.id)
    ).scalars().all()
    if not pool:
        raise ValidationError.field("difficulty", "no_questions", "No questions available for this test")
    wanted = current_app.config.get("SKILL_TEST_QUESTION_COUNTS", {}).get(difficulty, len(pool))
    chosen = random.sample(pool, min(wanted, len(pool)))

    attempt = SkillTestAttempt(
        applicant_id=applicant.id,
        template_id=template.id,
        assignment_id=assignment_id,
        difficulty=difficulty,
        questions_data=[q.snapshot() for q in chosen],
        answers_data={},
        passing_score=passing_score,
        time_limit_seconds=current_app.config.get("SKILL_TEST_TIME_LIMIT_MINUTES", 40) * 60,
        status="in_progress",
        started_at=now,
    )
    db.session.add(attempt)
    db.session.flush()
    log.info("attempt %s started by %s (template=%s, %s, %s questions)",
             attempt.id, applicant.id, template.id, difficulty, len(chosen))
    return attempt


def _own_attempt(applicant, attempt_id):
    require_principal(applicant)
    attempt = lock(SkillTestAttempt, attempt_id, label="Attempt")
    if attempt.applicant_id != applicant.id:
        raise AuthorizationError("Not your attempt")
    return attempt


@serialized
def record_answer(applicant, attempt_id, question_id, option, *, now=None):
    now = now or utcnow()
    attempt = _own_attempt(applicant, attempt_id)
    if finalize_if_expired(attempt, now):
        return attempt
    if attempt.status != "in_progress":
        raise InvalidTransition.between("attempt", attempt.status, "in_progress")
    answer = _normalize_answers(attempt.questions_data, {question_id: option})
    if question_id not in answer:
        raise ValidationError.field("question_id", "unknown", "Question is not part of this attempt")
    answers = dict(attempt.answers_data or {})
    answers.update(answer)
    attempt.answers_data = answers
    return attempt


@serialized
def submit(applicant, attempt_id, answers, time_taken_seconds=None, tab_switches=0, *, now=None):
    """Score an attempt. Re-submitting a finished attempt returns it unchanged."""
    now = now or utcnow()
    time_taken_seconds = as_int(time_taken_seconds, "time_taken_seconds")
    tab_switches = as_int(tab_switches, "tab_switches", 0)
    attempt = _own_attempt(applicant, attempt_id)
    if attempt.status in FINISHED:
        return attempt
    if attempt.status != "in_progress":
        raise InvalidTransition.between("attempt", attempt.status, "completed")
    if finalize_if_expired(attempt, now):
        return attempt

    merged = dict(attempt.answers_data or {})
    merged.update(_normalize_answers(attempt.questions_data, answers))
    if time_taken_seconds is not None:
        time_taken_seconds = min(time_taken_seconds, attempt.time_limit_seconds)
    return _finalize(attempt, now, answers=merged, time_taken=time_taken_seconds,
                     tab_switches=tab_switches or 0)


def _can_see(caller, attempt) -> bool:
    if caller.is_admin or caller.id == attempt.applicant_id:
        return True
    if attempt.assignment_id:
        a = db.session.get(Assignment, attempt.assignment_id)
        return a is not None and a.owner_id == caller.id
    return False


def get_attempt(caller, attempt_id, *, now=None):
    require_principal(caller)
    now = now or utcnow()
    attempt = get_or_404(SkillTestAttempt, attempt_id, label="Attempt")
    if not _can_see(caller, attempt):
        raise AuthorizationError("Not allowed to view this attempt")
    if is_expired(attempt, now):
        attempt = _finalize_expired_by_id(attempt.id, now)
    out = attempt.summary()
    out["total_questions"] = attempt.total_questions
    if attempt.status == "in_progress" and caller.id == attempt.applicant_id:
        out["questions"] = public_questions(attempt)
        out["answers"] = dict(attempt.answers_data or {})
        out["expires_at"] = iso(attempt.started_at + timedelta(seconds=attempt.time_limit_seconds))
    return out


def review(caller, attempt_id, *, now=None):
    """Snapshot questions with the given answer, correctness and explanation."""
    require_principal(caller)
    attempt = get_or_404(SkillTestAttempt, attempt_id, label="Attempt")
    if not _can_see(caller, attempt):
        raise AuthorizationError("Not allowed to review this attempt")
    if is_expired(attempt, now):
        attempt = _finalize_expired_by_id(attempt.id, now or utcnow())
    if attempt.status not in FINISHED:
        raise InvalidTransition("Attempt review opens once the attempt is finished",
                                details={"status": attempt.status})
    answers = attempt.answers_data or {}
    items = []
    for q in attempt.questions_data:
        given = answers.get(q["id"])
        items.append({
            "id": q["id"],
            "prompt": q["prompt"],
            "options": q["options"],
            "correct_option": q["correct_option"],
            "your_answer": given,
            "is_correct": given == q["correct_option"],
            "explanation": q.get("explanation"),
        })
    return {"attempt": attempt.summary(), "questions": items}


def list_for_assignment(owner, assignment_id):
    a = get_or_404(Assignment, assignment_id, label="Assignment")
    if not owner.is_admin:
        require_owner(owner, a)
    rows = db.session.execute(
        select(SkillTestAttempt).where(SkillTestAttempt.assignment_id == a.id)
        .order_by(SkillTestAttempt.started_at.desc())
    ).scalars().all()
    return [r.summary() for r in rows]


def list_mine(applicant):
    require_principal(applicant)
    rows = db.session.execute(
        select(SkillTestAttempt).where(SkillTestAttempt.applicant_id == applicant.id)
        .order_by(SkillTestAttempt.started_at.desc())
    ).scalars().all()
    return [r.summary() for r in rows]


@serialized
def sweep_expired(*, now=None):
    """Worker form of auto-finalize. Returns the number of attempts closed."""
    now = now or utcnow()
    rows = db.session.execute(
        select(SkillTestAttempt).where(SkillTestAttempt.status == "in_progress").with_for_update()
    ).scalars().all()
    closed = sum(1 for attempt in rows if finalize_if_expired(attempt, now))
    if closed:
        log.info("auto-finalized %s expired attempts", closed)
    return closed


# -----------------
# Templates & questions (admin)
# -----------------

def _refresh_total(template):
    template.total_questions = db.session.execute(
        select(db.func.count(SkillTestQuestion.id))
        .where(SkillTestQuestion.template_id == template.id, SkillTestQuestion.is_active.is_(True))
    ).scalar_one()


@serialized
def create_template(admin, name, category, description=None):
    require_role(admin, "admin")
    if not (name or "").strip() or not (category or "").strip():
        raise ValidationError.field("name", "required", "Template name and category are required")
    t = SkillTestTemplate(name=name.strip(), category=category.strip(), description=description)
    db.session.add(t)
    db.session.flush()
    return t


def _question_fields(q, fields):
    if "difficulty" in fields:
        if fields["difficulty"] not in DIFFICULTIES:
            raise ValidationError.field("difficulty", "invalid", "Unknown difficulty")
        q.difficulty = fields["difficulty"]
    if "prompt" in fields:
        if not (fields["prompt"] or "").strip():
            raise ValidationError.field("prompt", "required", "Prompt is required")
        q.prompt = fields["prompt"].strip()
    options = fields.get("options")
    if options is not None:
        if isinstance(options, (list, tuple)):
            options = dict(zip(OPTIONS, options))
        if set(options) != set(OPTIONS) or not all(str(v).strip() for v in options.values()):
            raise ValidationError.field("options", "invalid", "Exactly four options A-D are required")
        q.option_a, q.option_b, q.option_c, q.option_d = (str(options[k]) for k in OPTIONS)
    if "correct_option" in fields:
        correct = str(fields["correct_option"] or "").upper()
        if correct not in OPTIONS:
            raise ValidationError.field("correct_option", "invalid", "Correct option must be A-D")
        q.correct_option = correct
    if "explanation" in fields:
        q.explanation = fields["explanation"]
    if "is_active" in fields:
        q.is_active = bool(fields["is_active"])


@serialized
def add_question(admin, template_id, fields):
    require_role(admin, "admin")
    template = lock(SkillTestTemplate, template_id, label="Skill test")
    fields = fields or {}
    for key in ("difficulty", "prompt", "options", "correct_option"):
        if fields.get(key) in (None, ""):
            raise ValidationError.field(key, "required", f"{key} is required")
    q = SkillTestQuestion(template_id=template.id)
    _question_fields(q, fields)
    db.session.add(q)
    db.session.flush()
    _refresh_total(template)
    return q


@serialized
def update_question(admin, question_id, fields):
    """Edits apply to future attempts only; existing snapshots are untouched."""
    require_role(admin, "admin")
    q = lock(SkillTestQuestion, question_id, label="Question")
    _question_fields(q, fields or {})
    db.session.flush()
    _refresh_total(lock(SkillTestTemplate, q.template_id, label="Skill test"))
    return q


def list_templates(category=None):
    stmt = select(SkillTestTemplate).where(SkillTestTemplate.is_active.is_(True))
    if category:
        stmt = stmt.where(SkillTestTemplate.category == category)
    return db.session.execute(stmt.order_by(SkillTestTemplate.name)).scalars().all()
