# trustwork/services/reviews.py
"""Post-completion reviews, bounded by the review window."""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..errors import AuthorizationError, InvalidTransition, QuotaError, ValidationError
from ..models.application import Application
from ..models.assignment import Assignment
from ..models.review import Review, ReviewHelpfulVote, SUB_RATINGS, MODERATION_STATUSES
from ..security import require_principal, require_role, require_participant
from ..utils import utcnow, iso
from .tx import serialized, lock, get_or_404
from .events import emit
from . import lifecycle

log = logging.getLogger(__name__)

_TENTH = Decimal("0.1")


def _context(app_id, caller):
    """Resolve (application, assignment, reviewer_type, reviewee_id) for a participant."""
    require_principal(caller)
    app_ = get_or_404(Application, app_id, label="Application")
    a = app_.assignment
    if app_.status != "accepted":
        raise InvalidTransition("Only the awarded application can be reviewed",
                                details={"application_status": app_.status})
    if caller.id == a.owner_id:
        reviewer_type = "client" if a.is_gig else "employer"
        reviewee_id = app_.freelancer_id
    elif caller.id == app_.freelancer_id:
        reviewer_type = "freelancer" if a.is_gig else "employee"
        reviewee_id = a.owner_id
    else:
        raise AuthorizationError("Only the participants can review this engagement")
    return app_, a, reviewer_type, reviewee_id


def _existing(app_id, reviewer_id):
    return db.session.execute(
        select(Review).where(Review.application_id == app_id, Review.reviewer_id == reviewer_id)
    ).scalars().first()


def _rating(value, field):
    try:
        r = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError.field(field, "invalid", "Ratings must be numbers")
    if not 1 <= r <= 5:
        raise ValidationError.field(field, "range", "Ratings must be between 1 and 5")
    return r


def _validate(reviewer_type, ratings, text, overall):
    keys = SUB_RATINGS[reviewer_type]
    ratings = ratings or {}
    unknown = set(ratings) - set(keys)
    if unknown:
        raise ValidationError.field("ratings", "unknown_key",
                                    f"Unknown ratings for {reviewer_type}: {', '.join(sorted(unknown))}")
    subs = {k: int(_rating(v, f"ratings.{k}")) for k, v in ratings.items() if v is not None}

    if overall is not None:
        overall = _rating(overall, "overall_rating").quantize(_TENTH, rounding=ROUND_HALF_UP)
    elif subs:
        overall = (Decimal(sum(subs.values())) / len(subs)).quantize(_TENTH, rounding=ROUND_HALF_UP)
    else:
        raise ValidationError.field("overall_rating", "required", "Give an overall rating or sub-ratings")

    text = (text or "").strip()
    lo = current_app.config.get("REVIEW_TEXT_MIN_LENGTH", 100)
    hi = current_app.config.get("REVIEW_TEXT_MAX_LENGTH", 500)
    if len(text) < lo:
        raise ValidationError.field("review_text", "too_short", f"Reviews need at least {lo} characters")
    if len(text) > hi:
        raise ValidationError.field("review_text", "too_long", f"Reviews are limited to {hi} characters")
    return subs, overall, text


# -----------------
# Commands
# -----------------

def can_review(app_id, caller, *, now=None):
    now = now or utcnow()
    app_, a, reviewer_type, _ = _context(app_id, caller)
    window_end = lifecycle.review_window_end(a)
    reason = None
    if a.status != "completed":
        reason = "not_completed"
    elif _existing(app_.id, caller.id) is not None:
        reason = "already_reviewed"
    elif not window_end or window_end < now:
        reason = "window_closed"
    return {
        "can_review": reason is None,
        "reason": reason,
        "reviewer_type": reviewer_type,
        "review_window_end": iso(window_end),
    }


@serialized
def submit(app_id, caller, ratings=None, text=None, overall_rating=None, *, now=None):
    now = now or utcnow()
    app_, a, reviewer_type, reviewee_id = _context(app_id, caller)
    if a.status != "completed":
        raise InvalidTransition("Reviews open once the assignment is completed",
                                details={"status": a.status})
    if _existing(app_.id, caller.id) is not None:
        raise QuotaError("You have already reviewed this engagement", code="REVIEW_EXISTS")
    window_end = lifecycle.review_window_end(a)
    if window_end < now:
        raise QuotaError("The review window has closed", code="REVIEW_WINDOW_CLOSED",
                         details={"review_window_end": iso(window_end)})

    subs, overall, text = _validate(reviewer_type, ratings, text, overall_rating)
    r = Review(
        application_id=app_.id,
        assignment_id=a.id,
        reviewer_id=caller.id,
        reviewee_id=reviewee_id,
        reviewer_type=reviewer_type,
        overall_rating=overall,
        sub_ratings=subs,
        review_text=text,
        moderation_status="pending",
        review_window_end=window_end,
        created_at=now,
        updated_at=now,
    )
    db.session.add(r)
    db.session.flush()
    emit("review", r.id, "ReviewSubmitted", assignment_id=a.id, reviewer_id=caller.id,
         reviewee_id=reviewee_id, overall_rating=overall)
    log.info("review %s submitted by %s for application %s", r.id, caller.id, app_.id)
    return r


@serialized
def update_review(review_id, caller, ratings=None, text=None, overall_rating=None, *, now=None):
    now = now or utcnow()
    require_principal(caller)
    r = lock(Review, review_id, label="Review")
    if r.reviewer_id != caller.id:
        raise AuthorizationError("Only the author can edit a review")
    if now > r.review_window_end:
        raise QuotaError("The review window has closed", code="REVIEW_WINDOW_CLOSED",
                         details={"review_window_end": iso(r.review_window_end)})
    if r.moderation_status == "approved":
        raise InvalidTransition("Approved reviews can no longer be edited")

    merged = dict(r.sub_ratings or {})
    merged.update(ratings or {})
    if overall_rating is None and not ratings:
        overall_rating = r.overall_rating
    subs, overall, text = _validate(r.reviewer_type, merged, text if text is not None else r.review_text,
                                    overall_rating)
    r.sub_ratings = subs
    r.overall_rating = overall
    r.review_text = text
    r.updated_at = now
    return r


@serialized
def flag(caller, review_id, reason, *, now=None):
    require_principal(caller)
    r = lock(Review, review_id, label="Review")
    if not (reason or "").strip():
        raise ValidationError.field("reason", "required", "Say why the review is being flagged")
    if r.is_flagged:
        return r
    r.is_flagged = True
    r.flag_reason = reason.strip()
    r.flagged_by_id = caller.id
    r.flagged_at = now or utcnow()
    log.info("review %s flagged by %s", r.id, caller.id)
    return r


@serialized
def moderate(admin, review_id, status, notes=None, *, now=None):
    require_role(admin, "admin")
    if status not in MODERATION_STATUSES:
        raise ValidationError.field("status", "invalid", f"status must be one of {', '.join(MODERATION_STATUSES)}")
    r = lock(Review, review_id, label="Review")
    r.moderation_status = status
    r.moderation_notes = notes
    r.moderated_at = now or utcnow()
    return r


@serialized
def mark_helpful(caller, review_id, *, now=None):
    """One vote per principal; voting again leaves the count alone."""
    require_principal(caller)
    r = lock(Review, review_id, label="Review")
    if r.reviewer_id == caller.id:
        raise ValidationError.field("review_id", "own_review", "You cannot mark your own review helpful")
    voted = db.session.execute(
        select(ReviewHelpfulVote.id).where(ReviewHelpfulVote.review_id == r.id,
                                           ReviewHelpfulVote.voter_id == caller.id)
    ).first()
    if voted:
        return r
    db.session.add(ReviewHelpfulVote(review_id=r.id, voter_id=caller.id, created_at=now or utcnow()))
    r.helpful_count = (r.helpful_count or 0) + 1
    return r


# -----------------
# Queries
# -----------------

def _visible(stmt):
    return stmt.where(Review.moderation_status != "removed")


def get_for_user(user_id, reviewer_type=None):
    """Reviews about a user plus aggregates computed at read time."""
    stmt = _visible(select(Review).where(Review.reviewee_id == user_id))
    if reviewer_type:
        stmt = stmt.where(Review.reviewer_type == reviewer_type)
    rows = db.session.execute(stmt.order_by(Review.created_at.desc())).scalars().all()

    sums, counts = {}, {}
    for r in rows:
        for k, v in (r.sub_ratings or {}).items():
            sums[k] = sums.get(k, 0) + v
            counts[k] = counts.get(k, 0) + 1
    average = None
    if rows:
        average = float((sum(Decimal(r.overall_rating) for r in rows) / len(rows)).quantize(_TENTH, rounding=ROUND_HALF_UP))
    return {
        "reviews": rows,
        "count": len(rows),
        "average_rating": average,
        "sub_ratings": {
            k: float((Decimal(sums[k]) / counts[k]).quantize(_TENTH, rounding=ROUND_HALF_UP)) for k in sums
        },
    }


def get_for_assignment(caller, assignment_id):
    a = get_or_404(Assignment, assignment_id, label="Assignment")
    require_participant(caller, a)
    return db.session.execute(
        _visible(select(Review).where(Review.assignment_id == a.id)).order_by(Review.created_at)
    ).scalars().all()
