from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from trustwork.errors import AuthorizationError, InvalidTransition, QuotaError, ValidationError
from trustwork.extensions import db
from trustwork.models.review import ReviewHelpfulVote
from trustwork.services import lifecycle, reviews
from trustwork.utils import utcnow

TEXT = ("Clear brief, quick answers to every question and the payment arrived on time. "
        "Would happily take on another project with this client.")
EMPLOYER_RATINGS = {"technical_skills": 5, "communication": 4, "work_quality": 5, "professionalism": 4}
EMPLOYEE_RATINGS = {"work_environment": 4, "management": 4, "compensation": 5, "career_growth": 3}


@pytest.fixture
def completed_job(funded, client_user, freelancer):
    a, app_, _ = funded(kind="job", gross="1000")
    lifecycle.mark_complete(freelancer, a.id)
    t0 = utcnow()
    lifecycle.approve_completion(client_user, a.id, now=t0)
    return a, app_, t0


def test_review_window(completed_job, client_user, freelancer):
    _, app_, t0 = completed_job
    r = reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT, now=t0 + timedelta(days=29))
    assert r.reviewer_type == "employer"
    assert r.reviewee_id == freelancer.id
    assert r.overall_rating == Decimal("4.5")
    assert r.review_window_end == t0 + timedelta(days=30)

    with pytest.raises(QuotaError) as exc:
        reviews.submit(app_.id, freelancer, EMPLOYEE_RATINGS, TEXT, now=t0 + timedelta(days=31))
    assert exc.value.code == "REVIEW_WINDOW_CLOSED"

    with pytest.raises(QuotaError) as exc:
        reviews.update_review(r.id, client_user, text=TEXT + " Edited.", now=t0 + timedelta(days=31))
    assert r.review_text == TEXT


def test_one_review_per_reviewer(completed_job, client_user):
    _, app_, t0 = completed_job
    reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT, now=t0)
    with pytest.raises(QuotaError) as exc:
        reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT, now=t0)
    assert exc.value.code == "REVIEW_EXISTS"
    assert reviews.can_review(app_.id, client_user, now=t0)["reason"] == "already_reviewed"


def test_both_sides_review_each_other(completed_job, client_user, freelancer):
    a, app_, t0 = completed_job
    reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT, now=t0)
    mine = reviews.submit(app_.id, freelancer, EMPLOYEE_RATINGS, TEXT, overall_rating=3, now=t0)
    assert mine.reviewer_type == "employee"
    assert mine.overall_rating == Decimal("3.0")
    assert len(reviews.get_for_assignment(client_user, a.id)) == 2


def test_review_text_length(completed_job, client_user):
    _, app_, t0 = completed_job
    with pytest.raises(ValidationError) as exc:
        reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, "Great!", now=t0)
    assert exc.value.details["fields"] == {"review_text": "too_short"}
    with pytest.raises(ValidationError):
        reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT * 5, now=t0)


def test_sub_ratings_follow_reviewer_type(completed_job, client_user):
    _, app_, t0 = completed_job
    with pytest.raises(ValidationError):
        reviews.submit(app_.id, client_user, EMPLOYEE_RATINGS, TEXT, now=t0)
    with pytest.raises(ValidationError):
        reviews.submit(app_.id, client_user, {"communication": 6}, TEXT, now=t0)


def test_reviews_open_after_completion(funded, client_user):
    _, app_, _ = funded(kind="job", gross="1000")
    assert reviews.can_review(app_.id, client_user)["reason"] == "not_completed"
    with pytest.raises(InvalidTransition):
        reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT)


def test_outsiders_cannot_review(completed_job, make_user):
    _, app_, t0 = completed_job
    with pytest.raises(AuthorizationError):
        reviews.submit(app_.id, make_user("client"), EMPLOYER_RATINGS, TEXT, now=t0)


def test_aggregates_skip_removed_reviews(completed_job, client_user, freelancer, admin, make_user):
    _, app_, t0 = completed_job
    r = reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT, now=t0)
    summary = reviews.get_for_user(freelancer.id)
    assert summary["count"] == 1
    assert summary["average_rating"] == 4.5
    assert summary["sub_ratings"]["communication"] == 4.0

    reviews.flag(make_user("freelancer"), r.id, "Looks fake")
    assert r.is_flagged is True
    reviews.moderate(admin, r.id, "removed", "Confirmed fake")
    assert reviews.get_for_user(freelancer.id)["count"] == 0


def test_helpful_votes(completed_job, client_user, freelancer, make_user):
    _, app_, t0 = completed_job
    r = reviews.submit(app_.id, client_user, EMPLOYER_RATINGS, TEXT, now=t0)
    with pytest.raises(ValidationError):
        reviews.mark_helpful(client_user, r.id)
    reviews.mark_helpful(freelancer, r.id)
    reviews.mark_helpful(freelancer, r.id)
    assert r.helpful_count == 1

    reviews.mark_helpful(make_user("freelancer"), r.id)
    assert r.helpful_count == 2
    votes = db.session.execute(
        select(ReviewHelpfulVote.voter_id).where(ReviewHelpfulVote.review_id == r.id)
    ).scalars().all()
    assert votes.count(freelancer.id) == 1
    assert len(votes) == 2


def test_gig_reviewer_types(funded, client_user, freelancer):
    from trustwork.services import milestones

    a, app_, _ = funded(kind="gig", gross="1000")
    m = milestones.create_batch(client_user, a.id, [{"title": "All of it", "amount": "1000"}])[0]
    milestones.start(freelancer, m.id)
    milestones.submit(freelancer, m.id, links=["https://example.test/site"])
    milestones.approve(client_user, m.id)
    lifecycle.approve_completion(client_user, a.id)

    assert reviews.can_review(app_.id, client_user)["reviewer_type"] == "client"
    assert reviews.can_review(app_.id, freelancer)["reviewer_type"] == "freelancer"
