from datetime import timedelta

import pytest

from trustwork.errors import (
    AttemptInProgress, CooldownActive, InvalidTransition, ValidationError,
)
from trustwork.services import applications, skill_tests
from trustwork.utils import utcnow

COVER = {"cover_letter": "Tested and ready."}


@pytest.fixture
def template(admin):
    t = skill_tests.create_template(admin, "Python fundamentals", "engineering")
    for i in range(10):
        skill_tests.add_question(admin, t.id, {
            "difficulty": "mid",
            "prompt": f"Question {i}",
            "options": ["right", "wrong", "also wrong", "nope"],
            "correct_option": "A",
            "explanation": "A is right",
        })
    return t


def _answers(attempt, correct):
    return {q["id"]: ("A" if i < correct else "B") for i, q in enumerate(attempt.questions_data)}


def test_score_rounds_half_up():
    qs = [{"id": str(i), "correct_option": "A"} for i in range(8)]
    assert skill_tests.score_answers(qs, {"0": "A"}) == (1, 8, 13)
    assert skill_tests.score_answers(qs[:3], {"0": "A", "1": "A"}) == (2, 3, 67)
    assert skill_tests.score_answers([], {}) == (0, 0, 0)


def test_template_counts_active_questions(template):
    assert template.total_questions == 10
    assert [t.id for t in skill_tests.list_templates("engineering")] == [template.id]


def test_start_takes_a_snapshot(template, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    assert attempt.status == "in_progress"
    assert attempt.total_questions == 10
    assert attempt.time_limit_seconds == 40 * 60
    assert all("correct_option" not in q for q in skill_tests.public_questions(attempt))


def test_second_start_is_refused_while_running(template, freelancer):
    skill_tests.start(freelancer, template.id, "mid")
    with pytest.raises(AttemptInProgress):
        skill_tests.start(freelancer, template.id, "mid")


def test_tab_switch_fails_regardless_of_score(template, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    attempt = skill_tests.submit(freelancer, attempt.id, _answers(attempt, 10), 300, tab_switches=1)
    assert attempt.score == 100
    assert attempt.status == "failed_cheat"
    assert attempt.passed is False


def test_resubmitting_is_a_no_op(template, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    first = skill_tests.submit(freelancer, attempt.id, _answers(attempt, 7), 600).summary()
    again = skill_tests.submit(freelancer, attempt.id, _answers(attempt, 10), 100).summary()
    assert again == first
    assert first["score"] == 70 and first["passed"] is True


def test_question_edits_do_not_touch_running_attempts(template, admin, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    qid = attempt.questions_data[0]["id"]
    skill_tests.update_question(admin, qid, {"correct_option": "B", "prompt": "Rewritten"})

    attempt = skill_tests.submit(freelancer, attempt.id, _answers(attempt, 10))
    assert attempt.score == 100
    review = skill_tests.review(freelancer, attempt.id)
    first = next(q for q in review["questions"] if q["id"] == qid)
    assert first["prompt"] != "Rewritten"
    assert first["correct_option"] == "A"
    assert first["is_correct"] is True


def test_review_waits_for_the_attempt_to_finish(template, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    with pytest.raises(InvalidTransition):
        skill_tests.review(freelancer, attempt.id)


def test_expired_attempt_finalizes_with_saved_answers(template, freelancer):
    t0 = utcnow()
    attempt = skill_tests.start(freelancer, template.id, "mid", now=t0)
    for q in attempt.questions_data[:7]:
        skill_tests.record_answer(freelancer, attempt.id, q["id"], "a", now=t0 + timedelta(minutes=1))

    # inside the grace period the attempt is still open
    view = skill_tests.get_attempt(freelancer, attempt.id, now=t0 + timedelta(minutes=40, seconds=30))
    assert view["status"] == "in_progress"

    view = skill_tests.get_attempt(freelancer, attempt.id, now=t0 + timedelta(minutes=42))
    assert view["status"] == "completed"
    assert view["score"] == 70
    assert view["passed"] is True
    assert view["time_taken_seconds"] == 40 * 60


def test_sweep_finalizes_stale_attempts(template, freelancer):
    t0 = utcnow() - timedelta(hours=2)
    skill_tests.start(freelancer, template.id, "mid", now=t0)
    assert skill_tests.sweep_expired() == 1
    assert skill_tests.sweep_expired() == 0


def test_record_answer_validates_option(template, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    with pytest.raises(ValidationError):
        skill_tests.record_answer(freelancer, attempt.id, attempt.questions_data[0]["id"], "E")
    with pytest.raises(ValidationError):
        skill_tests.record_answer(freelancer, attempt.id, "not-a-question", "A")


def test_cooldown_boundary(template, freelancer):
    t0 = utcnow()
    attempt = skill_tests.start(freelancer, template.id, "mid", now=t0)
    done = t0 + timedelta(minutes=10)
    skill_tests.submit(freelancer, attempt.id, _answers(attempt, 3), now=done)

    with pytest.raises(CooldownActive) as exc:
        skill_tests.start(freelancer, template.id, "mid", now=done + timedelta(days=7, seconds=-1))
    assert exc.value.kind == "QUOTA"
    assert exc.value.details["next_eligible_at"] == (done + timedelta(days=7)).isoformat()

    eligibility = skill_tests.can_attempt(freelancer, template_id=template.id, now=done + timedelta(days=7))
    assert eligibility["eligible"] is True
    retry = skill_tests.start(freelancer, template.id, "mid", now=done + timedelta(days=7))
    assert retry.status == "in_progress"


def test_assignment_gate_with_cooldown(template, posting, freelancer):
    a = posting("job", "800", skill_test={"template_id": template.id, "difficulty": "mid", "passing_score": 70})
    t0 = utcnow()

    with pytest.raises(ValidationError) as exc:
        applications.submit(freelancer, a.id, COVER, now=t0)
    assert exc.value.details["fields"] == {"skill_test": "skill_test_required"}

    attempt = skill_tests.start(freelancer, assignment_id=a.id, now=t0)
    failed = skill_tests.submit(freelancer, attempt.id, _answers(attempt, 6), 900, now=t0 + timedelta(minutes=15))
    assert (failed.score, failed.passed, failed.status) == (60, False, "completed")

    finished = t0 + timedelta(minutes=15)
    with pytest.raises(CooldownActive):
        applications.submit(freelancer, a.id, COVER, now=finished + timedelta(days=3))

    later = finished + timedelta(days=7)
    retry = skill_tests.start(freelancer, assignment_id=a.id, now=later)
    passed = skill_tests.submit(freelancer, retry.id, _answers(retry, 8), 800, now=later + timedelta(minutes=14))
    assert (passed.score, passed.passed) == (80, True)

    app_ = applications.submit(freelancer, a.id, COVER, now=later + timedelta(minutes=20))
    assert app_.skill_test_attempt_id == passed.id


def test_owner_sees_attempts_for_their_posting(template, posting, client_user, freelancer):
    a = posting("job", "800", skill_test={"template_id": template.id, "difficulty": "mid"})
    attempt = skill_tests.start(freelancer, assignment_id=a.id)
    rows = skill_tests.list_for_assignment(client_user, a.id)
    assert [r["id"] for r in rows] == [attempt.id]
    assert rows[0]["passing_score"] == 70


def test_junk_timing_is_a_validation_error(http, auth, template, freelancer):
    attempt = skill_tests.start(freelancer, template.id, "mid")
    resp = http.post(f"/api/v1/skill-tests/attempts/{attempt.id}/submit",
                     json={"answers": _answers(attempt, 10), "time_taken_seconds": "abc"},
                     headers=auth(freelancer))
    assert resp.status_code == 422
    assert resp.get_json()["error"]["details"]["fields"] == {"time_taken_seconds": "invalid"}

    with pytest.raises(ValidationError):
        skill_tests.submit(freelancer, attempt.id, {}, 300, tab_switches="often")
    assert skill_tests.get_attempt(freelancer, attempt.id)["status"] == "in_progress"


def test_attempts_have_no_abandon_command():
    # only submit and the expiry sweep finish an attempt
    assert not hasattr(skill_tests, "abandon")
