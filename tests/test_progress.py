from cohortflow.models.orm import Answer, AnswerStatus
from cohortflow.services.cascade import cascade_unrelease
from cohortflow.services.progress import compute_progress, summarize
from cohortflow.services.resubmission import grade_answer, submit_answer, submit_mini_answer
from conftest import NOW


def _only(progress):
    assert len(progress) == 1
    return progress[0]


def test_unanswered_minis_gate_the_topic(course, db):
    tp = _only(compute_progress(db, "ada", course["cohort"].id))
    assert tp.status == "mini_questions_required"
    assert (tp.mini_completed, tp.mini_total) == (0, 2)
    assert not tp.can_attempt_main
    assert [m.status for m in tp.mini_questions] == ["available", "available"]


def test_last_mini_answer_unlocks_topic(course, db):
    first, second = course["minis"]
    submit_mini_answer(db, "ada", first.id, "https://notes.example/1")
    tp = _only(compute_progress(db, "ada", course["cohort"].id))
    assert tp.status == "mini_questions_required"
    assert tp.mini_percentage == 50

    submit_mini_answer(db, "ada", second.id, "https://notes.example/2")
    tp = _only(compute_progress(db, "ada", course["cohort"].id))
    assert tp.status == "available"
    assert tp.can_attempt_main
    assert [m.status for m in tp.mini_questions] == ["completed", "completed"]


def test_topic_without_minis_is_available(make, db):
    cohort = make.cohort()
    make.topic(cohort, 1)
    make.enroll(make.learner("ada"), cohort)
    tp = _only(compute_progress(db, "ada", cohort.id))
    assert tp.status == "available"
    assert tp.mini_total == 0 and tp.mini_percentage == 100


def test_unreleased_minis_are_not_prerequisites(course, make, db):
    make.mini(course["section"], "Later", released=False, order=2)
    for mq in course["minis"]:
        submit_mini_answer(db, "ada", mq.id, "https://notes.example")
    tp = _only(compute_progress(db, "ada", course["cohort"].id))
    assert tp.status == "available"
    assert tp.mini_total == 2


def test_submitted_then_completed(make, db, notifier):
    cohort = make.cohort()
    topic = make.topic(cohort, 1)
    make.enroll(make.learner("ada"), cohort)
    answer = submit_answer(db, "ada", topic.id, "my answer")

    assert _only(compute_progress(db, "ada", cohort.id)).status == "submitted"

    grade_answer(db, cohort.id, answer.id, "admin", "APPROVED", "well done", notifier=notifier)
    tp = _only(compute_progress(db, "ada", cohort.id))
    assert tp.status == "completed"
    assert tp.answer["feedback"] == "well done"


def test_topics_beyond_next_step_are_locked(make, db, notifier):
    cohort = make.cohort()
    make.topic(cohort, 1)
    make.topic(cohort, 2)
    make.enroll(make.learner("ada"), cohort)

    progress = compute_progress(db, "ada", cohort.id)
    assert [p.status for p in progress] == ["available", "locked"]

    answer = submit_answer(db, "ada", progress[0].topic_id, "first")
    grade_answer(db, cohort.id, answer.id, "admin", "APPROVED", None, notifier=notifier)

    assert [p.status for p in compute_progress(db, "ada", cohort.id)] == ["completed", "available"]


def test_hidden_topics_are_omitted(make, db):
    cohort = make.cohort()
    module = make.module(cohort)
    make.topic(cohort, 1, module=module)
    make.topic(cohort, 2, released=False)
    make.enroll(make.learner("ada"), cohort)
    assert len(compute_progress(db, "ada", cohort.id)) == 1

    cascade_unrelease(db, module)

    assert compute_progress(db, "ada", cohort.id) == []


def test_needs_resubmission_without_request_stays_submitted(make, db, notifier):
    cohort = make.cohort()
    topic = make.topic(cohort, 1)
    make.enroll(make.learner("ada"), cohort)
    answer = submit_answer(db, "ada", topic.id, "draft")
    grade_answer(db, cohort.id, answer.id, "admin", "NEEDS_RESUBMISSION", "try again", notifier=notifier)

    tp = _only(compute_progress(db, "ada", cohort.id))
    assert tp.status == "submitted"
    assert not tp.can_resubmit


def test_requested_and_approved_resubmission_is_available(make, db):
    cohort = make.cohort()
    topic = make.topic(cohort, 1)
    make.enroll(make.learner("ada"), cohort)
    db.add(Answer(learner_id="ada", topic_id=topic.id, cohort_id=cohort.id, content="x", submitted_at=NOW,
                  status=AnswerStatus.NEEDS_RESUBMISSION.value, resubmission_requested=True,
                  resubmission_approved=True))
    db.commit()

    tp = _only(compute_progress(db, "ada", cohort.id))
    assert tp.status == "available"
    assert tp.can_resubmit


def test_not_enrolled_returns_empty(course, make, db):
    make.learner("nobody")
    assert compute_progress(db, "nobody", course["cohort"].id) == []


def test_summarize_counts_completed(make, db, notifier):
    cohort = make.cohort()
    topic = make.topic(cohort, 1)
    make.topic(cohort, 2)
    make.enroll(make.learner("ada"), cohort)
    answer = submit_answer(db, "ada", topic.id, "first")
    grade_answer(db, cohort.id, answer.id, "admin", "APPROVED", None, notifier=notifier)

    summary = summarize(compute_progress(db, "ada", cohort.id))
    assert summary["total"] == 2
    assert summary["completed"] == 1
    assert summary["percentage"] == 50
    assert summary["by_status"] == {"completed": 1, "available": 1}
