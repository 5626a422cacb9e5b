import pytest

from cohortflow.jobs import release_job, repair_enrollments
from cohortflow.services.release import LocalTickGuard, ReleaseScheduler
from conftest import NOW, hours


class FakeQueue:
    def __init__(self):
        self.scheduled = []

    def enqueue_in(self, delay, func, *args, **kwargs):
        self.scheduled.append((delay, func))

        class _Job:
            def get_id(self):
                return "next-tick"
        return _Job()


@pytest.fixture()
def job_env(monkeypatch, session_factory, notifier):
    q = FakeQueue()
    monkeypatch.setattr(release_job, "SessionLocal", session_factory)
    monkeypatch.setattr(release_job, "RedisTickGuard", LocalTickGuard)
    monkeypatch.setattr(release_job, "build_notifier", lambda: notifier)
    monkeypatch.setattr(release_job, "queue", q)
    return q


def test_release_job_runs_tick_and_reschedules(job_env, make, notifier):
    cohort = make.cohort()
    topic = make.topic(cohort)
    make.mini(make.section(topic), released=False, scheduled=NOW - hours(1))
    make.enroll(make.learner("ada"), cohort)

    result = release_job.release_tick_job()

    assert result["released_mini_questions"] == 1
    assert notifier.templates() == ["mini_question_released"]
    assert len(job_env.scheduled) == 1
    delay, func = job_env.scheduled[0]
    assert func is release_job.release_tick_job
    assert delay == hours(0.5)
    assert notifier.closed


def test_failed_tick_still_schedules_next(job_env, monkeypatch):
    def boom(self, db, now=None):
        raise RuntimeError("database unavailable")
    monkeypatch.setattr(ReleaseScheduler, "tick", boom)

    with pytest.raises(RuntimeError):
        release_job.release_tick_job()

    assert len(job_env.scheduled) == 1


def test_one_off_tick_does_not_reschedule(job_env):
    release_job.release_tick_job(reschedule=False)
    assert job_env.scheduled == []


def test_repair_cli_dry_run(monkeypatch, session_factory, make, capsys):
    c1, c2 = make.cohort("A"), make.cohort("B")
    ada = make.learner("ada")
    make.enroll(ada, c1, joined_at=NOW - hours(24))
    make.enroll(ada, c2, joined_at=NOW)
    monkeypatch.setattr(repair_enrollments, "SessionLocal", session_factory)

    assert repair_enrollments.main(["--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "would keep" in out and "ada" in out
