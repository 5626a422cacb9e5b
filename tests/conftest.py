import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta
from typing import Any, Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cohortflow.core.auth import issue_token
from cohortflow.core.database import get_db, init_db
from cohortflow.core.errors import NotificationDeliveryFailure
from cohortflow.models.orm import (Cohort, CohortMembership, ContentSection, Learner, MembershipStatus, MiniQuestion,
                                   Module, Topic)
from cohortflow.services.notifications import Notifier, get_notifier
from cohortflow.services.release import LocalTickGuard

NOW = datetime(2025, 3, 1, 9, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self, fail_for=()):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail_for = set(fail_for)
        self.closed = False

    def send(self, recipient, template_key, context):
        if recipient in self.fail_for:
            raise NotificationDeliveryFailure(f"cannot reach {recipient}", recipient=recipient)
        self.sent.append((recipient, template_key, context))

    def templates(self):
        return [t for _, t, _ in self.sent]

    def close(self):
        self.closed = True


class Builder:
    """Creates committed rows with learner-visible defaults."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def cohort(self, name="Cohort", number=None, is_active=True):
        self._seq += 1
        return self._save(Cohort(cohort_number=number or self._seq, name=name, is_active=is_active))

    def module(self, cohort, number=1, released=True, scheduled=None, title=None):
        return self._save(Module(cohort_id=cohort.id, module_number=number, title=title or f"Module {number}",
                                 is_active=True, is_released=released, scheduled_release_at=scheduled,
                                 released_at=NOW if released else None))

    def topic(self, cohort, number=1, module=None, released=True, scheduled=None, title=None):
        return self._save(Topic(cohort_id=cohort.id, module_id=module.id if module else None, topic_number=number,
                                title=title or f"Topic {number}", is_active=True, is_released=released,
                                scheduled_release_at=scheduled, released_at=NOW if released else None))

    def section(self, topic, title="Reading", order=0):
        return self._save(ContentSection(topic_id=topic.id, title=title, material="...", order_index=order))

    def mini(self, section, title="Mini", released=True, scheduled=None, order=0):
        return self._save(MiniQuestion(section_id=section.id, title=title, prompt=f"{title}?", order_index=order,
                                       is_active=True, is_released=released, scheduled_release_at=scheduled,
                                       released_at=NOW if released else None))

    def learner(self, learner_id, is_admin=False):
        return self._save(Learner(id=learner_id, email=f"{learner_id}@example.com", full_name=learner_id.title(),
                                  is_admin=is_admin))

    def enroll(self, learner, cohort, status=MembershipStatus.ENROLLED, joined_at=None, step=0):
        m = self._save(CohortMembership(learner_id=learner.id, cohort_id=cohort.id, status=status.value,
                                        current_step=step, joined_at=joined_at or NOW))
        if status == MembershipStatus.ENROLLED:
            learner.current_cohort_id = cohort.id
            self.db.commit()
        return m


@pytest.fixture()
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def make(db):
    return Builder(db)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def course(make):
    """One released topic with two released mini-questions and an enrolled learner."""
    cohort = make.cohort("Spring")
    topic = make.topic(cohort, 1)
    section = make.section(topic)
    minis = [make.mini(section, "First", order=0), make.mini(section, "Second", order=1)]
    learner = make.learner("ada")
    membership = make.enroll(learner, cohort)
    return {"cohort": cohort, "topic": topic, "section": section, "minis": minis, "learner": learner,
            "membership": membership}


@pytest.fixture()
def client(db, notifier):
    from cohortflow.main import app
    from cohortflow.api.admin import get_tick_guard

    def override_db():
        yield db

    guard = LocalTickGuard()
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_tick_guard] = lambda: guard
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user_id: str, *roles: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id, is_admin='admin' in roles)}"}


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
