"""
Release clock scheduler.

A tick walks the release hierarchy top down: modules, topics, then
mini-questions, followed by a silent correction pass that hides
mini-questions whose release date was pushed back into the future. Every flag
flip is a conditional update committed on its own, so a row that is already
released never matches the release filter again and is never announced twice.
"""
import logging
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from cohortflow.core.timeutil import utcnow
from cohortflow.models.orm import Cohort, CohortMembership, ContentSection, Learner, MembershipStatus, MiniQuestion, Module, Topic
from cohortflow.services.cascade import is_effectively_visible, is_open
from cohortflow.services.notifications import Notifier, notify_safely

logger = logging.getLogger(__name__)

MINI_RELEASED_TEMPLATE = "mini_question_released"

class TickGuard:
    """Owned "tick is running" flag; ``acquire`` must not block."""

    def acquire(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

class LocalTickGuard(TickGuard):
    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()

@dataclass
class TickResult:
    released_modules: int = 0
    released_topics: int = 0
    released_mini_questions: int = 0
    hidden_mini_questions: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    skipped: bool = False

    @property
    def changed(self) -> int:
        return self.released_modules + self.released_topics + self.released_mini_questions + self.hidden_mini_questions

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

def _flip(db: Session, model, entity_id: int, released: bool, released_at: Optional[datetime]) -> bool:
    """Flip one release flag if it still has the opposite value; True when this call changed it."""
    res = db.execute(
        update(model)
        .where(model.id == entity_id, model.is_released.is_(not released))
        .values(is_released=released, released_at=released_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1

class ReleaseScheduler:
    def __init__(self, notifier: Notifier, guard: Optional[TickGuard] = None):
        self.notifier = notifier
        self.guard = guard or LocalTickGuard()

    def tick(self, db: Session, now: Optional[datetime] = None) -> TickResult:
        if not self.guard.acquire():
            logger.warning("Release tick skipped: previous tick still running")
            return TickResult(skipped=True)
        now = now or utcnow()
        result = TickResult()
        try:
            result.released_modules = self.release_modules(db, now)
            result.released_topics = self.release_topics(db, now)
            self.release_mini_questions(db, now, result)
            result.hidden_mini_questions = self.hide_rescheduled_mini_questions(db, now)
        finally:
            self.guard.release()
        if result.changed:
            logger.info("Release tick at %s: %s", now.isoformat(), result.as_dict())
        return result

    def release_modules(self, db: Session, now: datetime) -> int:
        due = db.scalars(
            select(Module).join(Cohort, Module.cohort_id == Cohort.id)
            .where(Module.is_active.is_(True), Module.is_released.is_(False),
                   Module.scheduled_release_at.is_not(None), Module.scheduled_release_at <= now,
                   Cohort.is_active.is_(True))
            .order_by(Module.scheduled_release_at, Module.id)
        ).all()
        count = 0
        for m in due:
            if _flip(db, Module, m.id, True, now):
                count += 1
                logger.info("Released module %s (cohort %s, module %s)", m.id, m.cohort_id, m.module_number)
        return count

    def release_topics(self, db: Session, now: datetime) -> int:
        due = db.scalars(
            select(Topic).where(Topic.is_active.is_(True), Topic.is_released.is_(False),
                                Topic.scheduled_release_at.is_not(None), Topic.scheduled_release_at <= now)
            .order_by(Topic.scheduled_release_at, Topic.id)
        ).all()
        count = 0
        for t in due:
            if not is_open(t.cohort) or (t.module is not None and not is_open(t.module)):
                continue
            if _flip(db, Topic, t.id, True, now):
                count += 1
                logger.info("Released topic %s (cohort %s, topic %s)", t.id, t.cohort_id, t.topic_number)
        return count

    def release_mini_questions(self, db: Session, now: datetime, result: TickResult) -> None:
        due = db.scalars(
            select(MiniQuestion).where(MiniQuestion.is_active.is_(True), MiniQuestion.is_released.is_(False),
                                       MiniQuestion.scheduled_release_at.is_not(None), MiniQuestion.scheduled_release_at <= now)
            .order_by(MiniQuestion.scheduled_release_at, MiniQuestion.id)
        ).all()
        for mq in due:
            section = mq.section
            # parent gate: section, topic and module chain must be visible
            if not is_effectively_visible(section):
                continue
            if not _flip(db, MiniQuestion, mq.id, True, now):
                continue
            result.released_mini_questions += 1
            topic = section.topic
            logger.info("Released mini-question %s under topic %s (cohort %s)", mq.id, topic.id, topic.cohort_id)
            context = {
                "mini_question_title": mq.title,
                "section_title": section.title,
                "topic_title": topic.title,
                "topic_number": topic.topic_number,
                "cohort_id": topic.cohort_id,
            }
            for email in self.recipients(db, topic.cohort_id):
                if notify_safely(self.notifier, email, MINI_RELEASED_TEMPLATE, context):
                    result.notifications_sent += 1
                else:
                    result.notifications_failed += 1

    def hide_rescheduled_mini_questions(self, db: Session, now: datetime) -> int:
        rows = db.scalars(
            select(MiniQuestion.id).where(MiniQuestion.is_released.is_(True),
                                          MiniQuestion.scheduled_release_at.is_not(None),
                                          MiniQuestion.scheduled_release_at > now)
        ).all()
        count = 0
        for mq_id in rows:
            if _flip(db, MiniQuestion, mq_id, False, None):
                count += 1
                logger.info("Hid mini-question %s: release date moved to the future", mq_id)
        return count

    @staticmethod
    def recipients(db: Session, cohort_id: int) -> List[str]:
        return list(db.scalars(
            select(Learner.email).join(CohortMembership, CohortMembership.learner_id == Learner.id)
            .where(CohortMembership.cohort_id == cohort_id,
                   CohortMembership.status == MembershipStatus.ENROLLED.value)
            .order_by(Learner.email)
        ).all())

def _pending(entity, number_attr: str) -> Optional[Dict[str, Any]]:
    if entity is None:
        return None
    return {
        "id": entity.id,
        "number": getattr(entity, number_attr),
        "title": entity.title,
        "scheduled_release_at": entity.scheduled_release_at,
    }

def next_release_info(db: Session, cohort_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Earliest scheduled but unreleased module, topic and mini-question of one cohort."""
    now = now or utcnow()
    nxt_module = db.scalars(
        select(Module).where(Module.cohort_id == cohort_id, Module.is_active.is_(True), Module.is_released.is_(False),
                             Module.scheduled_release_at.is_not(None))
        .order_by(Module.scheduled_release_at, Module.module_number).limit(1)
    ).first()
    nxt_topic = db.scalars(
        select(Topic).where(Topic.cohort_id == cohort_id, Topic.is_active.is_(True), Topic.is_released.is_(False),
                            Topic.scheduled_release_at.is_not(None))
        .order_by(Topic.scheduled_release_at, Topic.topic_number).limit(1)
    ).first()
    nxt_mini = db.scalars(
        select(MiniQuestion).join(ContentSection, MiniQuestion.section_id == ContentSection.id)
        .join(Topic, ContentSection.topic_id == Topic.id)
        .where(Topic.cohort_id == cohort_id, MiniQuestion.is_active.is_(True), MiniQuestion.is_released.is_(False),
               MiniQuestion.scheduled_release_at.is_not(None))
        .order_by(MiniQuestion.scheduled_release_at, MiniQuestion.id).limit(1)
    ).first()
    mini = _pending(nxt_mini, "order_index")
    if mini is not None:
        mini["topic_number"] = nxt_mini.section.topic.topic_number
    return {
        "now": now,
        "next_module": _pending(nxt_module, "module_number"),
        "next_topic": _pending(nxt_topic, "topic_number"),
        "next_mini_question": mini,
    }
