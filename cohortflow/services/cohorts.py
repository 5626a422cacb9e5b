"""
Cohort administration and content authoring.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from cohortflow.core.errors import CrossCohortViolation, InvalidTransition, NotFound
from cohortflow.core.timeutil import utcnow, as_naive_utc
from cohortflow.models.orm import (Answer, AnswerStatus, Cohort, CohortMembership, ContentSection, Learner,
                                   MembershipStatus, MiniAnswer, MiniQuestion, Module, Topic)
from cohortflow.services.cascade import is_effectively_visible
from cohortflow.services.isolation import admin_context, enrolled_memberships, get_scoped
from cohortflow.services.notifications import Notifier, notify_safely

logger = logging.getLogger(__name__)

def _commit_unique(db: Session, what: str) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise InvalidTransition(f"{what} already exists") from e

def create_cohort(db: Session, cohort_number: int, name: str, description: Optional[str] = None,
                  start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                  is_active: bool = True) -> Cohort:
    c = Cohort(cohort_number=cohort_number, name=name, description=description, is_active=is_active,
               start_date=as_naive_utc(start_date), end_date=as_naive_utc(end_date))
    db.add(c)
    _commit_unique(db, f"Cohort {name!r} number {cohort_number}")
    logger.info("Created cohort %s (%s #%s)", c.id, name, cohort_number)
    return c

def _get_cohort(db: Session, cohort_id: int) -> Cohort:
    c = db.get(Cohort, cohort_id)
    if c is None:
        raise NotFound(f"Cohort {cohort_id} not found")
    return c

def assign_learner(db: Session, learner_id: str, cohort_id: int, changed_by: str,
                   notifier: Optional[Notifier] = None) -> CohortMembership:
    learner = db.get(Learner, learner_id)
    if learner is None:
        raise NotFound(f"Learner {learner_id} not found")
    cohort = _get_cohort(db, cohort_id)
    if not cohort.is_active:
        raise InvalidTransition(f"Cohort {cohort_id} is not active")
    current = enrolled_memberships(db, learner_id)
    others = [m for m in current if m.cohort_id != cohort_id]
    if others:
        raise InvalidTransition(f"Learner {learner_id} is already enrolled in cohort {others[0].cohort_id}")
    if current:
        raise InvalidTransition(f"Learner {learner_id} is already a member of cohort {cohort_id}")

    now = utcnow()
    m = db.scalars(select(CohortMembership).where(
        CohortMembership.learner_id == learner_id, CohortMembership.cohort_id == cohort_id,
    )).first()
    if m is None:
        m = CohortMembership(learner_id=learner_id, cohort_id=cohort_id, current_step=0)
        db.add(m)
    m.status = MembershipStatus.ENROLLED.value
    m.joined_at = now
    m.status_changed_at = now
    m.status_changed_by = changed_by
    learner.current_cohort_id = cohort_id
    db.commit()
    logger.info("Learner %s enrolled in cohort %s by %s", learner_id, cohort_id, changed_by)
    notify_safely(notifier, learner.email, "user_assigned_to_cohort", {
        "full_name": learner.full_name,
        "cohort_name": cohort.name,
        "cohort_number": cohort.cohort_number,
        "cohort_id": cohort.id,
    })
    return m

def change_membership_status(db: Session, learner_id: str, cohort_id: int, status: str, changed_by: str) -> CohortMembership:
    status = MembershipStatus(status).value
    m = db.scalars(select(CohortMembership).where(
        CohortMembership.learner_id == learner_id, CohortMembership.cohort_id == cohort_id,
    )).first()
    if m is None:
        raise NotFound(f"Learner {learner_id} is not a member of cohort {cohort_id}")
    learner = m.learner
    if status == MembershipStatus.ENROLLED.value:
        others = [o for o in enrolled_memberships(db, learner_id) if o.id != m.id]
        if others:
            raise InvalidTransition(f"Learner {learner_id} is already enrolled in cohort {others[0].cohort_id}")
        learner.current_cohort_id = cohort_id
    elif learner.current_cohort_id == cohort_id:
        learner.current_cohort_id = None
    m.status = status
    m.status_changed_at = utcnow()
    m.status_changed_by = changed_by
    db.commit()
    logger.info("Membership of %s in cohort %s set to %s by %s", learner_id, cohort_id, status, changed_by)
    return m

def _copy_release_state(src, dst) -> None:
    dst.is_active = src.is_active
    dst.is_released = src.is_released
    dst.scheduled_release_at = src.scheduled_release_at
    dst.released_at = src.released_at

def _copy_topic(src: Topic, cohort: Cohort, module: Optional[Module]) -> Topic:
    t = Topic(cohort=cohort, module=module, topic_number=src.topic_number, title=src.title, content=src.content,
              description=src.description, deadline=src.deadline, points=src.points, bonus_points=src.bonus_points)
    _copy_release_state(src, t)
    for s in src.sections:
        section = ContentSection(title=s.title, material=s.material, order_index=s.order_index, is_active=s.is_active)
        for mq in s.mini_questions:
            new_mq = MiniQuestion(title=mq.title, prompt=mq.prompt, description=mq.description,
                                  resource_url=mq.resource_url, order_index=mq.order_index)
            _copy_release_state(mq, new_mq)
            section.mini_questions.append(new_mq)
        t.sections.append(section)
    return t

def copy_cohort(db: Session, source_cohort_id: int, name: str, cohort_number: int) -> Cohort:
    """Copy the content tree of a cohort into a new, inactive cohort.

    Answers and memberships stay with the source cohort.
    """
    src = _get_cohort(db, source_cohort_id)
    try:
        dst = Cohort(cohort_number=cohort_number, name=name, description=src.description,
                     start_date=src.start_date, end_date=src.end_date, is_active=False)
        db.add(dst)
        modules = {}
        for m in src.modules:
            nm = Module(cohort=dst, module_number=m.module_number, title=m.title, description=m.description)
            _copy_release_state(m, nm)
            modules[m.id] = nm
        for t in src.topics:
            db.add(_copy_topic(t, dst, modules.get(t.module_id)))
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise InvalidTransition(f"Cohort {name!r} number {cohort_number} already exists") from e
    except Exception:
        db.rollback()
        raise
    logger.info("Copied cohort %s into new cohort %s (%d modules, %d topics)", source_cohort_id, dst.id,
                len(modules), len(src.topics))
    return dst

def create_module(db: Session, cohort_id: int, module_number: int, title: str, description: str = "",
                  scheduled_release_at: Optional[datetime] = None, is_active: bool = True) -> Module:
    _get_cohort(db, cohort_id)
    m = Module(cohort_id=cohort_id, module_number=module_number, title=title, description=description,
               scheduled_release_at=as_naive_utc(scheduled_release_at), is_active=is_active, is_released=False)
    db.add(m)
    _commit_unique(db, f"Module {module_number} in cohort {cohort_id}")
    return m

def create_topic(db: Session, cohort_id: int, topic_number: int, title: str, module_id: Optional[int] = None,
                 content: str = "", description: str = "", deadline: Optional[datetime] = None,
                 points: int = 100, bonus_points: int = 50, scheduled_release_at: Optional[datetime] = None,
                 is_active: bool = True) -> Topic:
    _get_cohort(db, cohort_id)
    if module_id is not None:
        module = db.get(Module, module_id)
        if module is None:
            raise NotFound(f"Module {module_id} not found")
        if module.cohort_id != cohort_id:
            raise CrossCohortViolation(f"Module {module_id} belongs to cohort {module.cohort_id}, not {cohort_id}")
    t = Topic(cohort_id=cohort_id, module_id=module_id, topic_number=topic_number, title=title, content=content,
              description=description, deadline=as_naive_utc(deadline), points=points, bonus_points=bonus_points,
              scheduled_release_at=as_naive_utc(scheduled_release_at), is_active=is_active, is_released=False)
    db.add(t)
    _commit_unique(db, f"Topic {topic_number} in cohort {cohort_id}")
    return t

def create_section(db: Session, cohort_id: int, topic_id: int, title: str, material: str = "",
                   order_index: int = 0) -> ContentSection:
    topic = get_scoped(db, admin_context(db, cohort_id), Topic, topic_id)
    s = ContentSection(topic_id=topic.id, title=title, material=material, order_index=order_index)
    db.add(s)
    db.commit()
    return s

def create_mini_question(db: Session, cohort_id: int, section_id: int, title: str, prompt: str,
                         description: Optional[str] = None, resource_url: Optional[str] = None,
                         order_index: int = 0, scheduled_release_at: Optional[datetime] = None) -> MiniQuestion:
    section = get_scoped(db, admin_context(db, cohort_id), ContentSection, section_id)
    mq = MiniQuestion(section_id=section.id, title=title, prompt=prompt, description=description,
                      resource_url=resource_url, order_index=order_index,
                      scheduled_release_at=as_naive_utc(scheduled_release_at), is_released=False)
    db.add(mq)
    db.commit()
    return mq

MODULE_FIELDS = {"module_number", "title", "description", "is_active", "scheduled_release_at"}
TOPIC_FIELDS = {"topic_number", "title", "module_id", "content", "description", "deadline", "points", "bonus_points",
                "is_active", "scheduled_release_at"}
SECTION_FIELDS = {"title", "material", "order_index", "is_active"}
MINI_QUESTION_FIELDS = {"title", "prompt", "description", "resource_url", "order_index", "is_active",
                        "scheduled_release_at"}
DATETIME_FIELDS = {"deadline", "scheduled_release_at"}

def _apply(entity, changes: Dict[str, Any], allowed: set) -> None:
    """Copy edited fields onto ``entity``. Release flags only move through release and unrelease."""
    unknown = set(changes) - allowed
    if unknown:
        raise TypeError(f"Cannot edit {', '.join(sorted(unknown))} on {type(entity).__name__}")
    for field, value in changes.items():
        setattr(entity, field, as_naive_utc(value) if field in DATETIME_FIELDS else value)

def update_module(db: Session, cohort_id: int, module_id: int, **changes) -> Module:
    m = get_scoped(db, admin_context(db, cohort_id), Module, module_id)
    _apply(m, changes, MODULE_FIELDS)
    _commit_unique(db, f"Module {m.module_number} in cohort {cohort_id}")
    logger.info("Updated module %s (%s)", module_id, ", ".join(sorted(changes)))
    return m

def update_topic(db: Session, cohort_id: int, topic_id: int, **changes) -> Topic:
    ctx = admin_context(db, cohort_id)
    t = get_scoped(db, ctx, Topic, topic_id)
    if changes.get("module_id") is not None:
        get_scoped(db, ctx, Module, changes["module_id"])
    _apply(t, changes, TOPIC_FIELDS)
    _commit_unique(db, f"Topic {t.topic_number} in cohort {cohort_id}")
    logger.info("Updated topic %s (%s)", topic_id, ", ".join(sorted(changes)))
    return t

def update_section(db: Session, cohort_id: int, section_id: int, **changes) -> ContentSection:
    s = get_scoped(db, admin_context(db, cohort_id), ContentSection, section_id)
    _apply(s, changes, SECTION_FIELDS)
    db.commit()
    return s

def update_mini_question(db: Session, cohort_id: int, mini_question_id: int, **changes) -> MiniQuestion:
    mq = get_scoped(db, admin_context(db, cohort_id), MiniQuestion, mini_question_id)
    _apply(mq, changes, MINI_QUESTION_FIELDS)
    db.commit()
    return mq

def _answered(db: Session, topic_ids: List[int], mini_question_ids: List[int]) -> bool:
    if topic_ids and db.scalar(select(func.count()).select_from(Answer).where(Answer.topic_id.in_(topic_ids))):
        return True
    return bool(mini_question_ids and db.scalar(
        select(func.count()).select_from(MiniAnswer).where(MiniAnswer.mini_question_id.in_(mini_question_ids))))

def _topic_mini_ids(topic: Topic) -> List[int]:
    return [mq.id for s in topic.sections for mq in s.mini_questions]

def delete_module(db: Session, cohort_id: int, module_id: int) -> None:
    """Delete a module together with its topics. Refused once learners have answered any of it."""
    m = get_scoped(db, admin_context(db, cohort_id), Module, module_id)
    topics = list(m.topics)
    if _answered(db, [t.id for t in topics], [i for t in topics for i in _topic_mini_ids(t)]):
        raise InvalidTransition(f"Module {module_id} has answers; remove them before deleting it")
    for t in topics:
        db.delete(t)
    db.delete(m)
    db.commit()
    logger.info("Deleted module %s of cohort %s with %d topic(s)", module_id, cohort_id, len(topics))

def delete_topic(db: Session, cohort_id: int, topic_id: int) -> None:
    t = get_scoped(db, admin_context(db, cohort_id), Topic, topic_id)
    if _answered(db, [t.id], _topic_mini_ids(t)):
        raise InvalidTransition(f"Topic {topic_id} has answers; remove them before deleting it")
    db.delete(t)
    db.commit()
    logger.info("Deleted topic %s of cohort %s", topic_id, cohort_id)

def delete_section(db: Session, cohort_id: int, section_id: int) -> None:
    s = get_scoped(db, admin_context(db, cohort_id), ContentSection, section_id)
    if _answered(db, [], [mq.id for mq in s.mini_questions]):
        raise InvalidTransition(f"Section {section_id} has mini-question answers; remove them before deleting it")
    db.delete(s)
    db.commit()

def delete_mini_question(db: Session, cohort_id: int, mini_question_id: int) -> None:
    mq = get_scoped(db, admin_context(db, cohort_id), MiniQuestion, mini_question_id)
    if _answered(db, [], [mq.id]):
        raise InvalidTransition(f"Mini-question {mini_question_id} has answers; remove them before deleting it")
    db.delete(mq)
    db.commit()

@dataclass
class CohortSummary:
    cohort: Cohort
    member_count: int
    module_count: int
    topic_count: int

@dataclass
class LeaderboardEntry:
    rank: int
    learner_id: str
    full_name: str
    current_step: int

def _counts(db: Session, stmt) -> Dict[int, int]:
    return {cohort_id: n for cohort_id, n in db.execute(stmt).all()}

def _enrolled_learners():
    return (select(CohortMembership, Learner).join(Learner, CohortMembership.learner_id == Learner.id)
            .where(CohortMembership.status == MembershipStatus.ENROLLED.value, Learner.is_admin.is_(False)))

def list_cohorts(db: Session) -> List[CohortSummary]:
    members = _counts(db, select(CohortMembership.cohort_id, func.count())
                      .join(Learner, CohortMembership.learner_id == Learner.id)
                      .where(CohortMembership.status == MembershipStatus.ENROLLED.value, Learner.is_admin.is_(False))
                      .group_by(CohortMembership.cohort_id))
    modules = _counts(db, select(Module.cohort_id, func.count()).group_by(Module.cohort_id))
    topics = _counts(db, select(Topic.cohort_id, func.count()).group_by(Topic.cohort_id))
    cohorts = db.scalars(select(Cohort).order_by(Cohort.created_at.desc(), Cohort.id.desc())).all()
    return [CohortSummary(c, members.get(c.id, 0), modules.get(c.id, 0), topics.get(c.id, 0)) for c in cohorts]

def list_members(db: Session, cohort_id: int, status: Optional[str] = None) -> List[CohortMembership]:
    """Learner memberships of a cohort, newest first. Administrators are left out."""
    _get_cohort(db, cohort_id)
    stmt = (select(CohortMembership).join(Learner, CohortMembership.learner_id == Learner.id)
            .where(CohortMembership.cohort_id == cohort_id, Learner.is_admin.is_(False)))
    if status is not None:
        stmt = stmt.where(CohortMembership.status == MembershipStatus(status).value)
    return list(db.scalars(stmt.order_by(CohortMembership.joined_at.desc(), CohortMembership.id.desc())).all())

def leaderboard(db: Session, cohort_id: int, limit: int = 20) -> List[LeaderboardEntry]:
    """Enrolled learners ranked by progress step; earlier joiners win ties."""
    rows = db.execute(
        _enrolled_learners().where(CohortMembership.cohort_id == cohort_id)
        .order_by(CohortMembership.current_step.desc(), CohortMembership.joined_at, Learner.id)
        .limit(limit)
    ).all()
    return [LeaderboardEntry(rank=i, learner_id=l.id, full_name=l.full_name, current_step=m.current_step)
            for i, (m, l) in enumerate(rows, start=1)]

def cohort_stats(db: Session, cohort_id: int) -> Dict[str, Any]:
    cohort = _get_cohort(db, cohort_id)
    steps = [m.current_step for m, _ in db.execute(_enrolled_learners().where(CohortMembership.cohort_id == cohort_id)).all()]
    released_topics = sum(1 for t in cohort.topics if is_effectively_visible(t))
    total_answers = db.scalar(select(func.count()).select_from(Answer).where(Answer.cohort_id == cohort_id))
    pending = db.scalar(select(func.count()).select_from(Answer).where(
        Answer.cohort_id == cohort_id, Answer.status == AnswerStatus.PENDING.value))
    average = sum(steps) / len(steps) / max(1, released_topics) * 100 if steps else 0.0
    return {
        "cohort_id": cohort_id,
        "total_learners": len(steps),
        "released_topics": released_topics,
        "total_answers": total_answers,
        "pending_answers": pending,
        "average_progress": round(average, 1),
    }
