"""
Answer lifecycle: submission, grading and the resubmission gate.

    PENDING -> APPROVED | NEEDS_RESUBMISSION
    NEEDS_RESUBMISSION + requested (+ approved) -> learner resubmits -> PENDING

APPROVED is terminal.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from cohortflow.core.errors import ContentNotAvailable, InvalidTransition, NotFound, StaleResubmission
from cohortflow.core.timeutil import utcnow
from cohortflow.models.orm import Answer, AnswerStatus, MiniAnswer, MiniQuestion, Topic, TopicStatus
from cohortflow.services.cascade import is_effectively_visible
from cohortflow.services.isolation import admin_context, enrolled_memberships, ensure_same_cohort, get_scoped, resolve_learner_context
from cohortflow.services.notifications import Notifier, notify_safely
from cohortflow.services.progress import is_locked, resubmission_open, topic_progress

logger = logging.getLogger(__name__)

GRADES = (AnswerStatus.APPROVED.value, AnswerStatus.NEEDS_RESUBMISSION.value)

@dataclass
class Attachment:
    file_name: str
    file_path: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None

def _notify(notifier: Optional[Notifier], recipient: str, template_key: str, context: dict) -> None:
    notify_safely(notifier, recipient, template_key, context)

def _set_attachment(answer: Answer, attachment: Optional[Attachment]) -> None:
    answer.attachment_file_name = attachment.file_name if attachment else None
    answer.attachment_file_path = attachment.file_path if attachment else None
    answer.attachment_file_size = attachment.file_size if attachment else None
    answer.attachment_mime_type = attachment.mime_type if attachment else None

def _commit(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        # a concurrent request created the same (learner, item, cohort) row first
        db.rollback()
        raise StaleResubmission("A submission for this item already exists") from e

def _answer_context(answer: Answer) -> dict:
    return {
        "topic_title": answer.topic.title,
        "topic_number": answer.topic.topic_number,
        "status": answer.status,
        "feedback": answer.feedback,
        "grade": answer.grade,
        "cohort_id": answer.cohort_id,
    }

def submit_answer(db: Session, learner_id: str, topic_id: int, content: str, notes: Optional[str] = None,
                  attachment: Optional[Attachment] = None, now: Optional[datetime] = None) -> Answer:
    ctx = resolve_learner_context(db, learner_id)
    topic = get_scoped(db, ctx, Topic, topic_id)
    if not is_effectively_visible(topic):
        raise ContentNotAvailable(f"Topic {topic_id} is not released")
    now = now or utcnow()
    answer = db.scalars(select(Answer).where(
        Answer.learner_id == learner_id, Answer.topic_id == topic_id, Answer.cohort_id == ctx.cohort_id,
    )).first()

    if answer is None:
        tp = topic_progress(db, ctx.membership, topic)
        if tp.status != TopicStatus.AVAILABLE.value:
            raise ContentNotAvailable(f"Topic {topic_id} cannot be answered yet ({tp.status})", status=tp.status)
        answer = Answer(learner_id=learner_id, topic_id=topic_id, cohort_id=ctx.cohort_id, content=content,
                        notes=notes, status=AnswerStatus.PENDING.value, submitted_at=now)
        _set_attachment(answer, attachment)
        db.add(answer)
        _commit(db)
        logger.info("Answer %s submitted by %s for topic %s (cohort %s)", answer.id, learner_id, topic_id, ctx.cohort_id)
        return answer

    if not resubmission_open(answer):
        raise StaleResubmission(
            f"Answer {answer.id} is {answer.status} and not open for resubmission",
            answer_id=answer.id, status=answer.status,
        )
    answer.content = content
    answer.notes = notes
    _set_attachment(answer, attachment)
    answer.status = AnswerStatus.PENDING.value
    answer.submitted_at = now
    answer.resubmission_requested = False
    answer.resubmission_approved = None
    answer.resubmission_requested_at = None
    answer.resubmission_requested_by = None
    answer.grade = None
    answer.points_awarded = None
    answer.feedback = None
    answer.reviewed_at = None
    answer.reviewed_by = None
    db.commit()
    logger.info("Answer %s resubmitted by %s", answer.id, learner_id)
    return answer

def grade_answer(db: Session, cohort_id: int, answer_id: int, reviewer_id: str, status: str, feedback: Optional[str],
                 grade: Optional[str] = None, points_awarded: Optional[int] = None,
                 notifier: Optional[Notifier] = None) -> Answer:
    ctx = admin_context(db, cohort_id, reviewer_id)
    answer = get_scoped(db, ctx, Answer, answer_id)
    status = getattr(status, "value", status)
    if status not in GRADES:
        raise InvalidTransition(f"Cannot grade an answer as {status}")
    if answer.status != AnswerStatus.PENDING.value:
        raise InvalidTransition(f"Answer {answer_id} is {answer.status}, only PENDING answers can be graded")
    answer.status = status
    answer.feedback = feedback
    answer.grade = grade
    answer.points_awarded = points_awarded
    answer.reviewed_at = utcnow()
    answer.reviewed_by = reviewer_id
    if status == AnswerStatus.APPROVED.value:
        for m in enrolled_memberships(db, answer.learner_id, cohort_id):
            m.current_step = max(m.current_step or 0, answer.topic.topic_number)
    db.commit()
    logger.info("Answer %s graded %s by %s", answer_id, status, reviewer_id)
    _notify(notifier, answer.learner.email, "answer_feedback", _answer_context(answer))
    return answer

def _needs_resubmission(answer: Answer) -> None:
    if answer.status == AnswerStatus.APPROVED.value:
        raise InvalidTransition(f"Answer {answer.id} is approved and cannot be reopened")
    if answer.status != AnswerStatus.NEEDS_RESUBMISSION.value:
        raise InvalidTransition(f"Answer {answer.id} is {answer.status}, expected NEEDS_RESUBMISSION")

def request_resubmission(db: Session, cohort_id: int, answer_id: int, admin_id: str, approve: bool = False,
                         notifier: Optional[Notifier] = None) -> Answer:
    ctx = admin_context(db, cohort_id, admin_id)
    answer = get_scoped(db, ctx, Answer, answer_id)
    _needs_resubmission(answer)
    answer.resubmission_requested = True
    answer.resubmission_requested_at = utcnow()
    answer.resubmission_requested_by = admin_id
    if approve:
        answer.resubmission_approved = True
    db.commit()
    logger.info("Resubmission requested for answer %s by %s (approved=%s)", answer_id, admin_id, approve)
    _notify(notifier, answer.learner.email, "answer_resubmission_requested", _answer_context(answer))
    return answer

def set_resubmission_approval(db: Session, cohort_id: int, answer_id: int, admin_id: str, approved: bool,
                              notifier: Optional[Notifier] = None) -> Answer:
    ctx = admin_context(db, cohort_id, admin_id)
    answer = get_scoped(db, ctx, Answer, answer_id)
    _needs_resubmission(answer)
    answer.resubmission_approved = approved
    db.commit()
    logger.info("Resubmission for answer %s %s by %s", answer_id, "approved" if approved else "denied", admin_id)
    if approved:
        _notify(notifier, answer.learner.email, "resubmission_approved", _answer_context(answer))
    return answer

def submit_mini_answer(db: Session, learner_id: str, mini_question_id: int, link_url: str,
                       notes: Optional[str] = None, now: Optional[datetime] = None) -> MiniAnswer:
    ctx = resolve_learner_context(db, learner_id)
    mq = get_scoped(db, ctx, MiniQuestion, mini_question_id)
    if not is_effectively_visible(mq) or is_locked(ctx.membership, mq.section.topic):
        raise ContentNotAvailable(f"Mini-question {mini_question_id} is not available")
    now = now or utcnow()
    ma = db.scalars(select(MiniAnswer).where(
        MiniAnswer.learner_id == learner_id, MiniAnswer.mini_question_id == mini_question_id,
        MiniAnswer.cohort_id == ctx.cohort_id,
    )).first()
    if ma is None:
        ma = MiniAnswer(learner_id=learner_id, mini_question_id=mini_question_id, cohort_id=ctx.cohort_id,
                        link_url=link_url, notes=notes, submitted_at=now)
        db.add(ma)
        _commit(db)
        logger.info("Mini answer %s submitted by %s for mini-question %s", ma.id, learner_id, mini_question_id)
        return ma
    if not ma.resubmission_requested:
        raise StaleResubmission(f"Mini answer {ma.id} was already submitted", mini_answer_id=ma.id)
    ma.link_url = link_url
    ma.notes = notes
    ma.submitted_at = now
    ma.resubmission_requested = False
    ma.resubmission_requested_at = None
    ma.resubmission_requested_by = None
    db.commit()
    logger.info("Mini answer %s resubmitted by %s", ma.id, learner_id)
    return ma

def request_mini_resubmission(db: Session, cohort_id: int, mini_answer_id: int, admin_id: str,
                              notifier: Optional[Notifier] = None) -> MiniAnswer:
    ctx = admin_context(db, cohort_id, admin_id)
    ma = get_scoped(db, ctx, MiniAnswer, mini_answer_id)
    ma.resubmission_requested = True
    ma.resubmission_requested_at = utcnow()
    ma.resubmission_requested_by = admin_id
    db.commit()
    logger.info("Resubmission requested for mini answer %s by %s", mini_answer_id, admin_id)
    mq = ma.mini_question
    _notify(notifier, ma.learner.email, "mini_answer_resubmission_requested", {
        "mini_question_title": mq.title,
        "section_title": mq.section.title,
        "topic_title": mq.section.topic.title,
        "cohort_id": ma.cohort_id,
    })
    return ma

def pending_answers(db: Session, cohort_id: int) -> List[Answer]:
    admin_context(db, cohort_id)
    return list(db.scalars(
        select(Answer).where(Answer.cohort_id == cohort_id, Answer.status == AnswerStatus.PENDING.value)
        .order_by(Answer.submitted_at, Answer.id)
    ).all())

def mini_answers_for(db: Session, cohort_id: int, mini_question_id: Optional[int] = None) -> List[MiniAnswer]:
    ctx = admin_context(db, cohort_id)
    stmt = select(MiniAnswer).where(MiniAnswer.cohort_id == cohort_id)
    if mini_question_id is not None:
        mq = db.get(MiniQuestion, mini_question_id)
        if mq is None:
            raise NotFound(f"MiniQuestion {mini_question_id} not found")
        ensure_same_cohort(ctx, mq)
        stmt = stmt.where(MiniAnswer.mini_question_id == mini_question_id)
    return list(db.scalars(stmt.order_by(MiniAnswer.submitted_at, MiniAnswer.id)).all())
