"""
Progress engine.

Status is derived on every read from the release flags, the cascade check,
mini-question submissions and the learner's answer. Nothing here is cached.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from cohortflow.core.config import settings
from cohortflow.models.orm import Answer, AnswerStatus, CohortMembership, MiniAnswer, MiniQuestion, Topic, TopicStatus
from cohortflow.services.cascade import is_effectively_visible
from cohortflow.services.isolation import enrolled_memberships

logger = logging.getLogger(__name__)

@dataclass
class MiniQuestionProgress:
    id: int
    section_id: int
    section_title: str
    title: str
    prompt: str
    order_index: int
    resource_url: Optional[str]
    has_answer: bool
    resubmission_requested: bool
    status: str
    answer: Optional[Dict[str, Any]] = None

@dataclass
class TopicProgress:
    topic_id: int
    cohort_id: int
    topic_number: int
    title: str
    module_number: Optional[int]
    status: str
    points: int
    bonus_points: int
    deadline: Optional[datetime]
    mini_total: int = 0
    mini_completed: int = 0
    mini_percentage: int = 0
    can_attempt_main: bool = False
    can_resubmit: bool = False
    answer: Optional[Dict[str, Any]] = None
    mini_questions: List[MiniQuestionProgress] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

def answer_payload(a: Answer) -> Dict[str, Any]:
    return {
        "id": a.id,
        "content": a.content,
        "notes": a.notes,
        "status": a.status,
        "grade": a.grade,
        "points_awarded": a.points_awarded,
        "feedback": a.feedback,
        "submitted_at": a.submitted_at,
        "reviewed_at": a.reviewed_at,
        "resubmission_requested": bool(a.resubmission_requested),
        "resubmission_approved": a.resubmission_approved,
        "attachment_file_name": a.attachment_file_name,
        "attachment_mime_type": a.attachment_mime_type,
        "attachment_file_size": a.attachment_file_size,
    }

def mini_answer_payload(ma: MiniAnswer) -> Dict[str, Any]:
    return {
        "id": ma.id,
        "link_url": ma.link_url,
        "notes": ma.notes,
        "submitted_at": ma.submitted_at,
        "resubmission_requested": bool(ma.resubmission_requested),
    }

def resubmission_open(answer: Answer, requires_approval: Optional[bool] = None) -> bool:
    """True when the learner may overwrite ``answer``."""
    if requires_approval is None:
        requires_approval = settings.RESUBMISSION_REQUIRES_APPROVAL
    if answer.status != AnswerStatus.NEEDS_RESUBMISSION.value or not answer.resubmission_requested:
        return False
    return bool(answer.resubmission_approved) or not requires_approval

def is_locked(membership: CohortMembership, topic: Topic) -> bool:
    # one step ahead of confirmed progress
    return topic.topic_number > (membership.current_step or 0) + 1

def visible_mini_questions(topic: Topic) -> List[MiniQuestion]:
    return [mq for s in topic.sections for mq in s.mini_questions if is_effectively_visible(mq)]

def _mini_status(ma: Optional[MiniAnswer]) -> str:
    if ma is None:
        return "available"
    if ma.resubmission_requested:
        return "resubmission_requested"
    return "completed"

def _answers_by_topic(db: Session, learner_id: str, cohort_id: int) -> Dict[int, Answer]:
    rows = db.scalars(select(Answer).where(Answer.learner_id == learner_id, Answer.cohort_id == cohort_id)).all()
    return {a.topic_id: a for a in rows}

def _mini_answers_by_question(db: Session, learner_id: str, cohort_id: int) -> Dict[int, MiniAnswer]:
    rows = db.scalars(select(MiniAnswer).where(MiniAnswer.learner_id == learner_id, MiniAnswer.cohort_id == cohort_id)).all()
    return {ma.mini_question_id: ma for ma in rows}

def topic_progress(db: Session, membership: CohortMembership, topic: Topic,
                   answers: Optional[Dict[int, Answer]] = None,
                   mini_answers: Optional[Dict[int, MiniAnswer]] = None) -> TopicProgress:
    """Status of one visible topic for the learner behind ``membership``."""
    if answers is None:
        answers = _answers_by_topic(db, membership.learner_id, membership.cohort_id)
    if mini_answers is None:
        mini_answers = _mini_answers_by_question(db, membership.learner_id, membership.cohort_id)

    tp = TopicProgress(
        topic_id=topic.id, cohort_id=topic.cohort_id, topic_number=topic.topic_number, title=topic.title,
        module_number=topic.module.module_number if topic.module is not None else None,
        status=TopicStatus.LOCKED.value, points=topic.points, bonus_points=topic.bonus_points,
        deadline=topic.deadline,
    )
    if is_locked(membership, topic):
        return tp

    for mq in visible_mini_questions(topic):
        ma = mini_answers.get(mq.id)
        tp.mini_questions.append(MiniQuestionProgress(
            id=mq.id, section_id=mq.section_id, section_title=mq.section.title, title=mq.title,
            prompt=mq.prompt, order_index=mq.order_index, resource_url=mq.resource_url,
            has_answer=ma is not None, resubmission_requested=bool(ma and ma.resubmission_requested),
            status=_mini_status(ma), answer=mini_answer_payload(ma) if ma is not None else None,
        ))
    tp.mini_total = len(tp.mini_questions)
    tp.mini_completed = sum(1 for m in tp.mini_questions if m.has_answer)
    tp.mini_percentage = round(tp.mini_completed * 100 / tp.mini_total) if tp.mini_total else 100
    tp.can_attempt_main = tp.mini_completed == tp.mini_total

    answer = answers.get(topic.id)
    if answer is not None:
        tp.answer = answer_payload(answer)

    if not tp.can_attempt_main:
        tp.status = TopicStatus.MINI_QUESTIONS_REQUIRED.value
    elif answer is None:
        tp.status = TopicStatus.AVAILABLE.value
    elif answer.status == AnswerStatus.APPROVED.value:
        tp.status = TopicStatus.COMPLETED.value
    elif resubmission_open(answer):
        tp.status = TopicStatus.AVAILABLE.value
        tp.can_resubmit = True
    else:
        tp.status = TopicStatus.SUBMITTED.value
    return tp

def compute_progress(db: Session, learner_id: str, cohort_id: int) -> List[TopicProgress]:
    memberships = enrolled_memberships(db, learner_id, cohort_id)
    if not memberships:
        return []
    membership = memberships[0]
    topics = db.scalars(select(Topic).where(Topic.cohort_id == cohort_id).order_by(Topic.topic_number)).all()
    answers = _answers_by_topic(db, learner_id, cohort_id)
    mini_answers = _mini_answers_by_question(db, learner_id, cohort_id)
    return [topic_progress(db, membership, t, answers, mini_answers) for t in topics if is_effectively_visible(t)]

def summarize(progress: List[TopicProgress]) -> Dict[str, Any]:
    total = len(progress)
    completed = sum(1 for p in progress if p.status == TopicStatus.COMPLETED.value)
    by_status: Dict[str, int] = {}
    for p in progress:
        by_status[p.status] = by_status.get(p.status, 0) + 1
    return {
        "total": total,
        "completed": completed,
        "percentage": round(completed * 100 / total) if total else 0,
        "by_status": by_status,
    }
