from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from cohortflow.core.database import get_db
from cohortflow.core.auth import Identity, current_identity
from cohortflow.services.isolation import current_membership, resolve_learner_context
from cohortflow.services.progress import compute_progress, summarize
from cohortflow.services.release import next_release_info
from cohortflow.services.resubmission import Attachment, submit_answer, submit_mini_answer

router = APIRouter()

class AnswerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    learner_id: str
    topic_id: int
    cohort_id: int
    content: str
    notes: Optional[str] = None
    status: str
    grade: Optional[str] = None
    points_awarded: Optional[int] = None
    feedback: Optional[str] = None
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    resubmission_requested: bool = False
    resubmission_approved: Optional[bool] = None
    attachment_file_name: Optional[str] = None

class MiniAnswerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    learner_id: str
    mini_question_id: int
    cohort_id: int
    link_url: str
    notes: Optional[str] = None
    submitted_at: datetime
    resubmission_requested: bool = False

class MiniQuestionStatus(BaseModel):
    id: int
    section_id: int
    section_title: str
    title: str
    prompt: str
    order_index: int
    resource_url: Optional[str] = None
    has_answer: bool
    resubmission_requested: bool
    status: str
    answer: Optional[Dict[str, Any]] = None

class TopicStatusOut(BaseModel):
    topic_id: int
    cohort_id: int
    topic_number: int
    title: str
    module_number: Optional[int] = None
    status: str
    points: int
    bonus_points: int
    deadline: Optional[datetime] = None
    mini_total: int
    mini_completed: int
    mini_percentage: int
    can_attempt_main: bool
    can_resubmit: bool
    answer: Optional[Dict[str, Any]] = None
    mini_questions: List[MiniQuestionStatus] = []

class ProgressOut(BaseModel):
    cohort_id: Optional[int] = None
    topics: List[TopicStatusOut]
    summary: Dict[str, Any]

class AttachmentIn(BaseModel):
    file_name: str
    file_path: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None

class AnswerSubmit(BaseModel):
    topic_id: int
    content: str = Field(min_length=1)
    notes: Optional[str] = None
    attachment: Optional[AttachmentIn] = None

class MiniAnswerSubmit(BaseModel):
    mini_question_id: int
    link_url: str = Field(min_length=1)
    notes: Optional[str] = None

def progress_response(db: Session, learner_id: str, cohort_id: Optional[int]) -> ProgressOut:
    progress = compute_progress(db, learner_id, cohort_id) if cohort_id is not None else []
    return ProgressOut(cohort_id=cohort_id, topics=[p.as_dict() for p in progress], summary=summarize(progress))

@router.get("/progress", response_model=ProgressOut)
def my_progress(caller: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    m = current_membership(db, caller.learner_id)
    # not being enrolled is a normal state: empty dashboard
    return progress_response(db, caller.learner_id, m.cohort_id if m else None)

@router.get("/next-release")
def my_next_release(caller: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    ctx = resolve_learner_context(db, caller.learner_id)
    return {"cohort_id": ctx.cohort_id, **next_release_info(db, ctx.cohort_id)}

@router.post("/answers", response_model=AnswerOut, status_code=201)
def post_answer(payload: AnswerSubmit, caller: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    attachment = Attachment(**payload.attachment.model_dump()) if payload.attachment else None
    return submit_answer(db, caller.learner_id, payload.topic_id, payload.content, notes=payload.notes, attachment=attachment)

@router.post("/mini-answers", response_model=MiniAnswerOut, status_code=201)
def post_mini_answer(payload: MiniAnswerSubmit, caller: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    return submit_mini_answer(db, caller.learner_id, payload.mini_question_id, payload.link_url, notes=payload.notes)
