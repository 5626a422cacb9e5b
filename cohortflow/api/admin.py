from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Literal, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from rq.job import Job
from rq.exceptions import NoSuchJobError
from cohortflow.core.database import get_db
from cohortflow.core.auth import Identity, require_admin
from cohortflow.core.cache import RedisTickGuard
from cohortflow.jobs.queue import queue, redis
from cohortflow.jobs.release_job import release_tick_job
from cohortflow.api.learner import AnswerOut, MiniAnswerOut, ProgressOut, progress_response
from cohortflow.models.orm import MiniQuestion, Module, Topic
from cohortflow.services.cascade import cascade_unrelease, release_entity, schedule_release
from cohortflow.services.isolation import admin_context, get_scoped
from cohortflow.services.notifications import Notifier, get_notifier
from cohortflow.services.release import ReleaseScheduler, TickGuard
from cohortflow.services import resubmission

router = APIRouter()

RELEASABLE = {"modules": Module, "topics": Topic, "mini-questions": MiniQuestion}

def get_tick_guard() -> TickGuard:
    return RedisTickGuard()

class GradeIn(BaseModel):
    status: Literal["APPROVED", "NEEDS_RESUBMISSION"]
    feedback: Optional[str] = None
    grade: Optional[str] = None
    points_awarded: Optional[int] = None

class ResubmissionIn(BaseModel):
    approve: bool = False

class ApprovalIn(BaseModel):
    approved: bool

class UnreleaseIn(BaseModel):
    clear_descendants: bool = False

class ScheduleIn(BaseModel):
    scheduled_release_at: Optional[datetime] = None

class ReleaseStateOut(BaseModel):
    id: int
    kind: str
    is_active: bool
    is_released: bool
    scheduled_release_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

class TickOut(BaseModel):
    released_modules: int
    released_topics: int
    released_mini_questions: int
    hidden_mini_questions: int
    notifications_sent: int
    notifications_failed: int
    skipped: bool

class TickStatus(BaseModel):
    job_id: str
    state: str
    result: Optional[dict] = None
    next_job_id: Optional[str] = None

def _state(kind: str, e) -> ReleaseStateOut:
    return ReleaseStateOut(id=e.id, kind=kind, is_active=e.is_active, is_released=e.is_released,
                           scheduled_release_at=e.scheduled_release_at, released_at=e.released_at)

def _releasable(db: Session, cohort_id: int, kind: str, entity_id: int):
    model = RELEASABLE.get(kind)
    if model is None:
        raise HTTPException(404, f"Unknown content kind {kind}")
    return get_scoped(db, admin_context(db, cohort_id), model, entity_id)

@router.get("/cohorts/{cohort_id}/answers/pending", response_model=List[AnswerOut], dependencies=[Depends(require_admin)])
def list_pending(cohort_id: int, db: Session = Depends(get_db)):
    return resubmission.pending_answers(db, cohort_id)

@router.post("/cohorts/{cohort_id}/answers/{answer_id}/grade", response_model=AnswerOut)
def grade(cohort_id: int, answer_id: int, payload: GradeIn, caller: Identity = Depends(require_admin),
          db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return resubmission.grade_answer(db, cohort_id, answer_id, caller.learner_id, payload.status, payload.feedback,
                                     grade=payload.grade, points_awarded=payload.points_awarded, notifier=notifier)

@router.post("/cohorts/{cohort_id}/answers/{answer_id}/resubmission", response_model=AnswerOut)
def request_resubmission(cohort_id: int, answer_id: int, payload: ResubmissionIn, caller: Identity = Depends(require_admin),
                         db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return resubmission.request_resubmission(db, cohort_id, answer_id, caller.learner_id, approve=payload.approve, notifier=notifier)

@router.post("/cohorts/{cohort_id}/answers/{answer_id}/resubmission/approval", response_model=AnswerOut)
def resubmission_approval(cohort_id: int, answer_id: int, payload: ApprovalIn, caller: Identity = Depends(require_admin),
                          db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return resubmission.set_resubmission_approval(db, cohort_id, answer_id, caller.learner_id, payload.approved, notifier=notifier)

@router.get("/cohorts/{cohort_id}/mini-answers", response_model=List[MiniAnswerOut], dependencies=[Depends(require_admin)])
def list_mini_answers(cohort_id: int, mini_question_id: Optional[int] = None, db: Session = Depends(get_db)):
    return resubmission.mini_answers_for(db, cohort_id, mini_question_id)

@router.post("/cohorts/{cohort_id}/mini-answers/{mini_answer_id}/resubmission", response_model=MiniAnswerOut)
def request_mini_resubmission(cohort_id: int, mini_answer_id: int, caller: Identity = Depends(require_admin),
                              db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return resubmission.request_mini_resubmission(db, cohort_id, mini_answer_id, caller.learner_id, notifier=notifier)

@router.get("/cohorts/{cohort_id}/learners/{learner_id}/progress", response_model=ProgressOut, dependencies=[Depends(require_admin)])
def learner_progress(cohort_id: int, learner_id: str, db: Session = Depends(get_db)):
    admin_context(db, cohort_id)
    return progress_response(db, learner_id, cohort_id)

@router.post("/cohorts/{cohort_id}/{kind}/{entity_id}/release", response_model=ReleaseStateOut, dependencies=[Depends(require_admin)])
def release(cohort_id: int, kind: str, entity_id: int, db: Session = Depends(get_db)):
    return _state(kind, release_entity(db, _releasable(db, cohort_id, kind, entity_id)))

@router.post("/cohorts/{cohort_id}/{kind}/{entity_id}/unrelease", response_model=ReleaseStateOut, dependencies=[Depends(require_admin)])
def unrelease(cohort_id: int, kind: str, entity_id: int, payload: UnreleaseIn, db: Session = Depends(get_db)):
    e = _releasable(db, cohort_id, kind, entity_id)
    cascade_unrelease(db, e, clear_descendants=payload.clear_descendants)
    return _state(kind, e)

@router.post("/cohorts/{cohort_id}/{kind}/{entity_id}/schedule", response_model=ReleaseStateOut, dependencies=[Depends(require_admin)])
def schedule(cohort_id: int, kind: str, entity_id: int, payload: ScheduleIn, db: Session = Depends(get_db)):
    e = _releasable(db, cohort_id, kind, entity_id)
    return _state(kind, schedule_release(db, e, payload.scheduled_release_at))

@router.post("/release/run", response_model=TickOut, dependencies=[Depends(require_admin)])
def run_tick(db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier),
             guard: TickGuard = Depends(get_tick_guard)):
    return ReleaseScheduler(notifier, guard=guard).tick(db).as_dict()

@router.post("/release/enqueue", dependencies=[Depends(require_admin)])
def enqueue_tick():
    job = queue.enqueue(release_tick_job, kwargs={"reschedule": False})
    return {"job_id": job.get_id()}

@router.get("/release/status", response_model=TickStatus, dependencies=[Depends(require_admin)])
def tick_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError:
        raise HTTPException(404, "Job not found")
    meta = job.meta or {}
    state = meta.get("state") or job.get_status()
    return TickStatus(job_id=job_id, state=state, result=meta.get("result"), next_job_id=meta.get("next_job_id"))
