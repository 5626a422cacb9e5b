from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from typing import List, Literal, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from cohortflow.core.database import get_db
from cohortflow.core.auth import Identity, current_identity, require_admin
from cohortflow.core.errors import CrossCohortViolation
from cohortflow.services import cohorts
from cohortflow.services.isolation import repair_duplicate_enrollments, resolve_learner_context
from cohortflow.services.notifications import Notifier, get_notifier

router = APIRouter()

class CohortCreate(BaseModel):
    cohort_number: int
    name: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True

class CohortOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    cohort_number: int
    name: str
    description: Optional[str] = None
    is_active: bool
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

class MemberIn(BaseModel):
    learner_id: str

class MemberStatusIn(BaseModel):
    status: Literal["ENROLLED", "GRADUATED", "REMOVED", "SUSPENDED"]

class MembershipOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    learner_id: str
    cohort_id: int
    status: str
    current_step: int
    joined_at: datetime
    status_changed_by: Optional[str] = None

class CopyIn(BaseModel):
    name: str
    cohort_number: int

class RepairIn(BaseModel):
    learner_id: Optional[str] = None
    dry_run: bool = False

class RepairOut(BaseModel):
    learner_id: str
    kept_membership_id: int
    kept_cohort_id: int
    demoted_membership_ids: List[int]

class CohortSummaryOut(CohortOut):
    member_count: int
    module_count: int
    topic_count: int

class MemberOut(MembershipOut):
    email: str
    full_name: str

class LeaderboardOut(BaseModel):
    rank: int
    learner_id: str
    full_name: str
    current_step: int

class StatsOut(BaseModel):
    cohort_id: int
    total_learners: int
    released_topics: int
    total_answers: int
    pending_answers: int
    average_progress: float

@router.post("", response_model=CohortOut, status_code=201, dependencies=[Depends(require_admin)])
def create_cohort(payload: CohortCreate, db: Session = Depends(get_db)):
    return cohorts.create_cohort(db, **payload.model_dump())

@router.post("/{cohort_id}/members", response_model=MembershipOut, status_code=201)
def add_member(cohort_id: int, payload: MemberIn, caller: Identity = Depends(require_admin),
               db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return cohorts.assign_learner(db, payload.learner_id, cohort_id, changed_by=caller.learner_id, notifier=notifier)

@router.patch("/{cohort_id}/members/{learner_id}", response_model=MembershipOut)
def set_member_status(cohort_id: int, learner_id: str, payload: MemberStatusIn, caller: Identity = Depends(require_admin),
                      db: Session = Depends(get_db)):
    return cohorts.change_membership_status(db, learner_id, cohort_id, payload.status, changed_by=caller.learner_id)

@router.post("/{cohort_id}/copy", response_model=CohortOut, status_code=201, dependencies=[Depends(require_admin)])
def copy_cohort(cohort_id: int, payload: CopyIn, db: Session = Depends(get_db)):
    return cohorts.copy_cohort(db, cohort_id, payload.name, payload.cohort_number)

@router.post("/repair-enrollments", response_model=List[RepairOut])
def repair_enrollments(payload: RepairIn, caller: Identity = Depends(require_admin), db: Session = Depends(get_db)):
    actions = repair_duplicate_enrollments(db, learner_id=payload.learner_id, changed_by=caller.learner_id, dry_run=payload.dry_run)
    return [RepairOut(**vars(a)) for a in actions]

@router.get("", response_model=List[CohortSummaryOut], dependencies=[Depends(require_admin)])
def list_cohorts(db: Session = Depends(get_db)):
    return [CohortSummaryOut(**CohortOut.model_validate(s.cohort).model_dump(), member_count=s.member_count,
                             module_count=s.module_count, topic_count=s.topic_count)
            for s in cohorts.list_cohorts(db)]

@router.get("/{cohort_id}/members", response_model=List[MemberOut], dependencies=[Depends(require_admin)])
def list_members(cohort_id: int, status: Optional[Literal["ENROLLED", "GRADUATED", "REMOVED", "SUSPENDED"]] = None,
                 db: Session = Depends(get_db)):
    return [MemberOut(**MembershipOut.model_validate(m).model_dump(), email=m.learner.email, full_name=m.learner.full_name)
            for m in cohorts.list_members(db, cohort_id, status)]

@router.get("/{cohort_id}/leaderboard", response_model=List[LeaderboardOut])
def leaderboard(cohort_id: int, limit: int = 20, caller: Identity = Depends(current_identity), db: Session = Depends(get_db)):
    if not caller.is_admin:
        ctx = resolve_learner_context(db, caller.learner_id)
        if ctx.cohort_id != cohort_id:
            raise CrossCohortViolation(f"Leaderboard of cohort {cohort_id} is not visible to learners of cohort {ctx.cohort_id}")
    return [LeaderboardOut(**vars(e)) for e in cohorts.leaderboard(db, cohort_id, limit=min(max(limit, 1), 100))]

@router.get("/{cohort_id}/stats", response_model=StatsOut, dependencies=[Depends(require_admin)])
def stats(cohort_id: int, db: Session = Depends(get_db)):
    return cohorts.cohort_stats(db, cohort_id)
