from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from sqlalchemy.orm import Session
from cohortflow.core.database import get_db
from cohortflow.core.auth import require_admin
from cohortflow.services import cohorts

router = APIRouter()

class ModuleCreate(BaseModel):
    module_number: int = Field(ge=1)
    title: str
    description: str = ""
    scheduled_release_at: Optional[datetime] = None
    is_active: bool = True

class TopicCreate(BaseModel):
    topic_number: int = Field(ge=1)
    title: str
    module_id: Optional[int] = None
    content: str = ""
    description: str = ""
    deadline: Optional[datetime] = None
    points: int = 100
    bonus_points: int = 50
    scheduled_release_at: Optional[datetime] = None
    is_active: bool = True

class SectionCreate(BaseModel):
    title: str
    material: str = ""
    order_index: int = 0

class MiniQuestionCreate(BaseModel):
    title: str
    prompt: str
    description: Optional[str] = None
    resource_url: Optional[str] = None
    order_index: int = 0
    scheduled_release_at: Optional[datetime] = None

@router.post("/cohorts/{cohort_id}/modules", status_code=201, dependencies=[Depends(require_admin)])
def create_module(cohort_id: int, payload: ModuleCreate, db: Session = Depends(get_db)):
    m = cohorts.create_module(db, cohort_id, **payload.model_dump())
    return {"module_id": m.id, "cohort_id": m.cohort_id, "module_number": m.module_number}

@router.post("/cohorts/{cohort_id}/topics", status_code=201, dependencies=[Depends(require_admin)])
def create_topic(cohort_id: int, payload: TopicCreate, db: Session = Depends(get_db)):
    t = cohorts.create_topic(db, cohort_id, **payload.model_dump())
    return {"topic_id": t.id, "cohort_id": t.cohort_id, "module_id": t.module_id, "topic_number": t.topic_number}

@router.post("/cohorts/{cohort_id}/topics/{topic_id}/sections", status_code=201, dependencies=[Depends(require_admin)])
def create_section(cohort_id: int, topic_id: int, payload: SectionCreate, db: Session = Depends(get_db)):
    s = cohorts.create_section(db, cohort_id, topic_id, **payload.model_dump())
    return {"section_id": s.id, "topic_id": s.topic_id}

@router.post("/cohorts/{cohort_id}/sections/{section_id}/mini-questions", status_code=201, dependencies=[Depends(require_admin)])
def create_mini_question(cohort_id: int, section_id: int, payload: MiniQuestionCreate, db: Session = Depends(get_db)):
    mq = cohorts.create_mini_question(db, cohort_id, section_id, **payload.model_dump())
    return {"mini_question_id": mq.id, "section_id": mq.section_id}

class ModuleUpdate(BaseModel):
    module_number: Optional[int] = Field(default=None, ge=1)
    title: Optional[str] = None
    description: Optional[str] = None
    scheduled_release_at: Optional[datetime] = None
    is_active: Optional[bool] = None

class TopicUpdate(BaseModel):
    topic_number: Optional[int] = Field(default=None, ge=1)
    title: Optional[str] = None
    module_id: Optional[int] = None
    content: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    points: Optional[int] = None
    bonus_points: Optional[int] = None
    scheduled_release_at: Optional[datetime] = None
    is_active: Optional[bool] = None

class SectionUpdate(BaseModel):
    title: Optional[str] = None
    material: Optional[str] = None
    order_index: Optional[int] = None
    is_active: Optional[bool] = None

class MiniQuestionUpdate(BaseModel):
    title: Optional[str] = None
    prompt: Optional[str] = None
    description: Optional[str] = None
    resource_url: Optional[str] = None
    order_index: Optional[int] = None
    scheduled_release_at: Optional[datetime] = None
    is_active: Optional[bool] = None

def _edits(payload: BaseModel, nullable=("scheduled_release_at",)) -> dict:
    # omitted fields stay untouched; null only clears the nullable ones
    return {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None or k in nullable}

@router.patch("/cohorts/{cohort_id}/modules/{module_id}", dependencies=[Depends(require_admin)])
def update_module(cohort_id: int, module_id: int, payload: ModuleUpdate, db: Session = Depends(get_db)):
    m = cohorts.update_module(db, cohort_id, module_id, **_edits(payload))
    return {"module_id": m.id, "module_number": m.module_number, "title": m.title, "is_active": m.is_active,
            "scheduled_release_at": m.scheduled_release_at}

@router.delete("/cohorts/{cohort_id}/modules/{module_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_module(cohort_id: int, module_id: int, db: Session = Depends(get_db)):
    cohorts.delete_module(db, cohort_id, module_id)

@router.patch("/cohorts/{cohort_id}/topics/{topic_id}", dependencies=[Depends(require_admin)])
def update_topic(cohort_id: int, topic_id: int, payload: TopicUpdate, db: Session = Depends(get_db)):
    t = cohorts.update_topic(db, cohort_id, topic_id, **_edits(payload, ("module_id", "deadline", "scheduled_release_at")))
    return {"topic_id": t.id, "module_id": t.module_id, "topic_number": t.topic_number, "title": t.title,
            "is_active": t.is_active, "deadline": t.deadline, "scheduled_release_at": t.scheduled_release_at}

@router.delete("/cohorts/{cohort_id}/topics/{topic_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_topic(cohort_id: int, topic_id: int, db: Session = Depends(get_db)):
    cohorts.delete_topic(db, cohort_id, topic_id)

@router.patch("/cohorts/{cohort_id}/sections/{section_id}", dependencies=[Depends(require_admin)])
def update_section(cohort_id: int, section_id: int, payload: SectionUpdate, db: Session = Depends(get_db)):
    s = cohorts.update_section(db, cohort_id, section_id, **_edits(payload, ()))
    return {"section_id": s.id, "title": s.title, "order_index": s.order_index, "is_active": s.is_active}

@router.delete("/cohorts/{cohort_id}/sections/{section_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_section(cohort_id: int, section_id: int, db: Session = Depends(get_db)):
    cohorts.delete_section(db, cohort_id, section_id)

@router.patch("/cohorts/{cohort_id}/mini-questions/{mini_question_id}", dependencies=[Depends(require_admin)])
def update_mini_question(cohort_id: int, mini_question_id: int, payload: MiniQuestionUpdate, db: Session = Depends(get_db)):
    mq = cohorts.update_mini_question(db, cohort_id, mini_question_id,
                                      **_edits(payload, ("description", "resource_url", "scheduled_release_at")))
    return {"mini_question_id": mq.id, "title": mq.title, "order_index": mq.order_index, "is_active": mq.is_active,
            "scheduled_release_at": mq.scheduled_release_at}

@router.delete("/cohorts/{cohort_id}/mini-questions/{mini_question_id}", status_code=204, dependencies=[Depends(require_admin)])
def delete_mini_question(cohort_id: int, mini_question_id: int, db: Session = Depends(get_db)):
    cohorts.delete_mini_question(db, cohort_id, mini_question_id)
