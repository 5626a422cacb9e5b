from datetime import datetime
from typing import List, Optional
import enum
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from cohortflow.core.database import Base
from cohortflow.core.timeutil import utcnow

class MembershipStatus(str, enum.Enum):
    ENROLLED = "ENROLLED"
    GRADUATED = "GRADUATED"
    REMOVED = "REMOVED"
    SUSPENDED = "SUSPENDED"

class AnswerStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    NEEDS_RESUBMISSION = "NEEDS_RESUBMISSION"

class TopicStatus(str, enum.Enum):
    AVAILABLE = "available"
    MINI_QUESTIONS_REQUIRED = "mini_questions_required"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    LOCKED = "locked"

class ReleaseStateMixin:
    """Release flag, scheduled release time and actual release time.

    These three fields are what the scheduler and the cascade validator work
    on; manual and timed release both go through them.
    """
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_released: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    scheduled_release_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

class Cohort(Base):
    __tablename__ = "cohorts"
    __table_args__ = (UniqueConstraint("cohort_number", "name", name="uq_cohort_number_name"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cohort_number: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    modules: Mapped[List["Module"]] = relationship(back_populates="cohort", order_by="Module.module_number")
    topics: Mapped[List["Topic"]] = relationship(back_populates="cohort", order_by="Topic.topic_number")

class Learner(Base):
    __tablename__ = "learners"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    full_name: Mapped[str] = mapped_column(String)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    # cache of the enrolled cohort; memberships are the source of truth
    current_cohort_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("cohorts.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    memberships: Mapped[List["CohortMembership"]] = relationship(back_populates="learner")

class CohortMembership(Base):
    __tablename__ = "cohort_memberships"
    __table_args__ = (
        UniqueConstraint("learner_id", "cohort_id", name="uq_membership_learner_cohort"),
        Index("idx_membership_status", "learner_id", "status"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    learner_id: Mapped[str] = mapped_column(String, ForeignKey("learners.id", ondelete="CASCADE"))
    cohort_id: Mapped[int] = mapped_column(Integer, ForeignKey("cohorts.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(String, default=MembershipStatus.ENROLLED.value)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    status_changed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    learner: Mapped["Learner"] = relationship(back_populates="memberships")
    cohort: Mapped["Cohort"] = relationship()

class Module(ReleaseStateMixin, Base):
    __tablename__ = "modules"
    __table_args__ = (UniqueConstraint("cohort_id", "module_number", name="uq_module_number_cohort"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cohort_id: Mapped[int] = mapped_column(Integer, ForeignKey("cohorts.id", ondelete="CASCADE"))
    module_number: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")

    cohort: Mapped["Cohort"] = relationship(back_populates="modules")
    topics: Mapped[List["Topic"]] = relationship(back_populates="module", order_by="Topic.topic_number")

class Topic(ReleaseStateMixin, Base):
    __tablename__ = "topics"
    __table_args__ = (UniqueConstraint("cohort_id", "topic_number", name="uq_topic_number_cohort"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cohort_id: Mapped[int] = mapped_column(Integer, ForeignKey("cohorts.id", ondelete="CASCADE"))
    module_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("modules.id", ondelete="SET NULL"), nullable=True)
    topic_number: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    points: Mapped[int] = mapped_column(Integer, default=100)
    bonus_points: Mapped[int] = mapped_column(Integer, default=50)

    cohort: Mapped["Cohort"] = relationship(back_populates="topics")
    module: Mapped[Optional["Module"]] = relationship(back_populates="topics")
    sections: Mapped[List["ContentSection"]] = relationship(back_populates="topic", order_by="ContentSection.order_index", cascade="all, delete-orphan")

class ContentSection(Base):
    __tablename__ = "content_sections"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String)
    material: Mapped[str] = mapped_column(Text, default="")
    order_index: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    topic: Mapped["Topic"] = relationship(back_populates="sections")
    mini_questions: Mapped[List["MiniQuestion"]] = relationship(back_populates="section", order_by="MiniQuestion.order_index", cascade="all, delete-orphan")

class MiniQuestion(ReleaseStateMixin, Base):
    __tablename__ = "mini_questions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    section_id: Mapped[int] = mapped_column(Integer, ForeignKey("content_sections.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String)
    prompt: Mapped[str] = mapped_column(Text)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=0)

    section: Mapped["ContentSection"] = relationship(back_populates="mini_questions")

class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (
        UniqueConstraint("learner_id", "topic_id", "cohort_id", name="uq_answer_learner_topic_cohort"),
        Index("idx_answers_cohort_status", "cohort_id", "status"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    learner_id: Mapped[str] = mapped_column(String, ForeignKey("learners.id", ondelete="CASCADE"))
    topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id", ondelete="CASCADE"))
    cohort_id: Mapped[int] = mapped_column(Integer, ForeignKey("cohorts.id", ondelete="CASCADE"))
    content: Mapped[str] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=AnswerStatus.PENDING.value)
    grade: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    points_awarded: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resubmission_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    resubmission_approved: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    resubmission_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resubmission_requested_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    attachment_file_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    attachment_file_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    attachment_file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    attachment_mime_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    learner: Mapped["Learner"] = relationship()
    topic: Mapped["Topic"] = relationship()

class MiniAnswer(Base):
    __tablename__ = "mini_answers"
    __table_args__ = (UniqueConstraint("learner_id", "mini_question_id", "cohort_id", name="uq_mini_answer_learner_mq_cohort"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    learner_id: Mapped[str] = mapped_column(String, ForeignKey("learners.id", ondelete="CASCADE"))
    mini_question_id: Mapped[int] = mapped_column(Integer, ForeignKey("mini_questions.id", ondelete="CASCADE"))
    cohort_id: Mapped[int] = mapped_column(Integer, ForeignKey("cohorts.id", ondelete="CASCADE"))
    link_url: Mapped[str] = mapped_column(String)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resubmission_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    resubmission_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resubmission_requested_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    learner: Mapped["Learner"] = relationship()
    mini_question: Mapped["MiniQuestion"] = relationship()
