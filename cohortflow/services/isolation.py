"""
Cohort isolation guard.

Every learner read or write is scoped by the cohort of the learner's current
ENROLLED membership. ``Learner.current_cohort_id`` is a cache and is never
used to decide access.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from sqlalchemy import select, func
from sqlalchemy.orm import Session
from cohortflow.core.config import settings
from cohortflow.core.errors import CrossCohortViolation, InvariantViolation, NotEnrolled, NotFound
from cohortflow.core.timeutil import utcnow
from cohortflow.models.orm import Cohort, CohortMembership, Learner, MembershipStatus
from cohortflow.services.cascade import cohort_id_of

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class CohortContext:
    cohort_id: int
    learner_id: Optional[str] = None
    membership: Optional[CohortMembership] = None
    is_admin: bool = False

@dataclass
class RepairAction:
    learner_id: str
    kept_membership_id: int
    kept_cohort_id: int
    demoted_membership_ids: List[int]

def _newest_first(memberships: List[CohortMembership]) -> List[CohortMembership]:
    return sorted(memberships, key=lambda m: (m.joined_at, m.id), reverse=True)

def enrolled_memberships(db: Session, learner_id: str, cohort_id: Optional[int] = None) -> List[CohortMembership]:
    stmt = select(CohortMembership).where(
        CohortMembership.learner_id == learner_id,
        CohortMembership.status == MembershipStatus.ENROLLED.value,
    )
    if cohort_id is not None:
        stmt = stmt.where(CohortMembership.cohort_id == cohort_id)
    return _newest_first(list(db.scalars(stmt).all()))

def current_membership(db: Session, learner_id: str) -> Optional[CohortMembership]:
    rows = enrolled_memberships(db, learner_id)
    if len(rows) > 1:
        logger.warning("Learner %s has %d enrolled memberships; using cohort %s", learner_id, len(rows), rows[0].cohort_id)
    return rows[0] if rows else None

def resolve_learner_context(db: Session, learner_id: str) -> CohortContext:
    m = current_membership(db, learner_id)
    if m is None:
        raise NotEnrolled(f"Learner {learner_id} is not enrolled in any cohort")
    return CohortContext(cohort_id=m.cohort_id, learner_id=learner_id, membership=m)

def admin_context(db: Session, cohort_id: int, admin_id: Optional[str] = None) -> CohortContext:
    if db.get(Cohort, cohort_id) is None:
        raise NotFound(f"Cohort {cohort_id} not found")
    return CohortContext(cohort_id=cohort_id, learner_id=admin_id, is_admin=True)

def ensure_same_cohort(ctx: CohortContext, entity) -> None:
    target = cohort_id_of(entity)
    if target != ctx.cohort_id:
        raise CrossCohortViolation(
            f"{type(entity).__name__} {entity.id} belongs to cohort {target}, not {ctx.cohort_id}",
            entity=type(entity).__name__, entity_id=entity.id,
        )

def get_scoped(db: Session, ctx: CohortContext, model, entity_id):
    """Point lookup that refuses entities from another cohort."""
    entity = db.get(model, entity_id)
    if entity is None:
        raise NotFound(f"{model.__name__} {entity_id} not found")
    ensure_same_cohort(ctx, entity)
    return entity

def assert_single_enrollment(db: Session, learner_id: str) -> None:
    rows = enrolled_memberships(db, learner_id)
    if len(rows) > 1:
        raise InvariantViolation(
            f"Learner {learner_id} has {len(rows)} enrolled memberships",
            learner_id=learner_id, membership_ids=[m.id for m in rows],
        )

def learners_with_duplicate_enrollments(db: Session) -> List[str]:
    stmt = (
        select(CohortMembership.learner_id)
        .where(CohortMembership.status == MembershipStatus.ENROLLED.value)
        .group_by(CohortMembership.learner_id)
        .having(func.count(CohortMembership.id) > 1)
        .order_by(CohortMembership.learner_id)
    )
    return list(db.scalars(stmt).all())

def repair_duplicate_enrollments(db: Session, learner_id: Optional[str] = None, demote_to: Optional[str] = None,
                                 changed_by: str = "enrollment-repair", dry_run: bool = False) -> List[RepairAction]:
    """Keep the most recently joined enrolled membership per learner, demote the rest.

    All rows of one learner are changed in a single commit so two memberships
    are never left enrolled side by side.
    """
    demote_to = MembershipStatus(demote_to or settings.ENROLLMENT_REPAIR_DEMOTE_TO).value
    learner_ids = [learner_id] if learner_id else learners_with_duplicate_enrollments(db)
    actions: List[RepairAction] = []
    for lid in learner_ids:
        try:
            assert_single_enrollment(db, lid)
            continue
        except InvariantViolation as e:
            logger.warning("Repairing: %s", e.message)
        keep, *rest = enrolled_memberships(db, lid)
        action = RepairAction(lid, keep.id, keep.cohort_id, [m.id for m in rest])
        actions.append(action)
        if dry_run:
            continue
        try:
            now = utcnow()
            for m in rest:
                m.status = demote_to
                m.status_changed_at = now
                m.status_changed_by = changed_by
                logger.info("Demoted membership %s (learner %s, cohort %s) to %s", m.id, lid, m.cohort_id, demote_to)
            learner = db.get(Learner, lid)
            if learner is not None:
                learner.current_cohort_id = keep.cohort_id
            db.commit()
        except Exception:
            db.rollback()
            raise
    return actions

def memberships_by_learner(db: Session, cohort_id: int) -> Dict[str, CohortMembership]:
    rows = db.scalars(select(CohortMembership).where(
        CohortMembership.cohort_id == cohort_id,
        CohortMembership.status == MembershipStatus.ENROLLED.value,
    )).all()
    return {m.learner_id: m for m in rows}
