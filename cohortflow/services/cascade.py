"""
Hierarchical visibility rules.

A learner can see a piece of content only when the content itself and every
ancestor up to its cohort are open. Storage flags are only an intent; the
answer to "can a learner see this" is always recomputed here on read.
"""
import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from cohortflow.core.errors import InvalidTransition
from cohortflow.core.timeutil import utcnow, as_naive_utc
from cohortflow.models.orm import Cohort, ContentSection, MiniQuestion, Module, ReleaseStateMixin, Topic, Answer, MiniAnswer

logger = logging.getLogger(__name__)

def ancestor_chain(entity) -> List:
    """Parents of ``entity`` from the nearest one up to its cohort."""
    if isinstance(entity, MiniQuestion):
        return [entity.section] + ancestor_chain(entity.section)
    if isinstance(entity, ContentSection):
        return [entity.topic] + ancestor_chain(entity.topic)
    if isinstance(entity, Topic):
        chain = [entity.module] if entity.module is not None else []
        return chain + [entity.cohort]
    if isinstance(entity, Module):
        return [entity.cohort]
    if isinstance(entity, Cohort):
        return []
    raise TypeError(f"No release hierarchy for {type(entity).__name__}")

def is_open(entity) -> bool:
    if isinstance(entity, ReleaseStateMixin):
        return bool(entity.is_active and entity.is_released)
    return bool(entity.is_active)

def is_effectively_visible(entity, ancestors: Optional[List] = None) -> bool:
    if not is_open(entity):
        return False
    chain = ancestors if ancestors is not None else ancestor_chain(entity)
    return all(is_open(a) for a in chain)

def cohort_id_of(entity) -> int:
    if isinstance(entity, Cohort):
        return entity.id
    if isinstance(entity, (Module, Topic, Answer, MiniAnswer)):
        return entity.cohort_id
    if isinstance(entity, ContentSection):
        return entity.topic.cohort_id
    if isinstance(entity, MiniQuestion):
        return entity.section.topic.cohort_id
    raise TypeError(f"{type(entity).__name__} has no cohort")

def _descendants(entity) -> List[ReleaseStateMixin]:
    if isinstance(entity, Module):
        out = []
        for t in entity.topics:
            out.append(t); out.extend(_descendants(t))
        return out
    if isinstance(entity, Topic):
        return [mq for s in entity.sections for mq in s.mini_questions]
    return []

def release_entity(db: Session, entity: ReleaseStateMixin, now: Optional[datetime] = None) -> ReleaseStateMixin:
    """Manual release by an administrator.

    Descendants are left alone: mini-questions with a due schedule are picked up
    by the next scheduler tick, which is also what notifies learners.
    """
    blocked = [a for a in ancestor_chain(entity) if not is_open(a)]
    if blocked:
        raise InvalidTransition(f"Cannot release {type(entity).__name__} {entity.id}: parent {type(blocked[0]).__name__} {blocked[0].id} is not released")
    if not entity.is_released:
        entity.is_released = True
        entity.released_at = now or utcnow()
        db.commit()
        logger.info("Manually released %s %s", type(entity).__name__, entity.id)
    return entity

def cascade_unrelease(db: Session, entity: ReleaseStateMixin, clear_descendants: bool = False) -> List[ReleaseStateMixin]:
    """Unrelease ``entity``; descendants lose visibility through the cascade check.

    Storage flags of descendants are only cleared when ``clear_descendants`` is
    set. A retracted entity also loses its schedule, otherwise the next tick
    would release it again. Returns every entity whose flag was changed.
    """
    changed = []
    entity.scheduled_release_at = None
    targets = [entity] + (_descendants(entity) if clear_descendants else [])
    for e in targets:
        if e.is_released:
            e.is_released = False
            e.released_at = None
            e.scheduled_release_at = None
            changed.append(e)
    db.commit()
    logger.info("Unreleased %s %s (%d flag(s) cleared)", type(entity).__name__, entity.id, len(changed))
    return changed

def schedule_release(db: Session, entity: ReleaseStateMixin, when: Optional[datetime]) -> ReleaseStateMixin:
    entity.scheduled_release_at = as_naive_utc(when)
    db.commit()
    return entity
