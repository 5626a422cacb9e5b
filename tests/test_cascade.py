import pytest

from cohortflow.core.errors import InvalidTransition
from cohortflow.services.cascade import (ancestor_chain, cascade_unrelease, cohort_id_of, is_effectively_visible,
                                         release_entity, schedule_release)
from conftest import NOW, hours


def test_ancestor_chain_runs_up_to_cohort(make):
    cohort = make.cohort()
    module = make.module(cohort)
    topic = make.topic(cohort, module=module)
    section = make.section(topic)
    mq = make.mini(section)
    assert ancestor_chain(mq) == [section, topic, module, cohort]
    assert cohort_id_of(mq) == cohort.id


def test_moduleless_topic_chain_skips_module(make):
    cohort = make.cohort()
    topic = make.topic(cohort)
    assert ancestor_chain(topic) == [cohort]


def test_released_child_hidden_under_unreleased_module(make, db):
    cohort = make.cohort()
    module = make.module(cohort)
    topic = make.topic(cohort, module=module)
    mq = make.mini(make.section(topic))
    assert is_effectively_visible(mq)

    cascade_unrelease(db, module)

    # leaf flags are untouched but visibility follows the ancestors
    assert mq.is_released and topic.is_released
    assert not is_effectively_visible(topic)
    assert not is_effectively_visible(mq)


def test_inactive_cohort_or_section_hides_content(make, db):
    cohort = make.cohort()
    topic = make.topic(cohort)
    section = make.section(topic)
    mq = make.mini(section)
    section.is_active = False
    db.commit()
    assert is_effectively_visible(topic)
    assert not is_effectively_visible(mq)
    cohort.is_active = False
    db.commit()
    assert not is_effectively_visible(topic)


def test_cascade_unrelease_can_clear_descendant_flags(make, db):
    cohort = make.cohort()
    module = make.module(cohort)
    topic = make.topic(cohort, module=module)
    mq = make.mini(make.section(topic))

    changed = cascade_unrelease(db, module, clear_descendants=True)

    assert set(changed) == {module, topic, mq}
    assert mq.released_at is None and not mq.is_released


def test_release_rejected_under_unreleased_parent(make, db):
    cohort = make.cohort()
    module = make.module(cohort, released=False)
    topic = make.topic(cohort, module=module, released=False)
    with pytest.raises(InvalidTransition):
        release_entity(db, topic)
    assert not topic.is_released

    release_entity(db, module, now=NOW)
    release_entity(db, topic, now=NOW + hours(1))
    assert topic.is_released and topic.released_at == NOW + hours(1)


def test_release_does_not_touch_children(make, db):
    cohort = make.cohort()
    topic = make.topic(cohort, released=False)
    mq = make.mini(make.section(topic), released=False, scheduled=NOW)
    release_entity(db, topic, now=NOW)
    assert not mq.is_released


def test_schedule_release_sets_and_clears(make, db):
    cohort = make.cohort()
    topic = make.topic(cohort, released=False)
    schedule_release(db, topic, NOW + hours(2))
    assert topic.scheduled_release_at == NOW + hours(2)
    schedule_release(db, topic, None)
    assert topic.scheduled_release_at is None
