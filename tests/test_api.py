from datetime import datetime

from conftest import auth

ADMIN = auth("root", "admin")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_progress_requires_token(client):
    assert client.get("/v1/learner/progress").status_code in (401, 403)


def test_unenrolled_progress_is_empty(client, make):
    make.learner("cy")
    r = client.get("/v1/learner/progress", headers=auth("cy"))
    assert r.status_code == 200
    assert r.json()["topics"] == []
    assert r.json()["summary"]["total"] == 0


def test_learner_flow(client, course):
    ada = auth("ada")
    r = client.get("/v1/learner/progress", headers=ada)
    assert r.status_code == 200
    body = r.json()
    assert body["cohort_id"] == course["cohort"].id
    assert body["topics"][0]["status"] == "mini_questions_required"

    r = client.post("/v1/learner/answers", headers=ada, json={"topic_id": course["topic"].id, "content": "early"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "content_not_available"

    for mq in course["minis"]:
        r = client.post("/v1/learner/mini-answers", headers=ada,
                        json={"mini_question_id": mq.id, "link_url": "https://notes.example"})
        assert r.status_code == 201

    r = client.post("/v1/learner/answers", headers=ada, json={"topic_id": course["topic"].id, "content": "done"})
    assert r.status_code == 201
    assert r.json()["status"] == "PENDING"

    r = client.post("/v1/learner/answers", headers=ada, json={"topic_id": course["topic"].id, "content": "again"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "stale_resubmission"


def test_admin_grading_and_resubmission(client, course, notifier):
    ada = auth("ada")
    cid = course["cohort"].id
    for mq in course["minis"]:
        client.post("/v1/learner/mini-answers", headers=ada, json={"mini_question_id": mq.id, "link_url": "x"})
    answer_id = client.post("/v1/learner/answers", headers=ada,
                            json={"topic_id": course["topic"].id, "content": "v1"}).json()["id"]

    pending = client.get(f"/v1/admin/cohorts/{cid}/answers/pending", headers=ADMIN).json()
    assert [a["id"] for a in pending] == [answer_id]

    r = client.post(f"/v1/admin/cohorts/{cid}/answers/{answer_id}/grade", headers=ADMIN,
                    json={"status": "NEEDS_RESUBMISSION", "feedback": "expand"})
    assert r.json()["status"] == "NEEDS_RESUBMISSION"
    r = client.post(f"/v1/admin/cohorts/{cid}/answers/{answer_id}/resubmission", headers=ADMIN, json={"approve": True})
    assert r.json()["resubmission_requested"] is True

    topic = client.get("/v1/learner/progress", headers=ada).json()["topics"][0]
    assert topic["status"] == "available" and topic["can_resubmit"]

    r = client.post("/v1/learner/answers", headers=ada, json={"topic_id": course["topic"].id, "content": "v2"})
    assert r.status_code == 201
    assert r.json()["status"] == "PENDING"
    assert notifier.templates() == ["answer_feedback", "answer_resubmission_requested"]


def test_learner_cannot_use_admin_routes(client, course):
    r = client.get(f"/v1/admin/cohorts/{course['cohort'].id}/answers/pending", headers=auth("ada"))
    assert r.status_code == 403


def test_cross_cohort_admin_action_rejected(client, course, make):
    other = make.cohort("Other")
    r = client.post(f"/v1/admin/cohorts/{other.id}/topics/{course['topic'].id}/unrelease", headers=ADMIN, json={})
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "cross_cohort_violation"


def test_release_endpoints_and_tick(client, make, notifier):
    cohort = make.cohort()
    topic = make.topic(cohort, released=False)
    mq = make.mini(make.section(topic), released=False)
    make.enroll(make.learner("ada"), cohort)
    base = f"/v1/admin/cohorts/{cohort.id}"

    r = client.post(f"{base}/mini-questions/{mq.id}/release", headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "invalid_transition"

    r = client.post(f"{base}/topics/{topic.id}/release", headers=ADMIN)
    assert r.status_code == 200 and r.json()["is_released"]

    r = client.post(f"{base}/mini-questions/{mq.id}/schedule", headers=ADMIN,
                    json={"scheduled_release_at": "2020-01-01T00:00:00"})
    assert r.json()["scheduled_release_at"].startswith("2020-01-01")

    r = client.post("/v1/admin/release/run", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["released_mini_questions"] == 1
    assert notifier.templates() == ["mini_question_released"]

    r = client.post("/v1/admin/release/run", headers=ADMIN)
    assert r.json()["released_mini_questions"] == 0


def test_authoring_and_cohort_admin(client, make, notifier):
    r = client.post("/v1/cohorts", headers=ADMIN, json={"cohort_number": 4, "name": "Winter"})
    assert r.status_code == 201
    cid = r.json()["id"]

    m = client.post(f"/v1/author/cohorts/{cid}/modules", headers=ADMIN, json={"module_number": 1, "title": "Basics"})
    t = client.post(f"/v1/author/cohorts/{cid}/topics", headers=ADMIN,
                    json={"topic_number": 1, "title": "Loops", "module_id": m.json()["module_id"]})
    s = client.post(f"/v1/author/cohorts/{cid}/topics/{t.json()['topic_id']}/sections", headers=ADMIN,
                    json={"title": "Reading"})
    q = client.post(f"/v1/author/cohorts/{cid}/sections/{s.json()['section_id']}/mini-questions", headers=ADMIN,
                    json={"title": "Recall", "prompt": "What is a loop?"})
    assert q.status_code == 201

    make.learner("ada")
    r = client.post(f"/v1/cohorts/{cid}/members", headers=ADMIN, json={"learner_id": "ada"})
    assert r.status_code == 201
    assert r.json()["status"] == "ENROLLED"
    assert notifier.templates() == ["user_assigned_to_cohort"]

    r = client.post(f"/v1/cohorts/{cid}/copy", headers=ADMIN, json={"name": "Winter", "cohort_number": 5})
    assert r.status_code == 201
    assert r.json()["is_active"] is False

    r = client.patch(f"/v1/cohorts/{cid}/members/ada", headers=ADMIN, json={"status": "GRADUATED"})
    assert r.json()["status"] == "GRADUATED"

    r = client.post("/v1/cohorts/repair-enrollments", headers=ADMIN, json={"dry_run": True})
    assert r.status_code == 200 and r.json() == []


def test_unknown_cohort_is_404(client):
    r = client.get("/v1/admin/cohorts/404/answers/pending", headers=ADMIN)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"


def test_content_edit_and_delete(client, course):
    cid = course["cohort"].id
    base = f"/v1/author/cohorts/{cid}"
    tid = course["topic"].id

    r = client.patch(f"{base}/topics/{tid}", headers=ADMIN, json={"title": "Loops, revised", "deadline": None})
    assert r.status_code == 200
    assert r.json()["title"] == "Loops, revised"

    r = client.patch(f"{base}/mini-questions/{course['minis'][0].id}", headers=ADMIN,
                     json={"scheduled_release_at": "2030-01-01T00:00:00"})
    assert r.json()["scheduled_release_at"].startswith("2030-01-01")

    client.post("/v1/learner/mini-answers", headers=auth("ada"),
                json={"mini_question_id": course["minis"][1].id, "link_url": "https://notes.example"})
    r = client.delete(f"{base}/sections/{course['section'].id}", headers=ADMIN)
    assert r.status_code == 409

    r = client.delete(f"{base}/mini-questions/{course['minis'][0].id}", headers=ADMIN)
    assert r.status_code == 204

    r = client.patch(f"{base}/topics/{tid}", headers=auth("ada"), json={"title": "mine now"})
    assert r.status_code == 403


def test_unrelease_via_api_survives_next_tick(client, make):
    cohort = make.cohort()
    topic = make.topic(cohort, released=False, scheduled=datetime(2020, 1, 1))
    client.post("/v1/admin/release/run", headers=ADMIN)

    r = client.post(f"/v1/admin/cohorts/{cohort.id}/topics/{topic.id}/unrelease", headers=ADMIN, json={})
    assert r.json()["is_released"] is False and r.json()["scheduled_release_at"] is None

    assert client.post("/v1/admin/release/run", headers=ADMIN).json()["released_topics"] == 0


def test_cohort_listing_members_and_stats(client, course, make):
    make.enroll(make.learner("bo"), course["cohort"], step=1)
    cid = course["cohort"].id

    listed = client.get("/v1/cohorts", headers=ADMIN).json()
    assert [(c["id"], c["member_count"], c["topic_count"]) for c in listed] == [(cid, 2, 1)]

    members = client.get(f"/v1/cohorts/{cid}/members", headers=ADMIN).json()
    assert sorted(m["email"] for m in members) == ["ada@example.com", "bo@example.com"]

    stats = client.get(f"/v1/cohorts/{cid}/stats", headers=ADMIN).json()
    assert stats["total_learners"] == 2 and stats["average_progress"] == 50.0

    assert client.get("/v1/cohorts", headers=auth("ada")).status_code == 403


def test_leaderboard_is_scoped_to_the_learners_cohort(client, course, make):
    make.enroll(make.learner("bo"), course["cohort"], step=2)
    other = make.cohort("Other")
    make.enroll(make.learner("cy"), other)

    r = client.get(f"/v1/cohorts/{course['cohort'].id}/leaderboard", headers=auth("ada"))
    assert r.status_code == 200
    assert [e["learner_id"] for e in r.json()] == ["bo", "ada"]

    r = client.get(f"/v1/cohorts/{course['cohort'].id}/leaderboard", headers=auth("cy"))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "cross_cohort_violation"
