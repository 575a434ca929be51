import csv
import io
import json
from datetime import datetime

from sqlalchemy import func, select

from coursebot.models.progress import CoursePhase, CourseProgress
from coursebot.models.quiz import Test
from coursebot.models.result import Grade, TestResult


class _FakeJob:
    def __init__(self, job_id: str):
        self.id = job_id


class _FakeQueue:
    def __init__(self):
        self.calls = []

    def enqueue(self, func, *args, **kwargs):
        self.calls.append((func, args, kwargs))
        return _FakeJob("job-1")


def _create_course(client, headers, title="Основы безопасности", **extra) -> str:
    r = client.post("/admin/courses", json={"title": title, **extra}, headers=headers)
    assert r.status_code == 200
    return r.json()["id"]


def _create_lesson(client, headers, course_id, title, **extra) -> str:
    body = {
        "course_id": course_id,
        "title": title,
        "media_type": "photo",
        "media_url": "https://example.com/p.jpg",
        **extra,
    }
    r = client.post("/admin/lessons", json=body, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()["id"]


def test_admin_requires_token(client):
    r = client.get("/admin/stats")
    assert r.status_code == 401
    body = r.json()
    assert body["ok"] is False
    assert body["error_code"] == "unauthorized"


def test_login_and_me(client, auth_headers):
    r = client.get("/auth/me", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["login"].startswith("op_")

    r = client.post(
        "/auth/token",
        data={"username": "nobody", "password": "wrong-pass"},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 401


def test_course_lesson_and_test_authoring(client, auth_headers):
    course_id = _create_course(client, auth_headers)
    first = _create_lesson(client, auth_headers, course_id, "Введение")
    second = _create_lesson(
        client,
        auth_headers,
        course_id,
        "Пожарная безопасность",
        media_type="video",
        button_text="🚒 Эвакуация",
        button_url="https://example.com/evacuation",
    )

    r = client.get(f"/admin/courses/{course_id}/lessons", headers=auth_headers)
    assert r.status_code == 200
    lessons = r.json()
    assert [(lesson["id"], lesson["order_index"]) for lesson in lessons] == [(first, 0), (second, 1)]

    r = client.get(f"/admin/courses/{course_id}", headers=auth_headers)
    assert r.json()["lessons_count"] == 2

    bad = {
        "lesson_id": second,
        "title": "Тест",
        "questions": [{"question_text": "Номер пожарной службы?", "options": ["101", "102"], "correct_option": 2}],
    }
    r = client.put("/admin/tests", json=bad, headers=auth_headers)
    assert r.status_code == 400

    bad["questions"][0].update(options=["101"], correct_option=0)
    r = client.put("/admin/tests", json=bad, headers=auth_headers)
    assert r.status_code == 400

    body = {
        "lesson_id": second,
        "title": "Тест по пожарной безопасности",
        "questions": [
            {"question_text": "Номер пожарной службы?", "options": ["101", "102", "103"], "correct_option": 0},
            {"question_text": "Можно ли пользоваться лифтом?", "options": ["Да", "Нет"], "correct_option": 1},
        ],
    }
    r = client.put("/admin/tests", json=body, headers=auth_headers)
    assert r.status_code == 200
    test = r.json()
    assert [q["order_index"] for q in test["questions"]] == [0, 1]

    body["questions"] = body["questions"][1:]
    r = client.put("/admin/tests", json=body, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["id"] == test["id"]
    assert len(r.json()["questions"]) == 1

    r = client.get(f"/admin/lessons/{second}/test", headers=auth_headers)
    assert r.json()["title"] == "Тест по пожарной безопасности"

    r = client.get("/admin/tests", headers=auth_headers)
    assert [(t["id"], t["questions_count"]) for t in r.json()] == [(test["id"], 1)]

    r = client.get(f"/admin/lessons/{first}", headers=auth_headers)
    assert r.json()["test_id"] is None

    r = client.delete(f"/admin/tests/{test['id']}", headers=auth_headers)
    assert r.status_code == 200
    r = client.get(f"/admin/lessons/{second}/test", headers=auth_headers)
    assert r.status_code == 404


def test_lesson_validation(client, auth_headers):
    course_id = _create_course(client, auth_headers)
    lesson_id = _create_lesson(client, auth_headers, course_id, "Урок", order_index=5)

    r = client.post(
        "/admin/lessons",
        json={
            "course_id": course_id,
            "title": "Дубликат",
            "order_index": 5,
            "media_type": "photo",
            "media_url": "https://example.com/x.jpg",
        },
        headers=auth_headers,
    )
    assert r.status_code == 409

    r = client.patch(f"/admin/lessons/{lesson_id}", json={"button_text": "Только текст"}, headers=auth_headers)
    assert r.status_code == 400

    r = client.patch(f"/admin/lessons/{lesson_id}", json={"caption": "Новое описание"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["caption"] == "Новое описание"

    r = client.get("/admin/lessons/not-a-uuid", headers=auth_headers)
    assert r.status_code == 400


def test_course_toggle_and_delete(client, auth_headers, db):
    course_id = _create_course(client, auth_headers)
    lesson_id = _create_lesson(client, auth_headers, course_id, "Урок")
    client.put(
        "/admin/tests",
        json={
            "lesson_id": lesson_id,
            "title": "Тест",
            "questions": [{"question_text": "?", "options": ["a", "b"], "correct_option": 0}],
        },
        headers=auth_headers,
    )
    r = client.post(
        "/admin/notifications",
        json={
            "course_id": course_id,
            "phase": "watching_lesson",
            "media_type": "photo",
            "media_url": "https://example.com/n.jpg",
            "caption": "Напоминание",
        },
        headers=auth_headers,
    )
    assert r.status_code == 200

    r = client.post(f"/admin/courses/{course_id}/toggle", headers=auth_headers)
    assert r.json()["is_active"] is False

    r = client.delete(f"/admin/courses/{course_id}", headers=auth_headers)
    assert r.status_code == 200
    r = client.get(f"/admin/courses/{course_id}", headers=auth_headers)
    assert r.status_code == 404
    assert client.get("/admin/tests", headers=auth_headers).json() == []
    assert client.get("/admin/notifications", headers=auth_headers).json() == []


def test_users_list_detail_export_and_delete(client, auth_headers, db, make_course, make_learner):
    course = make_course([[(["a", "b"], 0)]])
    done = make_learner("100", first_name="Анна", phone_number="+70000000001")
    busy = make_learner("200", first_name="Борис")
    make_learner("300", first_name="Вера")
    db.add(
        CourseProgress(
            user_id=done.id,
            course_id=course.id,
            phase=CoursePhase.completed,
            current_lesson_index=0,
            completed_at=datetime.utcnow(),
        )
    )
    db.add(CourseProgress(user_id=busy.id, course_id=course.id, phase=CoursePhase.taking_test, current_lesson_index=0))
    db.commit()

    r = client.get("/admin/users", params={"page_size": 2}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["total"] == 3
    assert len(r.json()["items"]) == 2

    r = client.get("/admin/users", params={"status": "completed"}, headers=auth_headers)
    assert [u["telegram_id"] for u in r.json()["items"]] == ["100"]
    r = client.get("/admin/users", params={"status": "in_progress"}, headers=auth_headers)
    assert [u["telegram_id"] for u in r.json()["items"]] == ["200"]
    r = client.get("/admin/users", params={"status": "not_started"}, headers=auth_headers)
    assert [u["telegram_id"] for u in r.json()["items"]] == ["300"]
    r = client.get("/admin/users", params={"q": "Бор"}, headers=auth_headers)
    assert [u["telegram_id"] for u in r.json()["items"]] == ["200"]
    r = client.get("/admin/users", params={"status": "weird"}, headers=auth_headers)
    assert r.status_code == 400

    r = client.get("/admin/users/export", params={"format": "csv"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(r.text)))
    assert [(row["telegram_id"], row["status"]) for row in rows] == [
        ("100", "completed"),
        ("200", "in_progress"),
        ("300", "not_started"),
    ]

    r = client.get("/admin/users/export", params={"format": "json", "status": "completed"}, headers=auth_headers)
    assert [u["phone_number"] for u in json.loads(r.text)] == ["+70000000001"]

    r = client.get("/admin/users/export", params={"format": "xml"}, headers=auth_headers)
    assert r.status_code == 400

    db.add(TestResult(user_id=busy.id, test_id=db.scalar(select(Test.id)), score=50, grade=Grade.F, answers=[]))
    db.commit()

    r = client.get(f"/admin/users/{busy.id}", headers=auth_headers)
    assert r.status_code == 200
    detail = r.json()
    assert detail["user"]["status"] == "in_progress"
    assert detail["progress"][0]["phase"] == "taking_test"
    assert [(x["score"], x["grade"]) for x in detail["results"]] == [(50, "F")]

    r = client.get("/admin/stats", headers=auth_headers)
    stats = r.json()
    assert (stats["users_total"], stats["users_with_phone"]) == (3, 1)
    assert (stats["enrolled"], stats["completed"], stats["in_progress"]) == (2, 1, 1)
    assert stats["average_score"] == 50.0

    r = client.delete(f"/admin/users/{busy.id}", headers=auth_headers)
    assert r.status_code == 200
    assert db.scalar(select(func.count(TestResult.id))) == 0
    assert client.get(f"/admin/users/{busy.id}", headers=auth_headers).status_code == 404


def test_chat_admins(client, auth_headers):
    r = client.post("/admin/admins", json={"telegram_id": " 513950472 "}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["telegram_id"] == "513950472"

    r = client.post("/admin/admins", json={"telegram_id": "513950472"}, headers=auth_headers)
    assert r.status_code == 200

    r = client.get("/admin/admins", headers=auth_headers)
    assert [a["telegram_id"] for a in r.json()] == ["513950472"]

    assert client.delete("/admin/admins/513950472", headers=auth_headers).status_code == 200
    assert client.delete("/admin/admins/513950472", headers=auth_headers).status_code == 404


def test_notifications_crud(client, auth_headers):
    course_id = _create_course(client, auth_headers)
    r = client.post(
        "/admin/notifications",
        json={
            "course_id": course_id,
            "phase": "taking_test",
            "media_type": "video",
            "media_url": "https://example.com/n.mp4",
            "caption": "Не забудьте пройти тест!",
            "button_text": "Пройти тест",
            "button_url": "https://t.me/course_bot",
        },
        headers=auth_headers,
    )
    assert r.status_code == 200
    nid = r.json()["id"]

    r = client.patch(f"/admin/notifications/{nid}", json={"caption": "Тест ждет"}, headers=auth_headers)
    assert r.json()["caption"] == "Тест ждет"

    r = client.post(f"/admin/notifications/{nid}/toggle", headers=auth_headers)
    assert r.json()["is_active"] is False

    r = client.get("/admin/notifications", params={"course_id": course_id}, headers=auth_headers)
    assert [n["id"] for n in r.json()] == [nid]

    assert client.delete(f"/admin/notifications/{nid}", headers=auth_headers).status_code == 200
    assert client.get(f"/admin/notifications/{nid}", headers=auth_headers).status_code == 404


def test_broadcast_enqueues_job(client, auth_headers, monkeypatch):
    import coursebot.routers.admin as admin_router
    from coursebot.services.notifications import broadcast_job

    queue = _FakeQueue()
    monkeypatch.setattr(admin_router, "get_queue", lambda name=None: queue)

    r = client.post("/admin/broadcast", json={"message": "   "}, headers=auth_headers)
    assert r.status_code == 400

    r = client.post("/admin/broadcast", json={"message": "Привет", "media_type": "photo"}, headers=auth_headers)
    assert r.status_code == 400

    r = client.post(
        "/admin/broadcast",
        json={"message": "Привет", "media_type": "photo", "media_url": "https://example.com/p.jpg"},
        headers=auth_headers,
    )
    assert r.status_code == 200
    assert r.json() == {"ok": True, "job_id": "job-1"}
    fn, _, kwargs = queue.calls[0]
    assert fn is broadcast_job
    assert kwargs["media_type"] == "photo"
    assert kwargs["message"] == "Привет"


def test_missing_job_status(client, auth_headers, monkeypatch):
    import coursebot.routers.admin as admin_router

    monkeypatch.setattr(admin_router, "fetch_job", lambda job_id: None)
    r = client.get("/admin/jobs/abc", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "missing"
