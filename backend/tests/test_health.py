from coursebot.core.config import settings


class _FakeJob:
    def __init__(self, job_id: str):
        self.id = job_id


class _FakeQueue:
    def __init__(self):
        self.calls = []

    def enqueue(self, func, *args, **kwargs):
        self.calls.append((func, args, kwargs))
        return _FakeJob(f"job-{len(self.calls)}")


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_health_live(client):
    r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json().get("status") == "live"


def test_health_ready_checks_db_and_redis(client):
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json().get("status") == "ready"


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "rid-123"})
    assert r.headers["X-Request-ID"] == "rid-123"


def test_cron_endpoint_hidden_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)
    r = client.post("/health/cron/notifications")
    assert r.status_code == 404
    assert r.json()["error_code"] == "not_found"


def test_cron_enqueues_one_sweep_per_interval(client, monkeypatch):
    import coursebot.routers.health as health_router
    from coursebot.services.notifications import notification_sweep_job

    queue = _FakeQueue()
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    monkeypatch.setattr(health_router, "get_queue", lambda name=None: queue)

    r = client.post("/health/cron/notifications", headers={"x-cron-secret": "wrong"})
    assert r.status_code == 403

    r = client.post("/health/cron/notifications", headers={"x-cron-secret": "s3cret"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "enqueued": True, "job_id": "job-1"}
    assert queue.calls[0][0] is notification_sweep_job

    r = client.post("/health/cron/notifications", headers={"x-cron-secret": "s3cret"})
    assert r.status_code == 200
    assert r.json()["enqueued"] is False
    assert len(queue.calls) == 1
