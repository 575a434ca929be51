from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

from coursebot.core.config import settings
from coursebot.core.queue import get_queue
from coursebot.core.redis_client import get_redis
from coursebot.core.security import require_cron_secret
from coursebot.db import session as db_session
from coursebot.services.notifications import notification_sweep_job

router = APIRouter(tags=["health"])

SWEEP_LOCK_KEY = "locks:notification_sweep"


def sweep_lock_ttl() -> int:
    interval_seconds = max(60, int(settings.notification_check_interval_minutes) * 60)
    return max(30, interval_seconds - 5)


def enqueue_notification_sweep() -> dict:
    """Enqueue one sweep unless another was enqueued within the current interval."""
    r = get_redis()
    acquired = r.set(SWEEP_LOCK_KEY, "1", nx=True, ex=sweep_lock_ttl())
    if not acquired:
        return {"ok": True, "enqueued": False, "reason": "locked"}

    q = get_queue(str(settings.rq_queue_default))
    job = q.enqueue(
        notification_sweep_job,
        job_timeout=60 * 10,
        result_ttl=60 * 60,
        failure_ttl=60 * 60,
    )
    return {"ok": True, "enqueued": True, "job_id": str(job.id)}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/health/live")
def live():
    return {"status": "live"}


@router.get("/health/ready")
def ready():
    try:
        db = db_session.SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except Exception as e:
        raise HTTPException(status_code=503, detail="db not ready") from e

    try:
        r = get_redis()
        r.ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail="redis not ready") from e

    return {"status": "ready"}


@router.post("/health/cron/notifications")
def cron_notifications(request: Request):
    require_cron_secret(request)
    return enqueue_notification_sweep()
