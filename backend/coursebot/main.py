import json
import logging
import threading
import time
import uuid
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coursebot.core.config import settings
from coursebot.core.errors import (
    CourseBotError,
    InvalidStateTransition,
    NotFoundError,
    PersistenceError,
)
from coursebot.routers import admin, auth, health, telegram
from coursebot.routers.health import enqueue_notification_sweep


def _parse_csv(value: str) -> list[str]:
    return [x.strip() for x in str(value or "").split(",") if x.strip()]


def create_app() -> FastAPI:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = FastAPI(title="CourseBot API", version="1.0.0")

    logger = logging.getLogger("coursebot")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    allow_origins = _parse_csv(settings.cors_allow_origins)
    if "*" in allow_origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not include '*' when allow_credentials=true")

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        status_code: int | None = None
        try:
            response = await call_next(request)
            status_code = int(getattr(response, "status_code", 0) or 0)
        except Exception:
            status_code = 500
            raise
        finally:
            dur_ms = int((time.perf_counter() - t0) * 1000)
            path = request.url.path
            if not (path.startswith("/health") or path.startswith("/admin/jobs/")):
                logger.info(
                    json.dumps(
                        {
                            "ts": datetime.utcnow().isoformat(),
                            "rid": rid,
                            "user_id": getattr(request.state, "user_id", None),
                            "method": request.method,
                            "path": path,
                            "status": status_code,
                            "duration_ms": dur_ms,
                        },
                        ensure_ascii=False,
                    )
                )
        response.headers["X-Request-ID"] = rid
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    def _request_id(request: Request) -> str | None:
        rid = str(getattr(request.state, "request_id", None) or "").strip()
        return rid or None

    def _error(request: Request, status_code: int, error_code: str, error_message: str, headers=None) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={
                "ok": False,
                "error_code": error_code,
                "error_message": error_message,
                "request_id": _request_id(request),
            },
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = int(exc.status_code)
        error_code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 409: "conflict", 429: "rate_limited"}.get(
            code, "http_error"
        )
        return _error(request, code, error_code, str(exc.detail or "request failed"), getattr(exc, "headers", None))

    @app.exception_handler(CourseBotError)
    async def domain_exception_handler(request: Request, exc: CourseBotError):
        if isinstance(exc, NotFoundError):
            return _error(request, 404, "not_found", str(exc))
        if isinstance(exc, InvalidStateTransition):
            return _error(request, 409, "invalid_state", str(exc))
        if isinstance(exc, PersistenceError):
            logger.exception("persistence failure", extra={"rid": _request_id(request)})
            return _error(request, 503, "persistence_error", "storage unavailable")
        return _error(request, 400, "domain_error", str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled exception", extra={"rid": _request_id(request)})
        return _error(request, 500, "internal_error", "internal server error")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["authorization", "content-type", "x-request-id"],
    )

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(telegram.router)
    app.include_router(admin.router)

    def _start_notification_scheduler() -> None:
        interval_seconds = max(60, int(settings.notification_check_interval_minutes) * 60)

        def _tick() -> None:
            try:
                out = enqueue_notification_sweep()
                if out.get("enqueued"):
                    logger.info("notification sweep enqueued job=%s", out.get("job_id"))
            except Exception:
                logger.exception("notification sweep scheduling failed")
            finally:
                t = threading.Timer(interval_seconds, _tick)
                t.daemon = True
                t.start()

        t0 = threading.Timer(10, _tick)
        t0.daemon = True
        t0.start()
        logger.info("notification scheduler started interval=%ss", interval_seconds)

    @app.on_event("startup")
    async def _startup_tasks() -> None:
        if settings.enable_inprocess_scheduler:
            _start_notification_scheduler()

    return app


app = create_app()
