import uuid
import time
import json
import logging
import threading
from datetime import datetime
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis import RedisError

from app.core.cache import TTLCache
from app.core.config import settings
from app.core.errors import PipelineError, UpstreamFailure
from app.routers import content, github_releases, health


def create_app() -> FastAPI:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = FastAPI(title="GyanDhara API", version="1.0.0")
    app.state.content_cache = TTLCache(ttl_seconds=float(settings.content_cache_ttl_seconds))

    logger = logging.getLogger("gyandhara")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    allow_origins = [o.strip() for o in str(settings.cors_allow_origins or "").split(",") if o.strip()]
    if "*" in allow_origins:
        raise RuntimeError("CORS_ORIGIN must not include '*' when allow_credentials=true")

    is_prod = (settings.app_env or "").strip().lower() in {"prod", "production"}
    if is_prod:
        allow_methods = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
        allow_headers = ["authorization", "content-type", "x-request-id", "x-cron-secret"]
    else:
        allow_methods = ["*"]
        allow_headers = ["*"]

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
            if not path.startswith("/health"):
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
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if is_prod:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    def _request_id(request: Request) -> str | None:
        rid = getattr(getattr(request, "state", None), "request_id", None)
        rid = str(rid or "").strip()
        return rid or None

    def _error_payload(request: Request, error_code: str, error_message: str) -> dict:
        return {
            "ok": False,
            "success": False,
            "error_code": error_code,
            "error_message": error_message,
            "request_id": _request_id(request),
        }

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if isinstance(exc, UpstreamFailure):
            logger.warning(
                "upstream failure rid=%s code=%s upstream_status=%s message=%s",
                _request_id(request),
                exc.error_code,
                exc.upstream_status,
                exc.message,
            )
        return JSONResponse(
            status_code=int(exc.status_code),
            content=_error_payload(request, exc.error_code, exc.message),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            error_code = str(detail.get("error_code") or "http_error")
            error_message = str(detail.get("error_message") or detail.get("detail") or "request failed")
        else:
            code = int(exc.status_code)
            error_code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 429: "rate_limited"}.get(code, "http_error")
            error_message = str(detail or "request failed")
        return JSONResponse(
            status_code=int(exc.status_code),
            content=_error_payload(request, error_code, error_message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        rid = _request_id(request)
        logger.exception("unhandled exception", extra={"rid": rid})
        message = "internal server error" if is_prod else str(exc) or "internal server error"
        return JSONResponse(status_code=500, content=_error_payload(request, "internal_error", message))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=allow_methods,
        allow_headers=allow_headers,
    )

    app.include_router(health.router)
    app.include_router(github_releases.router)
    app.include_router(content.router)

    def _start_staging_cleanup_scheduler() -> None:
        interval_seconds = max(60, int(settings.staging_cleanup_interval_minutes) * 60)

        def _tick() -> None:
            try:
                health.enqueue_staging_cleanup()
            except RedisError:
                logger.warning("staging cleanup tick skipped: redis unavailable")
            finally:
                t = threading.Timer(interval_seconds, _tick)
                t.daemon = True
                t.start()

        t0 = threading.Timer(10, _tick)
        t0.daemon = True
        t0.start()

    @app.on_event("startup")
    async def _startup_tasks() -> None:
        if bool(settings.enable_inprocess_scheduler):
            _start_staging_cleanup_scheduler()

    return app


app = create_app()
