import uuid
import time
import json
import logging
from datetime import datetime, timezone
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from assessment_session.core.config import settings
from assessment_session.core.errors import AssessmentError
from assessment_session.services.registry import RuntimeFactory, RuntimeRegistry
from assessment_session.routers import applications, dashboard, health, sessions


def create_app(runtime_factory: RuntimeFactory | None = None) -> FastAPI:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app = FastAPI(title="Assessment Session API", version="1.0.0")
    app.state.registry = RuntimeRegistry(runtime_factory)

    logger = logging.getLogger("assessment_session")
    logging.getLogger("httpx").setLevel(logging.WARNING)

    allow_origins = [o.strip() for o in str(settings.cors_allow_origins or "").split(",") if o.strip()]
    if "*" in allow_origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not include '*' when allow_credentials=true")

    is_prod = (settings.app_env or "").strip().lower() in {"prod", "production"}
    if is_prod:
        allow_methods = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
        allow_headers = ["authorization", "content-type", "x-request-id"]
    else:
        allow_methods = ["*"]
        allow_headers = ["*"]

    def _error(status_code: int, error_code: str, error_message: str, rid: str | None, headers=None) -> JSONResponse:
        return JSONResponse(
            status_code=int(status_code),
            content={
                "ok": False,
                "error_code": error_code,
                "error_message": error_message,
                "request_id": rid,
            },
            headers=headers,
        )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        status_code: int | None = None
        try:
            origin = (request.headers.get("origin") or "").strip()
            if request.method in {"POST", "PUT", "PATCH", "DELETE"} and origin and origin not in allow_origins:
                response = _error(403, "forbidden", "invalid origin", rid)
            else:
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
                            "ts": datetime.now(timezone.utc).isoformat(),
                            "rid": rid,
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
        response.headers.setdefault("Cache-Control", "no-store")
        if is_prod:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    def _request_id(request: Request) -> str | None:
        rid = getattr(getattr(request, "state", None), "request_id", None)
        rid = str(rid or "").strip()
        return rid or None

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            error_code = str(detail.get("error_code") or "http_error")
            error_message = str(detail.get("error_message") or detail.get("detail") or "request failed")
        else:
            error_code = "forbidden" if int(exc.status_code) == 403 else "unauthorized" if int(exc.status_code) == 401 else "http_error"
            error_message = str(detail or "request failed")
        return _error(exc.status_code, error_code, error_message, _request_id(request), getattr(exc, "headers", None))

    @app.exception_handler(AssessmentError)
    async def assessment_error_handler(request: Request, exc: AssessmentError):
        if exc.status_code >= 500:
            logger.warning("%s: %s", exc.error_code, exc.message)
        return _error(exc.status_code, exc.error_code, exc.message, _request_id(request))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        message = f"{where}: {first.get('msg')}" if where else "invalid request"
        return _error(422, "validation_error", message, _request_id(request))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        rid = _request_id(request)
        logger.exception("unhandled exception", extra={"rid": rid})
        return _error(500, "internal_error", "internal server error", rid)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=allow_methods,
        allow_headers=allow_headers,
    )

    app.include_router(health.router)
    app.include_router(dashboard.router)
    app.include_router(sessions.router)
    app.include_router(applications.router)

    @app.on_event("shutdown")
    async def _close_runtimes() -> None:
        await app.state.registry.close_all()

    return app

app = create_app()
