import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantsync.celery_app import BROKER_CONFIGURED
from tenantsync.core.config import settings
from tenantsync.routes.admin_events import router as admin_events_router
from tenantsync.routes.admin_sync import router as admin_sync_router
from tenantsync.routes.billing_webhooks import router as billing_webhooks_router
from tenantsync.routes.identity_webhooks import router as identity_webhooks_router
from tenantsync.routes.internal_billing import router as internal_billing_router

logger = logging.getLogger(__name__)

app = FastAPI(title="Tenant Sync")
logger.info(
    "Startup config: ENV=%s broker_configured=%s poll_interval=%ss sync_max_retries=%s",
    settings.ENV,
    BROKER_CONFIGURED,
    settings.EVENTS_POLL_INTERVAL_SECONDS,
    settings.SYNC_MAX_RETRIES,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
    message: str
    details: dict | None = None

    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        msg = detail.get("message")
        message = msg if isinstance(msg, str) and msg else "Request failed"
        det = detail.get("details")
        details = det if isinstance(det, dict) else None
    else:
        message = str(detail) if detail is not None else "Request failed"

    payload: dict = {"error": _error_code(exc.status_code), "message": message}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": jsonable_errors(exc)},
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # Model validators put the raised ValueError into ctx, which JSONResponse cannot encode.
    errors = []
    for err in exc.errors():
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        errors.append(err)
    return errors


app.include_router(identity_webhooks_router)
app.include_router(billing_webhooks_router)
app.include_router(internal_billing_router)
app.include_router(admin_sync_router)
app.include_router(admin_events_router)

@app.get("/health")
def health_check():
    return {"status": "ok"}
