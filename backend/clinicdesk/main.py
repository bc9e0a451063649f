import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinicdesk.core.config import settings, require_jwt_secret
from clinicdesk.core.logging import configure_logging
from clinicdesk.routes.internal_provisioning import router as internal_provisioning_router
from clinicdesk.routes.provisioning import router as provisioning_router
from clinicdesk.routes.stripe_webhook import router as stripe_webhook_router

configure_logging()
logger = logging.getLogger(__name__)

require_jwt_secret()

app = FastAPI(title="Clinic Desk Provisioning")
logger.info(
    "Startup config: ENV=%s default_plan=%s webhook_lease_seconds=%s",
    settings.ENV,
    settings.PROVISIONING_DEFAULT_PLAN,
    settings.WEBHOOK_PROCESSING_LEASE_SECONDS,
)

_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _error_code(status_code: int) -> str:
    return _ERROR_CODE_BY_STATUS.get(int(status_code), "HTTP_ERROR")


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):  # noqa: ARG001
    detail = exc.detail
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
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):  # noqa: ARG001
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "details": {"errors": exc.errors()},
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stripe_webhook_router)
app.include_router(provisioning_router)
app.include_router(internal_provisioning_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
