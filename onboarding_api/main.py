import logging
import os

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .deps import get_settings
from .errors import (
    ConflictError,
    NotFoundError,
    OnboardingError,
    OnboardingInProgress,
    OperatorActionRequired,
    PermanentError,
    ProvisioningFailed,
    TransientError,
    ValidationError,
    VersionConflict,
)
from .log import configure_logging
from .routes import health, onboard

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (OnboardingInProgress, 409),
    (VersionConflict, 409),
    (OperatorActionRequired, 409),
    (ConflictError, 409),
    (ProvisioningFailed, 502),
    (TransientError, 503),
    (PermanentError, 502),
]


def _error_status(exc: OnboardingError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return 500


def _error_body(exc: OnboardingError) -> dict:
    body = {"error": exc.code}
    if isinstance(exc, (ValidationError, NotFoundError, ConflictError)):
        body["message"] = str(exc)
    elif isinstance(exc, (OnboardingInProgress, VersionConflict)):
        body["message"] = "onboarding already in progress; retry later"
    elif isinstance(exc, (ProvisioningFailed, OperatorActionRequired)):
        body["message"] = str(exc)
        body["reference"] = exc.reference
    else:
        body["message"] = "backend temporarily unavailable" if isinstance(exc, TransientError) else "request failed"
    return body


async def onboarding_error_handler(request: Request, exc: OnboardingError) -> JSONResponse:
    status_code = _error_status(exc)
    if status_code >= 500:
        logger.warning("Request %s %s failed: %s", request.method, request.url.path, exc)
    headers = {"Retry-After": "5"} if status_code in {409, 503} and isinstance(
        exc, (OnboardingInProgress, VersionConflict, TransientError)
    ) else None
    return JSONResponse(status_code=status_code, content=_error_body(exc), headers=headers)


def create_app() -> FastAPI:
    configure_logging(get_settings().log_level)
    app = FastAPI(title="IoT Onboarding API")
    app.add_exception_handler(OnboardingError, onboarding_error_handler)
    app.include_router(health.router)
    app.include_router(onboard.router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "onboarding_api.main:app",
        host=os.environ.get("ONBOARDING_HOST", "0.0.0.0"),
        port=int(os.environ.get("ONBOARDING_PORT", "8000")),
    )
