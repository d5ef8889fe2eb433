"""Map service-layer exceptions onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sendlists.services.errors import (
    ContactStateError,
    DuplicateRoundListError,
    ExternalServiceError,
    InvalidEmailError,
    MaintenanceInProgressError,
    NotFoundError,
    PlanValidationError,
    SendListsError,
)

logger = logging.getLogger(__name__)

STATUS_CODES = [
    (NotFoundError, 404),
    (DuplicateRoundListError, 409),
    (MaintenanceInProgressError, 409),
    (ContactStateError, 409),
    (InvalidEmailError, 422),
    (PlanValidationError, 422),
    (ExternalServiceError, 502),
]


def status_for(exc: SendListsError) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 400


async def sendlists_exception_handler(request: Request, exc: SendListsError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc}")
    else:
        logger.info(f"{exc.__class__.__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": exc.__class__.__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SendListsError, sendlists_exception_handler)
