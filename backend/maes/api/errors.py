"""Map orchestration errors to HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from maes.core.errors import InvalidTransitionError, OrchestrationError

logger = logging.getLogger(__name__)


async def orchestration_error_handler(request: Request, exc: OrchestrationError) -> JSONResponse:
    # Details are part of the contract: callers use them to self-correct.
    if isinstance(exc, InvalidTransitionError):
        logger.error(f"State machine violation on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, **exc.details},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrchestrationError, orchestration_error_handler)
