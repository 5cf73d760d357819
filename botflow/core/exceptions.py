"""Error taxonomy and FastAPI exception handlers."""
import uuid
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger


class BotflowError(Exception):
    """Base exception for the workflow engine."""

    pass


class ConfigurationError(BotflowError):
    """A required credential or integration is not configured."""

    pass


class ProviderError(BotflowError):
    """An external provider call failed."""

    pass


class ReasoningError(ProviderError):
    """Errors related to LLM API calls."""

    pass


class CRMError(ProviderError):
    """Errors related to calendar/CRM operations."""

    pass


class GraphIntegrityError(BotflowError):
    """The workflow graph cannot be navigated from the current position."""

    pass


class GraphValidationError(BotflowError):
    """The workflow graph was rejected at load or save time."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors) or "Invalid workflow graph")


class SessionConflictError(BotflowError):
    """Session was modified concurrently (stale version)."""

    pass


class NotFoundError(BotflowError):
    pass


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log full error, return generic message to client"""
    request_id = str(uuid.uuid4())

    logger.opt(exception=exc).error(
        f"Request failed: {request.method} {request.url.path} (request_id={request_id})"
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "An error occurred while processing your request",
            "request_id": request_id,
            "timestamp": datetime.utcnow().isoformat()
        }
    )


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


async def session_conflict_handler(request: Request, exc: SessionConflictError) -> JSONResponse:
    logger.warning(f"Session conflict on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=409,
        content={"error": "Session was updated by another request. Please retry."}
    )


async def graph_validation_handler(request: Request, exc: GraphValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid workflow graph", "details": exc.errors}
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers"""
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(SessionConflictError, session_conflict_handler)
    app.add_exception_handler(GraphValidationError, graph_validation_handler)
