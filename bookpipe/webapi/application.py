"""Application factory for the FastAPI backend."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import InvalidStateError, NotFoundError, PersistenceError, ValidationError
from ..runtime import Runtime, build_runtime
from .routes import router

LOGGER = logging.getLogger(__name__)


def _error_response(status_code: int, exc: Exception, **extra) -> JSONResponse:
    content = {"detail": str(exc)}
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto HTTP status codes."""

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error_response(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(InvalidStateError)
    async def _invalid_state(request: Request, exc: InvalidStateError):
        return _error_response(status.HTTP_409_CONFLICT, exc, job_id=exc.job_id, status=exc.status)

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return _error_response(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError):
        LOGGER.error("Storage failure while handling %s %s: %s", request.method, request.url.path, exc)
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the API application.

    A runtime passed in is used as is and left open on shutdown; otherwise
    one is built from the environment when the app starts and closed when
    it stops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "runtime", None) is None:
            owned = build_runtime()
            app.state.runtime = owned
            LOGGER.info("Runtime started with %d worker(s)", owned.config.max_workers)
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.runtime = None

    app = FastAPI(title="bookpipe", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    register_exception_handlers(app)
    app.include_router(router)
    return app
