import os
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import Backend, create_backend
from errors import InvalidInput, StoreUnavailable
from logging_config import get_logger, setup_logging
from routers.messages import messages_router
from routers.realtime import realtime_router
from routers.rooms import rooms_router
from services.core import build_core

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(backend: Optional[Backend] = None, clock: Callable[[], float] = time.time, **core_options) -> FastAPI:
    """Build the application. ``backend`` defaults to the one named by STORE_BACKEND."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = backend or create_backend()
        try:
            await store.ping()
        except StoreUnavailable as e:
            # Keep serving; requests will report 503 until the store comes back
            logger.error(f"Store not reachable at startup: {e}")
        app.state.core = build_core(store, clock=clock, **core_options)
        app.state.core.expiry.start()
        logger.info(f"Chat core ready on {store.name} backend")
        try:
            yield
        finally:
            await app.state.core.expiry.stop()
            await store.close()
            logger.info("Chat core shut down")

    app = FastAPI(title="burnroom", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_payload(request: Request, exc: RequestValidationError):
        logger.warning(f"Invalid payload for {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"error": "Invalid payload", "detail": jsonable_errors(exc)})

    @app.exception_handler(InvalidInput)
    async def invalid_input(request: Request, exc: InvalidInput):
        logger.warning(f"Invalid input for {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": "Invalid payload", "detail": str(exc)})

    @app.get("/health")
    async def health(request: Request):
        core = request.app.state.core
        return {"status": "ok", "backend": core.backend.name, "expiry_watcher": core.expiry.running}

    app.include_router(rooms_router)
    app.include_router(messages_router)
    app.include_router(realtime_router)

    logger.info("FastAPI application initialized")
    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()]


app = create_app()
