import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables as early as possible
load_dotenv()

from .container import AuthContainer, build_container
from .core.config import Settings, get_settings
from .database import create_db_and_tables
from .exceptions import (
    AuthError, auth_error_handler, http_exception_handler, unhandled_exception_handler,
    validation_exception_handler,
)
from .middleware import LoggingMiddleware, SecurityMiddleware, configure_logging
from .routers import auth_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, container: Optional[AuthContainer] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION} ({settings.ENV})")
        create_db_and_tables(container.engine)
        if settings.CLEANUP_ENABLED:
            container.cleanup.start()
        yield
        # Shutdown
        logger.info(f"Shutting down {settings.APP_NAME}...")
        app.state.shutdown_event.set()
        container.cleanup.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        docs_url=("/docs" if settings.DOCS_ENABLED else None),
        redoc_url=("/redoc" if settings.DOCS_ENABLED else None),
        openapi_url=("/openapi.json" if settings.DOCS_ENABLED else None)
    )
    app.state.container = container
    app.state.shutdown_event = threading.Event()

    # Add custom exception handlers
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Add middleware
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityMiddleware)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router.router)
    return app


app = create_app()
