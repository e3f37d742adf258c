"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations and stores
- Explicit about initialization order
- Can create multiple app instances if needed (e.g., for testing)

For local development:
    STORAGE_MOCK_MODE=true BUCKET_NAME=dev uvicorn storage_proxy.main:create_app --factory --reload

For production:
    python -m storage_proxy --bucket my-bucket --port 8080
"""

import logging
import socket
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.routes import objects
from .config.settings import Settings, get_settings
from .infrastructure.storage.client import BlobStore, create_blob_store

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger(__name__)


class ProxyServeError(Exception):
    """Raised when the listener can't be bound or the server fails."""
    pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Runs on startup and shutdown. The blob store itself is created by the
    factory so it exists even when the lifespan isn't run (e.g. in tests
    without a TestClient context).
    """
    settings: Settings = app.state.settings

    logger.info(
        "Storage proxy starting",
        extra={
            "version": settings.api_version,
            "bucket": settings.bucket_name,
            "default_prefix": settings.default_prefix,
            "strip_path_prefix": settings.strip_path_prefix,
            "mock_mode": settings.storage_mock_mode,
        }
    )

    yield

    logger.info("Storage proxy shutting down")


def create_app(
    settings: Optional[Settings] = None,
    blob_store: Optional[BlobStore] = None,
) -> FastAPI:
    """
    Application factory.

    Creates the FastAPI application with its long-lived collaborators: the
    key-derivation config and the blob store. Both are built once here and
    shared by every request.

    Args:
        settings: Settings to use (defaults to environment settings)
        blob_store: Store to serve from (defaults to one built from settings)
    """
    settings = settings or get_settings()

    logging.getLogger().setLevel(settings.log_level.upper())

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )
        raise ValueError(f"Missing required configuration: {', '.join(missing_fields)}")

    # Every path belongs to the object namespace, so no docs routes
    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.proxy_config = settings.proxy_config
    app.state.stream_chunk_size = settings.stream_chunk_size
    app.state.blob_store = blob_store or create_blob_store(
        config=settings.storage_config,
        mock_mode=settings.storage_mock_mode,
    )

    app.include_router(objects.router)

    @app.exception_handler(StarletteHTTPException)
    async def proxy_http_exception_handler(request, exc):
        """Answer unsupported methods with an empty 405 like any other path."""
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            return objects.method_not_allowed_response(request, headers=exc.headers)
        return await http_exception_handler(request, exc)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        Catch-all exception handler.

        Prevents stack traces from leaking to clients. The full error is
        logged server-side and a generic message is returned.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return PlainTextResponse(
            "Internal server error",
            status_code=500,
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


def serve(
    address: str,
    port: int,
    settings: Optional[Settings] = None,
    blob_store: Optional[BlobStore] = None,
) -> None:
    """
    Bind a listener and serve requests until the server shuts down.

    The socket is bound here rather than by uvicorn so that a bind failure
    reaches the caller as ProxyServeError instead of exiting the process.

    Raises:
        ProxyServeError: the address can't be bound or serving fails
    """
    listen_addr = f"{address}:{port}"
    app = create_app(settings=settings, blob_store=blob_store)

    family = socket.AF_INET6 if ":" in address else socket.AF_INET
    try:
        sock = socket.create_server((address, port), family=family)
    except OSError as e:
        logger.error("Failed to listen", extra={"address": listen_addr, "error": str(e)})
        raise ProxyServeError(f"failed to listen on {listen_addr}: {e}") from e

    log_level = app.state.settings.log_level.lower()
    server = uvicorn.Server(uvicorn.Config(app, log_level=log_level))

    logger.info("Storage proxy listening", extra={"address": listen_addr})

    try:
        server.run(sockets=[sock])
    except Exception as e:
        logger.error("HTTP server error", extra={"address": listen_addr, "error": str(e)})
        raise ProxyServeError(f"http server error: {e}") from e
    finally:
        sock.close()

    logger.info("Storage proxy shut down", extra={"address": listen_addr})
