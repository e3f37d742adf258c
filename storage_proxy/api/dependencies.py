"""
FastAPI dependency injection.

Dependencies provide configuration and the blob store to route handlers.
Routes don't construct their own collaborators, so tests can build an app
around an in-memory store or a failing fake.

Each dependency is a function that FastAPI calls when needed.
"""

from typing import Annotated

from fastapi import Depends, Request

from ..core.keys import ProxyConfig
from ..infrastructure.storage.client import BlobStore


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_proxy_config(request: Request) -> ProxyConfig:
    """
    Provide the key-derivation configuration.

    Built once by the application factory and shared read-only by every
    request.
    """
    return request.app.state.proxy_config


def get_blob_store(request: Request) -> BlobStore:
    """
    Provide the long-lived blob store.

    The store is created once per application instance; requests never get
    a private copy.
    """
    return request.app.state.blob_store


def get_stream_chunk_size(request: Request) -> int:
    """Copy buffer size for streaming bodies in both directions."""
    return request.app.state.stream_chunk_size


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
ProxyConfigDep = Annotated[ProxyConfig, Depends(get_proxy_config)]
BlobStoreDep = Annotated[BlobStore, Depends(get_blob_store)]
ChunkSizeDep = Annotated[int, Depends(get_stream_chunk_size)]
