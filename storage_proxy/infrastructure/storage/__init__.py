"""
Object storage integration for proxied objects.

Supports any S3-compatible bucket via boto3.
Includes mock mode for local development without credentials.
"""

from .client import (
    BlobAttributes,
    BlobNotFoundError,
    BlobReader,
    BlobStore,
    BlobWriter,
    MockBlobStore,
    S3BlobStore,
    StorageConfig,
    StorageError,
    create_blob_store,
)

__all__ = [
    "BlobAttributes",
    "BlobNotFoundError",
    "BlobReader",
    "BlobStore",
    "BlobWriter",
    "MockBlobStore",
    "S3BlobStore",
    "StorageConfig",
    "StorageError",
    "create_blob_store",
]
