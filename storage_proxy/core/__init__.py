"""
Core request-mapping rules for the storage proxy.

This module is framework-agnostic - it doesn't import FastAPI, boto3,
or any infrastructure concerns, so the key rules can be tested in isolation.
"""

from .keys import (
    DEFAULT_CONTENT_TYPE,
    INDEX_DOCUMENT,
    ObjectKey,
    ProxyConfig,
    derive_key,
    resolve_content_type,
)

__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "INDEX_DOCUMENT",
    "ObjectKey",
    "ProxyConfig",
    "derive_key",
    "resolve_content_type",
]
