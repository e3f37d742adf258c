"""
Storage Proxy - HTTP front end for a bucket-style object store.

This package contains the complete application:
- core: Framework-agnostic key derivation and content-type rules
- infrastructure: Object storage backends (S3-compatible and in-memory)
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
