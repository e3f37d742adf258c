"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- storage: Object storage (S3-compatible API, in-memory mock)

These wrappers translate between backend errors and the proxy's error classes.
"""
