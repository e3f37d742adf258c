"""
Request path to object key mapping.

These rules decide which object a request addresses and which content type
the response carries. They have no dependencies on FastAPI or the storage
backend, so they can be tested as plain functions.
"""

import logging
import mimetypes
from dataclasses import dataclass

logger = logging.getLogger(__name__)

INDEX_DOCUMENT = "index.html"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

mimetypes.init()


@dataclass(frozen=True)
class ProxyConfig:
    """
    Key-derivation settings shared by every request.

    Frozen because the same instance is read concurrently by all request
    handlers for the lifetime of the process.
    """
    bucket_name: str
    default_prefix: str = ""
    strip_path_prefix: str = ""

    def __post_init__(self) -> None:
        if not self.bucket_name:
            raise ValueError("Bucket name cannot be empty")

    @property
    def bucket_prefix(self) -> str:
        """Leading path segment that addresses the bucket directly."""
        return self.bucket_name + "/"


@dataclass(frozen=True)
class ObjectKey:
    """
    Result of key derivation.

    stripped_key is the request path after prefix and slash trimming; it
    drives content-type resolution. object_key is the name used against the
    blob store.
    """
    stripped_key: str
    object_key: str


def strip_key(raw_path: str, config: ProxyConfig) -> str:
    """Trim the runtime prefix and one leading slash, defaulting to the index document."""
    key = raw_path

    if config.strip_path_prefix:
        if key.startswith(config.strip_path_prefix):
            key = key[len(config.strip_path_prefix):]
        else:
            logger.warning(
                "Request path missing expected strip prefix, serving relative to root",
                extra={"path": raw_path, "strip_path_prefix": config.strip_path_prefix},
            )

    if not key:
        key = INDEX_DOCUMENT

    if key.startswith("/"):
        key = key[1:]

    # "/" alone becomes empty again after the slash is trimmed
    if not key:
        key = INDEX_DOCUMENT

    return key


def object_name(stripped_key: str, config: ProxyConfig) -> str:
    """
    Map a stripped key to the name used in the bucket.

    Keys that start with "<bucket>/" are bucket-qualified and bypass the
    default prefix; everything else lives under it.
    """
    if stripped_key.startswith(config.bucket_prefix):
        return stripped_key[len(config.bucket_prefix):]
    return config.default_prefix + stripped_key


def derive_key(raw_path: str, config: ProxyConfig) -> ObjectKey:
    """Derive the stripped key and object key for a request path."""
    stripped = strip_key(raw_path, config)
    return ObjectKey(stripped_key=stripped, object_key=object_name(stripped, config))


def resolve_content_type(stripped_key: str) -> str:
    """
    Look up the MIME type registered for the key's file extension.

    The extension is everything from the last "." in the final path segment,
    so dotfiles such as ".png" count as having one. Falls back to
    application/octet-stream when the key has no extension or the extension
    is unknown.
    """
    _, _, basename = stripped_key.rpartition("/")
    dot = basename.rfind(".")
    if dot < 0:
        return DEFAULT_CONTENT_TYPE

    ext = basename[dot:]
    content_type = mimetypes.types_map.get(ext) or mimetypes.types_map.get(ext.lower())
    return content_type or DEFAULT_CONTENT_TYPE
