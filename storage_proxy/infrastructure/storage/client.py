"""
Object storage client for the proxy.

Supports any S3-compatible bucket (AWS S3, Cloudflare R2, MinIO, or Google
Cloud Storage through its XML interoperability endpoint) with a mock mode
for local development.

The proxy only needs three capabilities per object name: a byte-stream
reader, a byte-stream writer whose close step commits the object, and an
attributes lookup. Readers and writers move data in bounded pieces so that
object size never bounds memory use.
"""

import asyncio
import hashlib
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


class BlobNotFoundError(StorageError):
    """Raised when the requested object does not exist."""
    pass


@dataclass
class StorageConfig:
    """
    Configuration for S3-compatible storage.

    Empty credentials defer to boto3's own credential chain
    (environment, shared config, instance role).
    """
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    endpoint_url: Optional[str] = None
    region: Optional[str] = None
    part_size: int = 8 * 1024 * 1024  # S3 minimum part size is 5 MiB


@dataclass(frozen=True)
class BlobAttributes:
    """Metadata for a stored object."""
    name: str
    size: int
    content_type: Optional[str] = None
    etag: Optional[str] = None
    updated: Optional[datetime] = None


class BlobReader(Protocol):
    """Readable byte stream over one object."""

    async def read(self, size: int) -> bytes:
        """Return up to size bytes; an empty result means end of object."""
        ...

    async def close(self) -> None:
        ...


class BlobWriter(Protocol):
    """
    Writable byte stream for one object.

    Nothing is visible in the bucket until close() succeeds. close() commits
    the object and can fail on its own; abort() releases the stream without
    committing.
    """

    async def write(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        ...

    async def abort(self) -> None:
        ...


class BlobStore(Protocol):
    """
    Protocol for object storage operations.

    Implementations are shared by all concurrent requests and must not keep
    per-request state.
    """

    async def open_reader(self, name: str) -> BlobReader:
        """Open a read stream. Raises StorageError if the object can't be read."""
        ...

    def open_writer(self, name: str) -> BlobWriter:
        """Create a write stream. Performs no I/O until data is written or closed."""
        ...

    async def get_attributes(self, name: str) -> Optional[BlobAttributes]:
        """Return object metadata, or None if the object does not exist."""
        ...


def _error_code(exc: Exception) -> str:
    """Extract the S3 error code from a botocore ClientError, if any."""
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return ""
    return str(response.get("Error", {}).get("Code", ""))


# ---------------------------------------------------------------------------
# S3-compatible Storage
# ---------------------------------------------------------------------------

class S3BlobReader:
    """Reads a get_object streaming body in caller-sized chunks."""

    def __init__(self, body, name: str) -> None:
        self._body = body
        self._name = name

    async def read(self, size: int) -> bytes:
        try:
            return await asyncio.to_thread(self._body.read, size)
        except Exception as e:
            raise StorageError(f"Read failed for {self._name}: {e}") from e

    async def close(self) -> None:
        self._body.close()


class S3BlobWriter:
    """
    Streams an object into the bucket.

    Data is buffered up to one part. Objects that never fill a part are
    stored with a single put_object on close; larger objects switch to a
    multipart upload that close() completes and abort() cancels.
    """

    def __init__(self, s3_client, bucket_name: str, name: str, part_size: int) -> None:
        self._s3_client = s3_client
        self._bucket_name = bucket_name
        self._name = name
        self._part_size = part_size
        self._buffer = bytearray()
        self._upload_id: Optional[str] = None
        self._parts: list[dict] = []
        self._closed = False

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise StorageError(f"Writer for {self._name} is closed")

        self._buffer.extend(data)

        try:
            while len(self._buffer) >= self._part_size:
                part = bytes(self._buffer[:self._part_size])
                del self._buffer[:self._part_size]
                await self._upload_part(part)
        except Exception as e:
            raise StorageError(f"Upload failed for {self._name}: {e}") from e

    async def close(self) -> None:
        """Commit the object. Raises StorageError if the backend rejects it."""
        if self._closed:
            return
        self._closed = True

        try:
            if self._upload_id is None:
                await asyncio.to_thread(
                    self._s3_client.put_object,
                    Bucket=self._bucket_name,
                    Key=self._name,
                    Body=bytes(self._buffer),
                )
            else:
                if self._buffer:
                    await self._upload_part(bytes(self._buffer))
                await asyncio.to_thread(
                    self._s3_client.complete_multipart_upload,
                    Bucket=self._bucket_name,
                    Key=self._name,
                    UploadId=self._upload_id,
                    MultipartUpload={"Parts": self._parts},
                )
        except Exception as e:
            await self._abort_multipart()
            raise StorageError(f"Upload finalize failed for {self._name}: {e}") from e
        finally:
            self._buffer.clear()

        logger.debug(
            "Committed object",
            extra={"object": self._name, "parts": len(self._parts)},
        )

    async def abort(self) -> None:
        """Drop buffered data and cancel any multipart upload in progress."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        await self._abort_multipart()

    async def _upload_part(self, data: bytes) -> None:
        if self._upload_id is None:
            response = await asyncio.to_thread(
                self._s3_client.create_multipart_upload,
                Bucket=self._bucket_name,
                Key=self._name,
            )
            self._upload_id = response["UploadId"]

        part_number = len(self._parts) + 1
        response = await asyncio.to_thread(
            self._s3_client.upload_part,
            Bucket=self._bucket_name,
            Key=self._name,
            UploadId=self._upload_id,
            PartNumber=part_number,
            Body=data,
        )
        self._parts.append({"ETag": response["ETag"], "PartNumber": part_number})

    async def _abort_multipart(self) -> None:
        if self._upload_id is None:
            return

        upload_id, self._upload_id = self._upload_id, None
        try:
            await asyncio.to_thread(
                self._s3_client.abort_multipart_upload,
                Bucket=self._bucket_name,
                Key=self._name,
                UploadId=upload_id,
            )
        except Exception as e:
            logger.error(
                "Failed to abort multipart upload",
                extra={"object": self._name, "upload_id": upload_id, "error": str(e)},
            )


class S3BlobStore:
    """
    S3-compatible object storage client.

    Uses boto3, so any S3-compatible service works. boto3 is synchronous;
    every call runs in a worker thread to keep the event loop free for
    other requests. boto3 clients are thread-safe, so one client serves
    all requests.
    """

    def __init__(self, config: StorageConfig, s3_client=None) -> None:
        """
        Initialize the S3 client with boto3.

        boto3 is imported here (not at module level) because mock mode
        doesn't need it. Tests may pass a ready-made s3_client.
        """
        self._config = config

        if s3_client is None:
            try:
                import boto3
                from botocore.config import Config
            except ImportError:
                raise ImportError(
                    "boto3 is required for S3 storage. Install with: pip install boto3"
                )

            boto_config = Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'},
            )

            s3_client = boto3.client(
                's3',
                endpoint_url=config.endpoint_url,
                aws_access_key_id=config.access_key_id or None,
                aws_secret_access_key=config.secret_access_key or None,
                region_name=config.region,
                config=boto_config,
            )

        self._s3_client = s3_client

        logger.info(
            "Initialized S3 storage client",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.endpoint_url,
            }
        )

    async def open_reader(self, name: str) -> BlobReader:
        """Start a get_object request and hand back its streaming body."""
        try:
            response = await asyncio.to_thread(
                self._s3_client.get_object,
                Bucket=self._config.bucket_name,
                Key=name,
            )
        except Exception as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise BlobNotFoundError(f"Object not found: {name}") from e
            raise StorageError(f"Download failed: {e}") from e

        return S3BlobReader(response['Body'], name)

    def open_writer(self, name: str) -> BlobWriter:
        return S3BlobWriter(
            self._s3_client,
            self._config.bucket_name,
            name,
            self._config.part_size,
        )

    async def get_attributes(self, name: str) -> Optional[BlobAttributes]:
        """Fetch object metadata with head_object."""
        try:
            response = await asyncio.to_thread(
                self._s3_client.head_object,
                Bucket=self._config.bucket_name,
                Key=name,
            )
        except Exception as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise StorageError(f"Attribute lookup failed: {e}") from e

        return BlobAttributes(
            name=name,
            size=int(response.get('ContentLength', 0)),
            content_type=response.get('ContentType'),
            etag=response.get('ETag'),
            updated=response.get('LastModified'),
        )


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockBlobReader:
    """Reader over an in-memory copy of an object."""

    def __init__(self, data: bytes) -> None:
        self._stream = io.BytesIO(data)

    @property
    def closed(self) -> bool:
        return self._stream.closed

    async def read(self, size: int) -> bytes:
        return self._stream.read(size)

    async def close(self) -> None:
        self._stream.close()


class MockBlobWriter:
    """Collects written bytes and publishes them to the store on close."""

    def __init__(self, store: "MockBlobStore", name: str) -> None:
        self._store = store
        self._name = name
        self._buffer = io.BytesIO()

    @property
    def closed(self) -> bool:
        return self._buffer.closed

    async def write(self, data: bytes) -> None:
        if self._buffer.closed:
            raise StorageError(f"Writer for {self._name} is closed")
        self._buffer.write(data)

    async def close(self) -> None:
        if self._buffer.closed:
            return
        self._store.put(self._name, self._buffer.getvalue())
        self._buffer.close()

    async def abort(self) -> None:
        self._buffer.close()


class MockBlobStore:
    """
    In-memory storage for local development.

    Objects are kept in a dictionary keyed by object name. Not suitable for
    production, but enough to run the full HTTP flow without a bucket.
    """

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._updated: dict[str, datetime] = {}
        logger.info("Initialized mock storage client (in-memory)")

    def put(self, name: str, data: bytes) -> None:
        """Store an object directly."""
        self._objects[name] = data
        self._updated[name] = datetime.now(timezone.utc)

        logger.debug(
            "Stored object in mock storage",
            extra={"object": name, "size_bytes": len(data)},
        )

    def get(self, name: str) -> Optional[bytes]:
        """Return an object's bytes, or None if absent."""
        return self._objects.get(name)

    def names(self) -> list[str]:
        return sorted(self._objects)

    async def open_reader(self, name: str) -> BlobReader:
        data = self._objects.get(name)
        if data is None:
            raise BlobNotFoundError(f"Object not found: {name}")
        return MockBlobReader(data)

    def open_writer(self, name: str) -> BlobWriter:
        return MockBlobWriter(self, name)

    async def get_attributes(self, name: str) -> Optional[BlobAttributes]:
        data = self._objects.get(name)
        if data is None:
            return None

        return BlobAttributes(
            name=name,
            size=len(data),
            etag=f'"{hashlib.md5(data).hexdigest()}"',
            updated=self._updated.get(name),
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_blob_store(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
) -> BlobStore:
    """
    Create blob store based on configuration.

    Args:
        config: Storage configuration (required if not mock_mode)
        mock_mode: If True, return in-memory store for testing

    Returns:
        BlobStore implementation (S3 or Mock)
    """
    if mock_mode:
        return MockBlobStore()

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return S3BlobStore(config)
