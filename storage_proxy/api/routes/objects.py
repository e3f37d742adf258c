"""
Object proxy endpoint.

Every path is an object key. One catch-all route derives the key, sets the
content type and dispatches on method:

- GET: stream the object to the client (404 if it can't be opened)
- HEAD: report whether the object exists (200/404, no body)
- POST/PUT: stream the request body into the object (201, 400 or 500)
- anything else: 405 with no body (see method_not_allowed_response)

Backend failures never escape these handlers; each is converted to a
status code here. Bodies move through a fixed-size copy buffer in both
directions.
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from ...core.keys import derive_key, resolve_content_type
from ...infrastructure.storage.client import BlobReader, BlobStore, BlobWriter
from ..dependencies import BlobStoreDep, ChunkSizeDep, ProxyConfigDep

logger = logging.getLogger(__name__)

router = APIRouter()

# Methods served by the proxy. The router rejects every other method with a
# 405 HTTPException, which the application turns into
# method_not_allowed_response.
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT"]


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_request(
    request: Request,
    config: ProxyConfigDep,
    store: BlobStoreDep,
    chunk_size: ChunkSizeDep,
) -> Response:
    """Derive the object key for the request path and dispatch on method."""
    key = derive_key(request.url.path, config)
    content_type = resolve_content_type(key.stripped_key)

    method = request.method
    if method == "GET":
        return await download_blob(store, key.object_key, content_type, chunk_size)
    if method == "HEAD":
        return await check_blob_exists(store, key.object_key, content_type)

    return await upload_blob(request, store, key.object_key, content_type, chunk_size)


def method_not_allowed_response(request: Request, headers: Optional[dict] = None) -> Response:
    """
    Empty 405 for any method the proxy doesn't serve.

    The key is still derived so the response carries the same content type
    as every other response for that path. The store is never touched.
    """
    key = derive_key(request.url.path, request.app.state.proxy_config)
    return Response(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        headers=headers,
        media_type=resolve_content_type(key.stripped_key),
    )


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------

async def download_blob(
    store: BlobStore,
    object_key: str,
    content_type: str,
    chunk_size: int,
) -> Response:
    """
    Stream an object to the client.

    Missing objects, permission problems and backend errors all look the
    same from here: 404 with no body. The cause is logged, never returned.
    """
    try:
        reader = await store.open_reader(object_key)
    except Exception as e:
        logger.warning(
            "Could not open object for reading (it may not exist or there are permission issues)",
            extra={"object": object_key, "error": str(e)},
        )
        return Response(status_code=status.HTTP_404_NOT_FOUND, media_type=content_type)

    closer = ReaderCloser(reader, object_key)
    return StreamingResponse(
        _stream_blob(reader, closer, object_key, chunk_size),
        media_type=content_type,
        background=BackgroundTask(closer),
    )


class ReaderCloser:
    """
    Closes a reader exactly once.

    Called both when the body generator finishes and as the response's
    background task, so the reader is released even if the client goes away
    before the body is ever pulled.
    """

    def __init__(self, reader: BlobReader, object_key: str) -> None:
        self._reader = reader
        self._object_key = object_key
        self.closed = False

    async def __call__(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._reader.close()
        except Exception as e:
            logger.error(
                "Failed to close object reader",
                extra={"object": self._object_key, "error": str(e)},
            )


async def _stream_blob(
    reader: BlobReader,
    closer: ReaderCloser,
    object_key: str,
    chunk_size: int,
) -> AsyncIterator[bytes]:
    """
    Yield the object chunk by chunk, closing the reader however it ends.

    A failure partway through is logged and ends the body; bytes already
    sent stand.
    """
    sent = 0
    try:
        while True:
            chunk = await reader.read(chunk_size)
            if not chunk:
                break
            yield chunk
            sent += len(chunk)
    except Exception as e:
        logger.error(
            "Failed to write object to HTTP response",
            extra={"object": object_key, "bytes_sent": sent, "error": str(e)},
        )
    else:
        logger.info("Served object", extra={"object": object_key, "size_bytes": sent})
    finally:
        await closer()


# ---------------------------------------------------------------------------
# Existence Check
# ---------------------------------------------------------------------------

async def check_blob_exists(store: BlobStore, object_key: str, content_type: str) -> Response:
    """Answer 200 if the object has attributes, 404 otherwise. Never a body."""
    try:
        attributes = await store.get_attributes(object_key)
    except Exception as e:
        logger.warning(
            "Error fetching attributes for object (or object not found)",
            extra={"object": object_key, "error": str(e)},
        )
        return Response(status_code=status.HTTP_404_NOT_FOUND, media_type=content_type)

    if attributes is None:
        logger.info("Object not found", extra={"object": object_key})
        return Response(status_code=status.HTTP_404_NOT_FOUND, media_type=content_type)

    return Response(status_code=status.HTTP_200_OK, media_type=content_type)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

async def upload_blob(
    request: Request,
    store: BlobStore,
    object_key: str,
    content_type: str,
    chunk_size: int,
) -> Response:
    """
    Stream the request body into an object.

    Outcomes:
    - body copy or final flush fails: 400 with the error text; the writer is
      aborted so nothing is committed
    - copy succeeds but the backend rejects the commit: 500
    - everything succeeds: 201

    Only the first failure produces a response. A failure while aborting
    after a 400 is logged and otherwise ignored.
    """
    writer = store.open_writer(object_key)
    response: Optional[Response] = None
    copied = False

    try:
        buffer = bytearray()
        try:
            async for chunk in request.stream():
                buffer.extend(chunk)
                while len(buffer) >= chunk_size:
                    await writer.write(bytes(buffer[:chunk_size]))
                    del buffer[:chunk_size]
        except Exception as e:
            logger.error(
                "Failed copying request body to object writer",
                extra={"object": object_key, "error": str(e)},
            )
            response = upload_failed_response(e, content_type)
        else:
            try:
                if buffer:
                    await writer.write(bytes(buffer))
            except Exception as e:
                logger.error(
                    "Failed to flush object writer",
                    extra={"object": object_key, "error": str(e)},
                )
                response = upload_failed_response(e, content_type)
            else:
                copied = True
    finally:
        if copied:
            response = await _finalize_writer(writer, object_key, content_type)
        else:
            await _release_writer(writer, object_key)

    if response is not None:
        return response

    return Response(status_code=status.HTTP_201_CREATED, media_type=content_type)


async def _finalize_writer(
    writer: BlobWriter,
    object_key: str,
    content_type: str,
) -> Optional[Response]:
    """Commit the object; returns a 500 response if the backend refuses."""
    try:
        await writer.close()
    except Exception as e:
        logger.error(
            "Failed to finalize object writer",
            extra={"object": object_key, "error": str(e)},
        )
        return Response(
            content="Blob upload could not be finalized",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            media_type=content_type,
        )

    logger.info("Uploaded and finalized object", extra={"object": object_key})
    return None


async def _release_writer(writer: BlobWriter, object_key: str) -> None:
    try:
        await writer.abort()
    except Exception as e:
        logger.error(
            "Failed to release object writer",
            extra={"object": object_key, "error": str(e)},
        )


def upload_failed_response(error: Exception, content_type: str) -> Response:
    """400 response describing why the request body could not be stored."""
    return Response(
        content=f"Blob upload failed: {error}",
        status_code=status.HTTP_400_BAD_REQUEST,
        media_type=content_type,
    )
