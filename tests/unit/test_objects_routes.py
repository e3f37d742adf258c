"""
Unit tests for the object proxy endpoint.

Each test builds an application around an in-memory store (or a fake that
fails on purpose) and talks to it through FastAPI's TestClient, so the full
dispatch, streaming and error mapping run without a real bucket.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from storage_proxy.config.settings import Settings
from storage_proxy.infrastructure.storage.client import (
    BlobAttributes,
    MockBlobStore,
    StorageError,
)
from storage_proxy.api.routes.objects import download_blob
from storage_proxy.main import create_app


@pytest.fixture
def settings() -> Settings:
    """Mock-mode settings with a tiny copy buffer to force chunked copies."""
    return Settings(
        _env_file=None,
        bucket_name="b",
        default_prefix="v1/",
        strip_path_prefix="",
        storage_mock_mode=True,
        stream_chunk_size=4,
    )


@pytest.fixture
def store() -> MockBlobStore:
    return MockBlobStore()


@pytest.fixture
def client(settings, store) -> TestClient:
    return TestClient(create_app(settings=settings, blob_store=store))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeWriter:
    """Writer that can fail at each stage of an upload."""

    def __init__(self, fail_write=False, fail_close=False, fail_abort=False) -> None:
        self.fail_write = fail_write
        self.fail_close = fail_close
        self.fail_abort = fail_abort
        self.data = bytearray()
        self.closed = False
        self.aborted = False

    async def write(self, data: bytes) -> None:
        if self.fail_write:
            raise StorageError("backend write refused")
        self.data.extend(data)

    async def close(self) -> None:
        if self.fail_close:
            raise StorageError("commit rejected")
        self.closed = True

    async def abort(self) -> None:
        self.aborted = True
        if self.fail_abort:
            raise StorageError("abort failed")


class FailingReader:
    """Reader that yields some chunks and then breaks."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False
        self.close_calls = 0

    async def read(self, size: int) -> bytes:
        if not self._chunks:
            raise StorageError("connection reset by backend")
        return self._chunks.pop(0)

    async def close(self) -> None:
        self.closed = True
        self.close_calls += 1


class FakeStore:
    """Store that records calls and hands out preconfigured streams."""

    def __init__(self, reader=None, writer=None, attributes=None, error=None) -> None:
        self.reader = reader
        self.writer = writer
        self.attributes = attributes
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def open_reader(self, name: str):
        self.calls.append(("open_reader", name))
        if self.reader is None:
            raise StorageError("permission denied")
        return self.reader

    def open_writer(self, name: str):
        self.calls.append(("open_writer", name))
        return self.writer

    async def get_attributes(self, name: str):
        self.calls.append(("get_attributes", name))
        if self.error is not None:
            raise self.error
        return self.attributes


def _client_for(settings: Settings, fake: FakeStore) -> TestClient:
    return TestClient(create_app(settings=settings, blob_store=fake))


# ---------------------------------------------------------------------------
# Download Tests
# ---------------------------------------------------------------------------

class TestDownload:
    """GET streams the object or answers 404."""

    def test_existing_object_is_streamed(self, client, store):
        store.put("v1/docs/readme.txt", b"hello proxied world")

        response = client.get("/docs/readme.txt")

        assert response.status_code == 200
        assert response.content == b"hello proxied world"
        assert response.headers["content-type"] == "text/plain; charset=utf-8"

    def test_missing_object_is_404_with_empty_body(self, client):
        response = client.get("/missing.png")

        assert response.status_code == 404
        assert response.content == b""
        assert response.headers["content-type"] == "image/png"

    def test_backend_error_is_404_without_details(self, settings):
        """Permission problems look like a miss and are not echoed."""
        fake = FakeStore(reader=None)

        response = _client_for(settings, fake).get("/secret.bin")

        assert response.status_code == 404
        assert b"permission" not in response.content

    def test_root_serves_index_document(self, client, store):
        store.put("v1/index.html", b"<html></html>")

        response = client.get("/")

        assert response.status_code == 200
        assert response.content == b"<html></html>"
        assert response.headers["content-type"] == "text/html; charset=utf-8"

    def test_bucket_qualified_path_bypasses_prefix(self, client, store):
        store.put("objects/x.json", b"{}")

        response = client.get("/b/objects/x.json")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"

    def test_strip_prefix_is_removed_before_lookup(self, settings, store):
        settings = settings.model_copy(update={"strip_path_prefix": "/app/"})
        store.put("v1/css/a.css", b"body {}")
        client = TestClient(create_app(settings=settings, blob_store=store))

        response = client.get("/app/css/a.css")

        assert response.status_code == 200
        assert response.content == b"body {}"

    def test_failure_mid_stream_keeps_sent_bytes_and_closes_reader(self, settings):
        reader = FailingReader([b"abcd"])
        fake = FakeStore(reader=reader)

        response = _client_for(settings, fake).get("/file.bin")

        assert response.status_code == 200
        assert response.content == b"abcd"
        assert reader.closed

    def test_reader_is_closed_exactly_once(self, settings):
        reader = FailingReader([b"abcd", b"ef"])
        fake = FakeStore(reader=reader)

        _client_for(settings, fake).get("/file.bin")

        assert reader.close_calls == 1

    def test_reader_released_when_body_is_never_pulled(self):
        """A client that disconnects before the first chunk still frees the reader."""
        reader = FailingReader([b"abcd"])
        fake = FakeStore(reader=reader)

        async def respond_without_sending_body():
            response = await download_blob(fake, "v1/file.bin", "application/octet-stream", 4)
            await response.background()

        asyncio.run(respond_without_sending_body())

        assert reader.close_calls == 1


# ---------------------------------------------------------------------------
# Existence Check Tests
# ---------------------------------------------------------------------------

class TestExistenceCheck:
    """HEAD answers 200 or 404 and never sends a body."""

    def test_existing_object_is_200(self, client, store):
        store.put("v1/a.png", b"\x89PNG")

        response = client.head("/a.png")

        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["content-type"] == "image/png"

    def test_missing_object_is_404(self, client):
        response = client.head("/a.png")

        assert response.status_code == 404
        assert response.content == b""

    def test_attribute_lookup_failure_is_404(self, settings):
        fake = FakeStore(error=StorageError("backend unavailable"))

        response = _client_for(settings, fake).head("/a.png")

        assert response.status_code == 404

    def test_object_size_is_not_echoed(self, settings):
        fake = FakeStore(attributes=BlobAttributes(name="v1/a.png", size=12345, etag='"x"'))

        response = _client_for(settings, fake).head("/a.png")

        assert response.status_code == 200
        assert response.headers.get("content-length") != "12345"
        assert "etag" not in response.headers


# ---------------------------------------------------------------------------
# Upload Tests
# ---------------------------------------------------------------------------

class TestUpload:
    """POST/PUT stream the body into the bucket."""

    def test_put_creates_object_that_reads_back_identically(self, client, store):
        payload = bytes(range(256)) * 3

        response = client.put("/docs/report.pdf", content=payload)

        assert response.status_code == 201
        assert response.content == b""
        assert store.get("v1/docs/report.pdf") == payload
        assert client.get("/docs/report.pdf").content == payload

    def test_post_is_treated_like_put(self, client, store):
        response = client.post("/notes.txt", content=b"posted")

        assert response.status_code == 201
        assert store.get("v1/notes.txt") == b"posted"

    def test_chunked_body_is_reassembled(self, client, store):
        response = client.put("/chunks.bin", content=iter([b"ab", b"cdefg", b"h", b"ij"]))

        assert response.status_code == 201
        assert store.get("v1/chunks.bin") == b"abcdefghij"

    def test_empty_body_creates_empty_object(self, client, store):
        response = client.put("/empty.txt", content=b"")

        assert response.status_code == 201
        assert store.get("v1/empty.txt") == b""

    def test_bucket_qualified_upload(self, client, store):
        response = client.put("/b/objects/x.json", content=b"{}")

        assert response.status_code == 201
        assert store.get("objects/x.json") == b"{}"

    def test_copy_failure_is_400_with_error_text(self, settings):
        """Body longer than the copy buffer fails during the copy."""
        writer = FakeWriter(fail_write=True)
        fake = FakeStore(writer=writer)

        response = _client_for(settings, fake).put("/x.bin", content=b"0123456789")

        assert response.status_code == 400
        assert response.text == "Blob upload failed: backend write refused"
        assert writer.aborted
        assert not writer.closed

    def test_flush_failure_is_400(self, settings):
        """Body shorter than the copy buffer only reaches the writer on flush."""
        writer = FakeWriter(fail_write=True)
        fake = FakeStore(writer=writer)

        response = _client_for(settings, fake).put("/x.bin", content=b"ab")

        assert response.status_code == 400
        assert "backend write refused" in response.text
        assert writer.aborted

    def test_failed_upload_is_not_committed(self, settings):
        class BrokenStore(MockBlobStore):
            def open_writer(self, name):
                return FakeWriter(fail_write=True)

        broken = BrokenStore()
        client = TestClient(create_app(settings=settings, blob_store=broken))

        response = client.put("/x.bin", content=b"0123456789")

        assert response.status_code == 400
        assert client.head("/x.bin").status_code == 404

    def test_finalize_failure_is_500(self, settings):
        """Bytes were accepted but the backend refused to commit them."""
        writer = FakeWriter(fail_close=True)
        fake = FakeStore(writer=writer)

        response = _client_for(settings, fake).put("/x.bin", content=b"0123456789")

        assert response.status_code == 500
        assert bytes(writer.data) == b"0123456789"
        assert not writer.aborted

    def test_release_failure_after_copy_failure_sends_only_the_400(self, settings):
        writer = FakeWriter(fail_write=True, fail_abort=True)
        fake = FakeStore(writer=writer)

        response = _client_for(settings, fake).put("/x.bin", content=b"0123456789")

        assert response.status_code == 400
        assert response.text == "Blob upload failed: backend write refused"


# ---------------------------------------------------------------------------
# Dispatch Tests
# ---------------------------------------------------------------------------

class TestDispatch:
    """Method routing and the content-type header."""

    @pytest.mark.parametrize(
        "method", ["DELETE", "PATCH", "OPTIONS", "PROPFIND", "TRACE", "MKCOL", "PURGE"]
    )
    def test_unsupported_method_is_405_without_store_calls(self, settings, method):
        fake = FakeStore()

        response = _client_for(settings, fake).request(method, "/x.json")

        assert response.status_code == 405
        assert response.content == b""
        assert response.headers["content-type"] == "application/json"
        assert fake.calls == []

    def test_unknown_extension_is_octet_stream(self, client):
        response = client.get("/bin/tool")

        assert response.headers["content-type"] == "application/octet-stream"

    def test_docs_paths_are_objects(self, client, store):
        store.put("v1/docs", b"not swagger")

        response = client.get("/docs")

        assert response.content == b"not swagger"


# ---------------------------------------------------------------------------
# Concurrency Tests
# ---------------------------------------------------------------------------

class TestConcurrentUploads:
    """Uploads to different keys don't interfere."""

    def test_parallel_uploads_to_different_keys(self, settings, store):
        app = create_app(settings=settings, blob_store=store)
        payloads = {f"/file-{i}.bin": bytes([i]) * (50 + i) for i in range(8)}

        async def upload_all():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://proxy") as http:
                responses = await asyncio.gather(
                    *(http.put(path, content=body) for path, body in payloads.items())
                )
            return [r.status_code for r in responses]

        statuses = asyncio.run(upload_all())

        assert statuses == [201] * len(payloads)
        for path, body in payloads.items():
            assert store.get("v1" + path) == body

    def test_same_key_reads_and_writes_see_whole_objects(self, settings, store):
        """Readers see one complete version of the object, never a mix."""
        versions = [bytes([i]) * 40 for i in range(1, 7)]
        store.put("v1/shared.bin", versions[0])
        app = create_app(settings=settings, blob_store=store)

        async def put_and_get():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://proxy") as http:
                requests = []
                for body in versions[1:]:
                    requests.append(http.put("/shared.bin", content=body))
                    requests.append(http.get("/shared.bin"))
                return await asyncio.gather(*requests)

        responses = asyncio.run(put_and_get())

        uploads = responses[0::2]
        downloads = responses[1::2]
        assert [r.status_code for r in uploads] == [201] * len(uploads)
        for response in downloads:
            assert response.status_code == 200
            assert response.content in versions
        assert store.get("v1/shared.bin") in versions[1:]
