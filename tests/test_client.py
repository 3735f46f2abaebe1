"""Tests for the library HTTP client (requests session mocked)."""
from unittest import mock

import pytest
import requests

from imgfetch.core.context import FetchContext
from imgfetch.core.errors import CancelledError, DownloadError, NotFoundError, ResolveError
from imgfetch.library.client import LibraryClient, image_hash
from imgfetch.library.ref import normalize_library_ref

REF = normalize_library_ref("entity/collection/alpine:3.18")


class FakeResponse:
    def __init__(self, status_code=200, payload=None, chunks=(), headers=None):
        self.status_code = status_code
        self._payload = payload
        self._chunks = list(chunks)
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_content(self, chunk_size=None):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _client(response=None, error=None):
    session = mock.Mock()
    session.headers = {}
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return LibraryClient("https://library.example.org/", auth_token="tok", session=session), session


def test_get_image_returns_descriptor():
    """Test: metadata lookup.

    Given: the library answers 200 with a hash
    When: get_image is called for amd64
    Then: the descriptor carries the hash and the request hits /v1/images
    """
    client, session = _client(FakeResponse(200, {"data": {"hash": "sha256.abc", "size": 10}}))

    descriptor = client.get_image(FetchContext(), "amd64", REF)

    assert descriptor.content_hash == "sha256.abc"
    assert descriptor.architecture == "amd64"
    assert descriptor.size == 10
    assert session.get.call_args[0][0] == "https://library.example.org/v1/images/entity/collection/alpine:3.18"
    assert session.get.call_args[1]["params"] == {"arch": "amd64"}
    assert session.headers["Authorization"] == "Bearer tok"


def test_get_image_not_found():
    client, _ = _client(FakeResponse(404))

    with pytest.raises(NotFoundError) as exc_info:
        client.get_image(FetchContext(), "arm64", REF)

    assert exc_info.value.architecture == "arm64"
    assert exc_info.value.reference == str(REF)


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(500),
        FakeResponse(200, None),
        FakeResponse(200, {"data": {}}),
        FakeResponse(200, {"data": {"hash": "../../etc"}}),
    ],
)
def test_get_image_errors(response):
    client, _ = _client(response)

    with pytest.raises(ResolveError):
        client.get_image(FetchContext(), "amd64", REF)


def test_get_image_transport_error():
    client, _ = _client(error=requests.ConnectionError("refused"))

    with pytest.raises(ResolveError):
        client.get_image(FetchContext(), "amd64", REF)


def test_download_writes_file_and_reports_progress(tmp_path):
    chunks = [b"abc", b"", b"def"]
    client, session = _client(FakeResponse(200, chunks=chunks, headers={"Content-Length": "6"}))
    progress = mock.Mock()
    dest = tmp_path / "image.img"

    client.download_image(FetchContext(), dest, "amd64", REF, progress)

    assert dest.read_bytes() == b"abcdef"
    assert progress.call_args_list == [mock.call(3, 6), mock.call(6, 6)]
    assert session.get.call_args[0][0].endswith("/v1/imagefile/entity/collection/alpine:3.18")
    assert session.get.call_args[1]["stream"] is True


def test_download_short_read(tmp_path):
    client, _ = _client(FakeResponse(200, chunks=[b"abc"], headers={"Content-Length": "10"}))

    with pytest.raises(DownloadError):
        client.download_image(FetchContext(), tmp_path / "image.img", "amd64", REF)


def test_download_gzip_encoded_body(tmp_path):
    """Test: transfer-encoded body larger than its Content-Length once decoded.

    Given: a gzip-encoded response whose Content-Length is the compressed size
    When: the decoded chunks are written to disk
    Then: the download succeeds and progress reports an unknown total
    """
    body = b"A" * 100000
    headers = {"Content-Length": "133", "Content-Encoding": "gzip"}
    client, _ = _client(FakeResponse(200, chunks=[body[:60000], body[60000:]], headers=headers))
    progress = mock.Mock()
    dest = tmp_path / "image.img"

    client.download_image(FetchContext(), dest, "amd64", REF, progress)

    assert dest.read_bytes() == body
    assert progress.call_args_list == [mock.call(60000, None), mock.call(100000, None)]


def test_download_bad_status(tmp_path):
    client, _ = _client(FakeResponse(403))

    with pytest.raises(DownloadError) as exc_info:
        client.download_image(FetchContext(), tmp_path / "image.img", "amd64", REF)

    assert "403" in str(exc_info.value)


def test_download_observes_cancellation(tmp_path):
    """Test: cancelling between chunks stops the transfer with CancelledError."""
    ctx = FetchContext()

    def chunks():
        yield b"abc"
        ctx.cancel()
        yield b"def"

    response = FakeResponse(200)
    response.iter_content = lambda chunk_size=None: chunks()
    client, _ = _client(response)

    with pytest.raises(CancelledError):
        client.download_image(ctx, tmp_path / "image.img", "amd64", REF)


def test_deadline_counts_as_cancellation():
    ctx = FetchContext(timeout=0)
    client, session = _client(FakeResponse(200, {"data": {"hash": "sha256.abc"}}))

    with pytest.raises(CancelledError):
        client.get_image(ctx, "amd64", REF)
    session.get.assert_not_called()


def test_image_hash_format(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(b"")

    assert image_hash(path) == (
        "sha256.e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )

