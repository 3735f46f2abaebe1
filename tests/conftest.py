"""Pytest fixtures for imgfetch tests."""
import hashlib
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from imgfetch.cache import CacheHandle
from imgfetch.core.context import FetchContext
from imgfetch.core.errors import NotFoundError
from imgfetch.core.types import TrustOutcome
from imgfetch.library.client import image_hash
from imgfetch.library.models import RemoteDescriptor


class FakeLibrary:
    """In-memory library: resolves references and writes image bytes.

    Attributes:
        content: Bytes written by download_image
        content_hash: Hash reported by get_image (defaults to the real hash)
        missing: If True, get_image raises NotFoundError
        resolve_error: Exception raised by get_image, if set
        download_error: Exception raised by download_image after a partial write
        cancel_on_download: Cancel the caller's context mid-download
        downloads: Destination paths of every download_image call
    """

    def __init__(self, content: bytes = b"image-bytes\n", content_hash: Optional[str] = None):
        self.content = content
        self._content_hash = content_hash
        self.missing = False
        self.resolve_error: Optional[Exception] = None
        self.download_error: Optional[Exception] = None
        self.cancel_on_download = False
        self.downloads: List[Path] = []
        self.resolved: List[str] = []

    @property
    def content_hash(self) -> str:
        if self._content_hash is not None:
            return self._content_hash
        return "sha256." + hashlib.sha256(self.content).hexdigest()

    def get_image(self, ctx: FetchContext, arch: str, ref) -> RemoteDescriptor:
        ctx.check()
        self.resolved.append(str(ref))
        if self.resolve_error is not None:
            raise self.resolve_error
        if self.missing:
            raise NotFoundError("image does not exist in the library", reference=str(ref), architecture=arch)
        return RemoteDescriptor(content_hash=self.content_hash, architecture=arch, reference=str(ref))

    def download_image(self, ctx: FetchContext, dest, arch: str, ref, progress=None) -> None:
        ctx.check()
        self.downloads.append(Path(dest))
        half = len(self.content) // 2
        with open(dest, "wb") as f:
            f.write(self.content[:half])
            if self.download_error is not None:
                raise self.download_error
            if self.cancel_on_download:
                ctx.cancel()
            ctx.check()
            f.write(self.content[half:])
        if progress is not None:
            progress(len(self.content), len(self.content))


class StubVerifier:
    """Verifier returning a fixed outcome, or raising a fixed error."""

    def __init__(self, outcome: TrustOutcome = TrustOutcome.VERIFIED, error: Optional[Exception] = None):
        self.outcome = outcome
        self.error = error
        self.paths: List[str] = []

    def verify(self, ctx: FetchContext, path) -> TrustOutcome:
        self.paths.append(str(path))
        if self.error is not None:
            raise self.error
        return self.outcome


@pytest.fixture
def library() -> FakeLibrary:
    return FakeLibrary()


@pytest.fixture
def ctx() -> FetchContext:
    return FetchContext()


@pytest.fixture
def cache_handle(tmp_path: Path) -> CacheHandle:
    return CacheHandle(tmp_path / "cache")


@pytest.fixture
def disabled_cache(tmp_path: Path) -> CacheHandle:
    return CacheHandle(tmp_path / "cache-disabled", disabled=True)


@pytest.fixture
def image_file(tmp_path: Path) -> Dict[str, object]:
    """Write a small unsigned image and return its path and hash."""
    path = tmp_path / "image.img"
    path.write_bytes(b"\x00SIF" + b"payload" * 100)
    return {"path": path, "hash": image_hash(path)}


def staging_files(cache: CacheHandle) -> List[Path]:
    """Leftover staging files in the library cache directory."""
    directory = cache.type_dir()
    if not directory.is_dir():
        return []
    return [p for p in directory.iterdir() if p.name.startswith(".tmp-")]
