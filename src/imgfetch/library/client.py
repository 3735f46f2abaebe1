"""HTTP client for the container library API.

Resolves references to image descriptors and streams image files to disk.
Every blocking step observes the caller's FetchContext.
"""
import hashlib
import logging
from pathlib import Path
from typing import Callable, Optional, Union

import requests

from imgfetch.core.context import FetchContext
from imgfetch.core.errors import DownloadError, NotFoundError, ResolveError
from imgfetch.library.models import HASH_PREFIX, RemoteDescriptor
from imgfetch.library.ref import ArtifactReference

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

# progress(bytes_done, total_bytes_or_None)
ProgressCallback = Callable[[int, Optional[int]], None]


def image_hash(path: Union[str, Path], ctx: Optional[FetchContext] = None) -> str:
    """Return the library hash (``sha256.<hex>``) of the file at path."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(CHUNK_SIZE), b""):
            if ctx is not None:
                ctx.check()
            digest.update(block)
    return f"{HASH_PREFIX}{digest.hexdigest()}"


class LibraryClient:
    """Client for a container library service.

    Args:
        base_url: Library API root, e.g. https://library.sylabs.io
        auth_token: Optional bearer token
        timeout: Per-request connect/read timeout in seconds
        session: Optional requests.Session (tests inject one)
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if auth_token:
            self.session.headers["Authorization"] = f"Bearer {auth_token}"

    def _timeout(self, ctx: FetchContext) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self.timeout
        return max(0.001, min(self.timeout, remaining))

    def get_image(
        self, ctx: FetchContext, arch: str, ref: ArtifactReference
    ) -> RemoteDescriptor:
        """Look up image metadata for ref/arch.

        Raises:
            NotFoundError: If the library has no such image
            ResolveError: For transport errors or malformed responses
            CancelledError: If ctx is cancelled
        """
        ctx.check()
        url = f"{self.base_url}/v1/images/{ref.path_with_tags}"
        try:
            response = self.session.get(
                url, params={"arch": arch}, timeout=self._timeout(ctx)
            )
        except requests.RequestException as e:
            ctx.check()
            raise ResolveError(str(e), reference=str(ref), architecture=arch) from e
        ctx.check()

        if response.status_code == 404:
            raise NotFoundError(
                "image does not exist in the library",
                reference=str(ref),
                architecture=arch,
            )
        if response.status_code != 200:
            raise ResolveError(
                f"unexpected status {response.status_code} from {url}",
                reference=str(ref),
                architecture=arch,
            )

        try:
            data = response.json()["data"]
            descriptor = RemoteDescriptor(
                content_hash=data["hash"],
                architecture=data.get("architecture") or arch,
                size=data.get("size"),
                reference=str(ref),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ResolveError(
                f"malformed image metadata: {e}", reference=str(ref), architecture=arch
            ) from e

        logger.debug(f"Resolved {ref} ({arch}) -> {descriptor.content_hash}")
        return descriptor

    def download_image(
        self,
        ctx: FetchContext,
        dest: Union[str, Path],
        arch: str,
        ref: ArtifactReference,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Stream the image file for ref/arch into dest.

        dest is truncated and written in place; callers that need atomicity
        download into a staging path.

        Raises:
            DownloadError: For transport or write failures
            CancelledError: If ctx is cancelled mid-transfer
        """
        ctx.check()
        url = f"{self.base_url}/v1/imagefile/{ref.path_with_tags}"
        try:
            with self.session.get(
                url, params={"arch": arch}, stream=True, timeout=self._timeout(ctx)
            ) as response:
                if response.status_code != 200:
                    raise DownloadError(
                        f"unexpected status {response.status_code} from {url}",
                        reference=str(ref),
                        architecture=arch,
                    )
                # iter_content yields decoded bytes; Content-Length counts the
                # encoded body, so it is only comparable for identity encoding.
                total = response.headers.get("Content-Length")
                encoding = response.headers.get("Content-Encoding", "identity").lower()
                if encoding != "identity":
                    total = None
                total = int(total) if total and total.isdigit() else None
                done = 0
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        ctx.check()
                        if not chunk:
                            continue
                        f.write(chunk)
                        done += len(chunk)
                        if progress is not None:
                            progress(done, total)
        except requests.RequestException as e:
            ctx.check()
            raise DownloadError(str(e), reference=str(ref), architecture=arch) from e
        except OSError as e:
            raise DownloadError(
                f"cannot write {dest}: {e}", reference=str(ref), architecture=arch
            ) from e

        if total is not None and done != total:
            raise DownloadError(
                f"short read: got {done} of {total} bytes",
                reference=str(ref),
                architecture=arch,
            )
        logger.debug(f"Downloaded {done} bytes to {dest}")
