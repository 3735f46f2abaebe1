"""Pull library images into the cache or to a destination path.

Three delivery modes:
    CACHED_ONLY           resolve, download into a cache staging file, check the
                          hash, finalize, return the cache path
    CACHED_THEN_COPY_OUT  as above, then copy the cached file to a destination
    DIRECT_TO_PATH        cache disabled: download straight to the destination

A cache entry is only finalized once the staged bytes hash to the value the
library reported. Direct downloads are not hash-checked unless
``verify_direct_hash`` is set.
"""
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from imgfetch.cache.handle import CacheHandle
from imgfetch.core.context import FetchContext
from imgfetch.core.errors import (
    CacheLookupError,
    CancelledError,
    CopyError,
    DownloadError,
    HashMismatchError,
    NotFoundError,
    ResolveError,
)
from imgfetch.library.client import ProgressCallback, image_hash
from imgfetch.library.models import (
    WARN_UNSIGNED,
    DeliveryMode,
    PullResult,
    RemoteDescriptor,
    TrustOutcome,
)
from imgfetch.library.ref import ArtifactReference, normalize_library_ref
from imgfetch.util.fs import copy_file_atomic
from imgfetch.verify.gate import Verifier, check_trust

logger = logging.getLogger(__name__)

# Mode for images copied out of the cache; the umask applies when dst is new.
COPY_OUT_MODE = 0o777

Hasher = Callable[[Union[str, Path]], str]


class LibraryBackend(Protocol):
    """Metadata resolver and downloader, e.g. LibraryClient."""

    def get_image(
        self, ctx: FetchContext, arch: str, ref: ArtifactReference
    ) -> RemoteDescriptor:
        ...

    def download_image(
        self,
        ctx: FetchContext,
        dest: Union[str, Path],
        arch: str,
        ref: ArtifactReference,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        ...


def _as_ref(reference: Union[str, ArtifactReference]) -> ArtifactReference:
    if isinstance(reference, ArtifactReference):
        return reference
    return normalize_library_ref(reference)


def _resolve(
    ctx: FetchContext, client: LibraryBackend, ref: ArtifactReference, arch: str
) -> RemoteDescriptor:
    try:
        return client.get_image(ctx, arch, ref)
    except (NotFoundError, ResolveError, CancelledError):
        raise
    except Exception as e:
        raise ResolveError(str(e), reference=str(ref), architecture=arch) from e


def _download(
    ctx: FetchContext,
    client: LibraryBackend,
    dest: Path,
    arch: str,
    ref: ArtifactReference,
    progress: Optional[ProgressCallback],
) -> None:
    try:
        client.download_image(ctx, dest, arch, ref, progress)
    except (DownloadError, CancelledError):
        raise
    except Exception as e:
        raise DownloadError(
            f"unable to download image: {e}", reference=str(ref), architecture=arch
        ) from e
    ctx.check()


def _check_hash(
    ctx: FetchContext,
    path: Path,
    descriptor: RemoteDescriptor,
    ref: ArtifactReference,
    arch: str,
    hasher: Hasher,
) -> None:
    try:
        actual = hasher(path)
    except CancelledError:
        raise
    except Exception as e:
        raise DownloadError(
            f"error getting image hash: {e}",
            reference=str(ref),
            architecture=arch,
            stage="hash",
        ) from e
    ctx.check()
    if actual != descriptor.content_hash:
        raise HashMismatchError(
            expected=descriptor.content_hash,
            actual=actual,
            reference=str(ref),
            architecture=arch,
        )


def _fetch_cached(
    ctx: FetchContext,
    cache: CacheHandle,
    client: LibraryBackend,
    descriptor: RemoteDescriptor,
    ref: ArtifactReference,
    arch: str,
    progress: Optional[ProgressCallback],
    hasher: Hasher,
) -> str:
    try:
        entry = cache.get_entry(descriptor.content_hash)
    except Exception as e:
        raise CacheLookupError(
            f"unable to check if {descriptor.content_hash} exists in cache: {e}",
            reference=str(ref),
            architecture=arch,
        ) from e

    with entry:
        if entry.exists:
            logger.info("Using cached image")
            return str(entry.path)

        logger.info("Downloading library image")
        _download(ctx, client, entry.tmp_path, arch, ref, progress)
        _check_hash(ctx, entry.tmp_path, descriptor, ref, arch, hasher)

        try:
            entry.finalize()
        except (OSError, RuntimeError) as e:
            raise CacheLookupError(
                f"unable to finalize cache entry {descriptor.content_hash}: {e}",
                reference=str(ref),
                architecture=arch,
                stage="finalize",
            ) from e
        return str(entry.path)


def _fetch_direct(
    ctx: FetchContext,
    client: LibraryBackend,
    descriptor: RemoteDescriptor,
    ref: ArtifactReference,
    arch: str,
    dest: Path,
    progress: Optional[ProgressCallback],
    hasher: Hasher,
    verify_hash: bool,
) -> str:
    logger.info("Downloading library image")
    if not verify_hash:
        _download(ctx, client, dest, arch, ref, progress)
        return str(dest)

    part = dest.parent / f".{dest.name}.{uuid.uuid4().hex[:8]}.part"
    try:
        _download(ctx, client, part, arch, ref, progress)
        _check_hash(ctx, part, descriptor, ref, arch, hasher)
        try:
            os.replace(part, dest)
        except OSError as e:
            raise DownloadError(
                f"unable to move image into place: {e}",
                reference=str(ref),
                architecture=arch,
            ) from e
    finally:
        part.unlink(missing_ok=True)
    return str(dest)


def fetch(
    ctx: FetchContext,
    cache: CacheHandle,
    client: LibraryBackend,
    reference: Union[str, ArtifactReference],
    arch: str,
    mode: DeliveryMode,
    dest: Optional[Union[str, Path]] = None,
    progress: Optional[ProgressCallback] = None,
    hasher: Hasher = image_hash,
    verify_direct_hash: bool = False,
) -> str:
    """Fetch one image according to mode and return the resulting path.

    Args:
        ctx: Cancellation context for resolve and download
        cache: Cache handle (ignored for DIRECT_TO_PATH)
        client: Metadata resolver and downloader
        reference: Raw or normalized image reference
        arch: Image architecture, e.g. amd64
        mode: Delivery mode
        dest: Destination path, required unless mode is CACHED_ONLY
        progress: Optional download progress callback
        hasher: Computes the library hash of a file
        verify_direct_hash: Hash-check DIRECT_TO_PATH downloads too

    Returns:
        Cache path for CACHED_ONLY, otherwise dest

    Raises:
        InvalidRefError, NotFoundError, ResolveError, CacheLookupError,
        DownloadError, HashMismatchError, CopyError, CancelledError
    """
    ref = _as_ref(reference)
    if mode != DeliveryMode.CACHED_ONLY and dest is None:
        raise ValueError(f"{mode.value} requires a destination path")

    descriptor = _resolve(ctx, client, ref, arch)

    if mode == DeliveryMode.DIRECT_TO_PATH:
        return _fetch_direct(
            ctx, client, descriptor, ref, arch, Path(dest), progress, hasher,
            verify_direct_hash,
        )

    path = _fetch_cached(ctx, cache, client, descriptor, ref, arch, progress, hasher)

    if mode == DeliveryMode.CACHED_THEN_COPY_OUT:
        try:
            copy_file_atomic(path, dest, COPY_OUT_MODE)
        except CopyError as e:
            raise CopyError(
                f"error copying image out of cache: {e.message}",
                reference=str(ref),
                architecture=arch,
            ) from e
        return str(dest)

    return path


def pull_to_cache(
    ctx: FetchContext,
    cache: CacheHandle,
    client: LibraryBackend,
    reference: Union[str, ArtifactReference],
    arch: str,
    tmp_dir: Optional[Union[str, Path]] = None,
    progress: Optional[ProgressCallback] = None,
    hasher: Hasher = image_hash,
) -> str:
    """Pull an image into the cache and return its cache path.

    If the cache is disabled the image is downloaded to a new temporary file
    in tmp_dir instead, and that path is returned.
    """
    if not cache.is_disabled():
        return fetch(
            ctx, cache, client, reference, arch, DeliveryMode.CACHED_ONLY,
            progress=progress, hasher=hasher,
        )

    ref = _as_ref(reference)
    try:
        fd, tmp_name = tempfile.mkstemp(prefix="imgfetch-tmp-cache-", dir=tmp_dir)
        os.close(fd)
    except OSError as e:
        raise DownloadError(
            f"unable to create tmp file: {e}", reference=str(ref), architecture=arch
        ) from e
    logger.info(f"Downloading library image to tmp cache: {tmp_name}")

    try:
        return fetch(
            ctx, cache, client, ref, arch, DeliveryMode.DIRECT_TO_PATH,
            dest=tmp_name, progress=progress, hasher=hasher,
        )
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def pull_to_path(
    ctx: FetchContext,
    cache: CacheHandle,
    client: LibraryBackend,
    reference: Union[str, ArtifactReference],
    arch: str,
    dest: Union[str, Path],
    verifier: Verifier,
    progress: Optional[ProgressCallback] = None,
    hasher: Hasher = image_hash,
    verify_direct_hash: bool = False,
) -> PullResult:
    """Pull an image to dest through the cache (or directly) and check trust.

    Returns:
        PullResult; ``trust`` is UNVERIFIED_ACCEPTED with warning ``unsigned``
        when the image has no trusted signature

    Raises:
        VerificationFailedError: If verification rejects the image; the
            file stays at dest
        plus everything fetch() raises
    """
    ref = _as_ref(reference)
    dest = Path(dest)

    if cache.is_disabled():
        mode = DeliveryMode.DIRECT_TO_PATH
        logger.debug(f"Cache disabled, pulling directly to: {dest}")
    else:
        mode = DeliveryMode.CACHED_THEN_COPY_OUT

    path = fetch(
        ctx, cache, client, ref, arch, mode,
        dest=dest, progress=progress, hasher=hasher,
        verify_direct_hash=verify_direct_hash,
    )

    outcome = check_trust(ctx, path, verifier, reference=str(ref), architecture=arch)
    if outcome == TrustOutcome.UNVERIFIED_ACCEPTED:
        logger.warning(f"{ref}: image at {path} has no trusted signature")
        return PullResult(path=path, trust=outcome, warning=WARN_UNSIGNED)
    return PullResult(path=path, trust=outcome)
