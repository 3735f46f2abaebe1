"""Core exception types for imgfetch."""
from typing import Optional


class ImgFetchError(Exception):
    """Base exception for all imgfetch errors."""
    pass


class InvalidRefError(ImgFetchError):
    """Raised when an image reference is syntactically invalid."""
    pass


class ConfigError(ImgFetchError):
    """Raised when configuration cannot be loaded or validated."""
    pass


class CancelledError(ImgFetchError):
    """Raised when a fetch is cancelled through its FetchContext."""
    pass


class FetchError(ImgFetchError):
    """Base for failures of a single fetch attempt.

    Carries the reference, architecture and failing stage so operators can
    tell network, integrity and trust failures apart without retrying.
    """

    stage = "fetch"

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        architecture: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.reference = reference
        self.architecture = architecture
        if stage is not None:
            self.stage = stage
        self.message = message
        super().__init__(self._format())

    def _format(self) -> str:
        where = self.reference or "<unknown>"
        if self.architecture:
            where = f"{where} ({self.architecture})"
        return f"{self.stage}: {where}: {self.message}"


class NotFoundError(FetchError):
    """Raised when the library has no image for the reference/architecture."""

    stage = "resolve"


class ResolveError(FetchError):
    """Raised when image metadata cannot be retrieved."""

    stage = "resolve"


class CacheLookupError(FetchError):
    """Raised when the cache cannot be queried or an entry finalized."""

    stage = "cache"


class DownloadError(FetchError):
    """Raised when downloading image bytes fails."""

    stage = "download"


class HashMismatchError(FetchError):
    """Raised when downloaded bytes do not hash to the expected value."""

    stage = "hash"

    def __init__(
        self,
        expected: str,
        actual: str,
        reference: Optional[str] = None,
        architecture: Optional[str] = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"downloaded file hash ({actual}) and expected hash ({expected}) do not match",
            reference=reference,
            architecture=architecture,
        )


class CopyError(FetchError):
    """Raised when an image cannot be copied out of the cache."""

    stage = "copy"


class VerificationFailedError(FetchError):
    """Raised when signature verification rejects an image.

    The image is left in place for inspection.
    """

    stage = "verify"

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        self.path = path
        super().__init__(message, **kwargs)
