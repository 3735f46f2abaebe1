"""Value types shared by the library client, the orchestrator and the trust gate."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imgfetch.core.types import HASH_PREFIX, TrustOutcome

__all__ = [
    "HASH_PREFIX",
    "WARN_UNSIGNED",
    "DeliveryMode",
    "PullResult",
    "RemoteDescriptor",
    "TrustOutcome",
]

# Warning code attached to images accepted without a trusted signature.
WARN_UNSIGNED = "unsigned"


class DeliveryMode(str, Enum):
    """Where a fetched image ends up."""

    CACHED_ONLY = "cached_only"
    DIRECT_TO_PATH = "direct_to_path"
    CACHED_THEN_COPY_OUT = "cached_then_copy_out"


class RemoteDescriptor(BaseModel):
    """Image metadata as reported by the library. Authoritative for hashes."""

    content_hash: str = Field(..., description="Expected hash, e.g. sha256.<hex>")
    architecture: str = Field(..., description="Image architecture, e.g. amd64")
    size: Optional[int] = Field(default=None, ge=0, description="Size in bytes, if known")
    reference: Optional[str] = Field(default=None, description="Canonical reference")

    model_config = ConfigDict(frozen=True)

    @field_validator("content_hash")
    @classmethod
    def validate_content_hash(cls, v: str) -> str:
        """Hashes are used as cache keys, so they must be path-safe."""
        if not v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError(f"content_hash is not a valid cache key: {v!r}")
        return v


class PullResult(BaseModel):
    """Outcome of a pull to a destination path.

    An image accepted without a trusted signature is still a success: ``path``
    is valid, ``trust`` is UNVERIFIED_ACCEPTED and ``warning`` is set, so the
    caller decides whether to warn or refuse.
    """

    path: str
    trust: TrustOutcome
    warning: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def verified(self) -> bool:
        return self.trust == TrustOutcome.VERIFIED

    @property
    def unsigned(self) -> bool:
        return self.trust == TrustOutcome.UNVERIFIED_ACCEPTED
