"""Library reference parsing and normalization."""
import re
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from imgfetch.core.errors import InvalidRefError

SCHEME = "library://"
DEFAULT_TAG = "latest"

_SEGMENT_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_HOST_RE = re.compile(r"^[a-z0-9.-]+(:[0-9]+)?$")

# entity/collection/container
MAX_PATH_SEGMENTS = 3


class ArtifactReference(BaseModel):
    """Canonical reference to a library image.

    Immutable once built. ``str(ref)`` is the canonical lookup key.
    """

    host: Optional[str] = Field(default=None, description="Library host, if qualified")
    path: str = Field(..., description="entity/collection/container path")
    tags: Tuple[str, ...] = Field(default=(DEFAULT_TAG,), description="Requested tags")

    model_config = ConfigDict(frozen=True)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("at least one tag is required")
        for tag in v:
            if not _TAG_RE.match(tag):
                raise ValueError(f"invalid tag: {tag!r}")
        return v

    @property
    def path_with_tags(self) -> str:
        """``path:tag[,tag]`` form used in library API URLs."""
        return f"{self.path}:{','.join(self.tags)}"

    def __str__(self) -> str:
        prefix = f"{self.host}/" if self.host else ""
        return f"{SCHEME}{prefix}{self.path_with_tags}"


def _split_tags(last: str, raw: str) -> Tuple[str, Tuple[str, ...]]:
    if ":" not in last:
        return last, (DEFAULT_TAG,)
    name, _, tag_part = last.partition(":")
    tags = tuple(tag_part.split(","))
    if not tag_part or any(not t for t in tags):
        raise InvalidRefError(f"Empty tag in reference: {raw!r}")
    return name, tags


def _is_host(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


def normalize_library_ref(raw: str) -> ArtifactReference:
    """Parse a user-supplied reference into an ArtifactReference.

    Accepted forms:
        alpine
        alpine:3.18
        library://entity/collection/container:tag
        library://library.example.org/entity/collection/container:tag1,tag2

    A missing tag defaults to ``latest``.

    Raises:
        InvalidRefError: If the reference is malformed
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidRefError("Image reference must be a non-empty string")

    ref = raw.strip()
    if ref.startswith(SCHEME):
        ref = ref[len(SCHEME):]
    elif "://" in ref:
        scheme = ref.split("://", 1)[0]
        raise InvalidRefError(f"Unsupported reference scheme {scheme!r}: {raw!r}")

    segments = ref.split("/")
    if any(not s for s in segments):
        raise InvalidRefError(f"Empty path segment in reference: {raw!r}")

    host = None
    if len(segments) > 1 and _is_host(segments[0]):
        host = segments[0].lower()
        if not _HOST_RE.match(host):
            raise InvalidRefError(f"Invalid library host {host!r} in {raw!r}")
        segments = segments[1:]

    if len(segments) > MAX_PATH_SEGMENTS:
        raise InvalidRefError(
            f"Reference has too many path segments (max {MAX_PATH_SEGMENTS}): {raw!r}"
        )

    name, tags = _split_tags(segments[-1], raw)
    segments[-1] = name
    for segment in segments:
        if not _SEGMENT_RE.match(segment):
            raise InvalidRefError(f"Invalid path segment {segment!r} in {raw!r}")

    try:
        return ArtifactReference(host=host, path="/".join(segments), tags=tags)
    except ValueError as e:
        raise InvalidRefError(f"Invalid reference {raw!r}: {e}") from e
