"""Library images: reference parsing, the HTTP client, and the pull orchestrator."""
from imgfetch.library.models import DeliveryMode, PullResult, RemoteDescriptor, TrustOutcome
from imgfetch.library.ref import ArtifactReference, normalize_library_ref
from imgfetch.library.client import LibraryClient, image_hash
from imgfetch.library.pull import fetch, pull_to_cache, pull_to_path

__all__ = [
    "ArtifactReference",
    "DeliveryMode",
    "LibraryClient",
    "PullResult",
    "RemoteDescriptor",
    "TrustOutcome",
    "fetch",
    "image_hash",
    "normalize_library_ref",
    "pull_to_cache",
    "pull_to_path",
]
