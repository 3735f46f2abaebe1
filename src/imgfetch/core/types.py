"""Types shared across the library and verify packages."""
from enum import Enum

# Library hashes are "sha256." followed by the lowercase hex digest.
HASH_PREFIX = "sha256."


class TrustOutcome(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED_ACCEPTED = "unverified_accepted"
    FAILED = "failed"
