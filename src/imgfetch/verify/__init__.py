"""Image trust: embedded Ed25519 signatures and the trust gate."""
from imgfetch.verify.gate import Verifier, check_trust
from imgfetch.verify.signature import (
    Ed25519Verifier,
    SignatureError,
    generate_keypair,
    read_signature,
    sign_image,
)

__all__ = [
    "Ed25519Verifier",
    "SignatureError",
    "Verifier",
    "check_trust",
    "generate_keypair",
    "read_signature",
    "sign_image",
]
