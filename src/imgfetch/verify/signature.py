"""Ed25519 image signatures (PyNaCl).

A signed image carries a trailer after its content:

    MAGIC | json payload | u32 big-endian payload length | MAGIC

The payload names the signing key and holds a hex Ed25519 signature over the
ASCII library hash (``sha256.<hex>``) of the bytes before the trailer.
"""
import hashlib
import logging
import os
import re
import struct
from pathlib import Path
from typing import Optional, Tuple, Union

import nacl.signing
import requests
from nacl.exceptions import BadSignatureError
from pydantic import BaseModel, Field, ValidationError, field_validator

from imgfetch.core.context import FetchContext
from imgfetch.core.errors import ImgFetchError
from imgfetch.core.types import HASH_PREFIX, TrustOutcome

logger = logging.getLogger(__name__)

MAGIC = b"IMGSIG01"
FOOTER = struct.Struct(">I8s")
MAX_PAYLOAD = 64 * 1024

_KEY_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class SignatureError(ImgFetchError):
    """Raised when a signature is present but malformed or does not verify."""
    pass


class SignatureBlock(BaseModel):
    """Signature payload stored in the image trailer."""

    key_id: str = Field(..., description="Identifier of the signing key")
    signature: str = Field(..., description="Hex-encoded Ed25519 signature")

    @field_validator("key_id")
    @classmethod
    def validate_key_id(cls, v: str) -> str:
        if not _KEY_ID_RE.match(v):
            raise ValueError(f"invalid key_id: {v!r}")
        return v

    @field_validator("signature")
    @classmethod
    def validate_signature_hex(cls, v: str) -> str:
        if len(v) != 128 or not all(c in "0123456789abcdef" for c in v.lower()):
            raise ValueError("signature must be 64 bytes of hex")
        return v


def generate_keypair() -> Tuple[str, str]:
    """Return a new ``(private_key_hex, public_key_hex)`` Ed25519 pair."""
    sk = nacl.signing.SigningKey.generate()
    return sk.encode().hex(), sk.verify_key.encode().hex()


def content_digest(
    path: Union[str, Path], length: int, ctx: Optional[FetchContext] = None
) -> str:
    """Library hash of the first ``length`` bytes of path."""
    digest = hashlib.sha256()
    remaining = length
    with open(path, "rb") as f:
        while remaining > 0:
            if ctx is not None:
                ctx.check()
            block = f.read(min(remaining, 1024 * 1024))
            if not block:
                raise SignatureError(f"{path} is shorter than its signed length")
            digest.update(block)
            remaining -= len(block)
    return f"{HASH_PREFIX}{digest.hexdigest()}"


def read_signature(path: Union[str, Path]) -> Optional[Tuple[SignatureBlock, int]]:
    """Read the signature trailer of path.

    Returns:
        (block, signed_length), or None if the image is unsigned

    Raises:
        SignatureError: If a trailer is present but corrupt
    """
    size = os.path.getsize(path)
    if size < FOOTER.size + len(MAGIC):
        return None

    with open(path, "rb") as f:
        f.seek(size - FOOTER.size)
        length, magic = FOOTER.unpack(f.read(FOOTER.size))
        if magic != MAGIC:
            return None

        start = size - FOOTER.size - length - len(MAGIC)
        if length > MAX_PAYLOAD or start < 0:
            raise SignatureError(f"{path}: truncated signature trailer")
        f.seek(start)
        if f.read(len(MAGIC)) != MAGIC:
            raise SignatureError(f"{path}: corrupt signature trailer")
        payload = f.read(length)

    try:
        block = SignatureBlock.model_validate_json(payload)
    except ValidationError as e:
        raise SignatureError(f"{path}: invalid signature payload: {e}") from e
    return block, start


def sign_image(path: Union[str, Path], private_key_hex: str, key_id: str) -> str:
    """Append a signature trailer to path.

    Returns:
        The signed content hash

    Raises:
        SignatureError: If the image is already signed
    """
    if read_signature(path) is not None:
        raise SignatureError(f"{path} is already signed")

    length = os.path.getsize(path)
    digest = content_digest(path, length)
    signing_key = nacl.signing.SigningKey(bytes.fromhex(private_key_hex))
    signature = signing_key.sign(digest.encode("ascii")).signature.hex()

    payload = SignatureBlock(key_id=key_id, signature=signature).model_dump_json().encode("utf-8")
    with open(path, "ab") as f:
        f.write(MAGIC + payload + FOOTER.pack(len(payload), MAGIC))
    logger.info(f"Signed {path} with key {key_id}")
    return digest


class Ed25519Verifier:
    """Verify embedded image signatures against a local keyring and key server.

    Args:
        keyring_dir: Directory of ``<key_id>.pub`` files holding hex public keys
        keyserver_url: Key server root, queried at /v1/keys/<key_id>
        use_keyserver: Query the key server for keys missing locally
        timeout: Key server request timeout in seconds
        session: Optional requests.Session
    """

    def __init__(
        self,
        keyring_dir: Optional[Union[str, Path]] = None,
        keyserver_url: Optional[str] = None,
        use_keyserver: bool = False,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.keyring_dir = Path(keyring_dir).expanduser() if keyring_dir else None
        self.keyserver_url = keyserver_url.rstrip("/") if keyserver_url else None
        self.use_keyserver = use_keyserver
        self.timeout = timeout
        self.session = session or requests.Session()

    def _local_key(self, key_id: str) -> Optional[str]:
        if self.keyring_dir is None:
            return None
        key_file = self.keyring_dir / f"{key_id}.pub"
        if not key_file.is_file():
            return None
        return key_file.read_text().strip()

    def _remote_key(self, ctx: FetchContext, key_id: str) -> Optional[str]:
        if not (self.use_keyserver and self.keyserver_url):
            return None
        ctx.check()
        url = f"{self.keyserver_url}/v1/keys/{key_id}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            ctx.check()
            raise SignatureError(f"key server lookup for {key_id} failed: {e}") from e
        ctx.check()

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise SignatureError(
                f"key server returned {response.status_code} for {key_id}"
            )
        try:
            return response.json()["data"]["public_key"]
        except (ValueError, KeyError, TypeError) as e:
            raise SignatureError(f"malformed key server response for {key_id}") from e

    def lookup_key(self, ctx: FetchContext, key_id: str) -> Optional[nacl.signing.VerifyKey]:
        """Find the public key for key_id, or None if no source knows it."""
        key_hex = self._local_key(key_id)
        if key_hex is None:
            key_hex = self._remote_key(ctx, key_id)
        if key_hex is None:
            return None
        try:
            return nacl.signing.VerifyKey(bytes.fromhex(key_hex))
        except ValueError as e:
            raise SignatureError(f"invalid public key for {key_id}: {e}") from e

    def verify(self, ctx: FetchContext, path: Union[str, Path]) -> TrustOutcome:
        """Check the embedded signature of path.

        Returns:
            VERIFIED, or UNVERIFIED_ACCEPTED if the image is unsigned or its
            signer is unknown

        Raises:
            SignatureError: If the signature is corrupt or does not match
        """
        found = read_signature(path)
        if found is None:
            logger.warning(f"{path}: image is not signed")
            return TrustOutcome.UNVERIFIED_ACCEPTED

        block, signed_length = found
        key = self.lookup_key(ctx, block.key_id)
        if key is None:
            logger.warning(f"{path}: signing key {block.key_id} is not trusted")
            return TrustOutcome.UNVERIFIED_ACCEPTED

        digest = content_digest(path, signed_length, ctx)
        try:
            key.verify(digest.encode("ascii"), bytes.fromhex(block.signature))
        except BadSignatureError as e:
            raise SignatureError(
                f"{path}: signature by {block.key_id} does not match image content"
            ) from e

        logger.info(f"Verified signature by key {block.key_id}")
        return TrustOutcome.VERIFIED
