"""
Label Signing

Uses Ed25519 for signing label payloads.
Every label that leaves the labeler is signed by the labeler key.

The core only depends on the Signer capability (bytes in, signature
bytes out). Ed25519Signer is the bundled implementation.

KEY CONFIGURATION:
- LABELER_SIGNING_KEY: base64-encoded Ed25519 private key (32-byte seed)
- Generate with: python -m tools.manage generate-key

DEVELOPMENT MODE:
- If the key is not set, an ephemeral keypair is generated (warning logged)
- Signatures made with it stop verifying after a restart
- In production (LABELER_PRODUCTION=1) a missing key is a hard error
"""

import base64
import warnings
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from ..observability import get_logger

logger = get_logger(__name__)


class Signer(ABC):
    """Signing capability consumed by the core."""

    @abstractmethod
    async def sign(self, data: bytes) -> bytes:
        """Sign data, returning raw signature bytes."""
        pass


class Ed25519Signer(Signer):
    """
    Ed25519 signer backed by PyNaCl.

    Ed25519 is deterministic: the same key and payload always give
    the same signature, so concurrent backfills of one row agree.
    """

    def __init__(self, private_key_b64: str):
        self._signing_key = SigningKey(base64.b64decode(private_key_b64))

    @property
    def public_key(self) -> str:
        """Base64-encoded public key (safe to expose)."""
        return base64.b64encode(bytes(self._signing_key.verify_key)).decode("utf-8")

    async def sign(self, data: bytes) -> bytes:
        return self._signing_key.sign(data).signature

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = base64.b64encode(bytes(signing_key)).decode("utf-8")
        public_b64 = base64.b64encode(bytes(signing_key.verify_key)).decode("utf-8")
        return private_b64, public_b64

    @staticmethod
    def verify(data: bytes, signature: bytes, public_key_b64: str) -> bool:
        """
        Verify an Ed25519 signature.

        Returns:
            True if signature is valid, False otherwise
        """
        try:
            verify_key = VerifyKey(base64.b64decode(public_key_b64))
            verify_key.verify(data, signature)
            return True
        except (BadSignatureError, ValueError, TypeError):
            return False


def load_signer(private_key_b64: Optional[str], production: bool = False) -> Ed25519Signer:
    """
    Build the labeler signer from configuration.

    Raises:
        RuntimeError: If the key is invalid, or missing in production
    """
    if private_key_b64:
        try:
            signer = Ed25519Signer(private_key_b64)
        except Exception as e:
            raise RuntimeError("LABELER_SIGNING_KEY is not a valid Ed25519 key") from e
        logger.info("Signing key loaded from environment", public_key=signer.public_key)
        return signer

    if production:
        raise RuntimeError(
            "LABELER_SIGNING_KEY must be set in production. Generate with:\n"
            "python -m tools.manage generate-key"
        )

    warnings.warn(
        "Labeler signing key not configured. Generating ephemeral key for development. "
        "This key changes on each restart - NOT suitable for production!",
        stacklevel=2,
    )
    private_key, public_key = Ed25519Signer.generate_keypair()
    logger.warning("Generated ephemeral signing key (development mode)", public_key=public_key)
    return Ed25519Signer(private_key)
