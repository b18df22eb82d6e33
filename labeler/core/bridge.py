"""
Signing Bridge

Guarantees every label leaving the system carries a signature.

ensure_signed() is a read that may write: a stored row without a
signature (legacy data) is signed on the spot and the signature is
persisted against the row id. Two readers racing on the same row both
compute the same signature (Ed25519 is deterministic), and the store
accepts an identical second write, so the race is harmless.
"""

from typing import TYPE_CHECKING

from ..errors import SigningFailure
from ..observability import get_logger, get_metrics
from ..schemas.label import Label, SignedLabel
from .encoding import LabelEncoder
from .signer import Signer

if TYPE_CHECKING:
    from ..db.store import LabelStore

logger = get_logger(__name__)


class SigningBridge:
    """Signs labels on demand and backfills missing signatures."""

    def __init__(self, store: "LabelStore", signer: Signer):
        self._store = store
        self._signer = signer

    async def sign(self, label: Label) -> SignedLabel:
        """Sign a label without touching the store."""
        try:
            sig = await self._signer.sign(LabelEncoder.encode(label))
        except Exception as e:
            raise SigningFailure(f"Failed to sign label {label.id}") from e
        return label.signed(sig)

    async def ensure_signed(self, label: Label) -> SignedLabel:
        """
        Return the signed shape of a stored label.

        Already-signed labels are reformatted with no I/O. Unsigned
        rows are signed and the signature is written back.

        Raises:
            SigningFailure: If signing fails or the write-back changed no row
        """
        if label.sig is not None:
            return label.signed(label.sig)

        if label.id is None:
            raise SigningFailure("Cannot backfill a signature for a label with no id")

        signed = await self.sign(label)
        await self._store.set_signature(label.id, signed.sig)

        get_metrics().signatures_backfilled += 1
        logger.info("Backfilled label signature", seq=label.id, val=label.val)
        return signed
