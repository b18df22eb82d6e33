"""
Label Schema

A label is a signed assertion about a subject ("this post is spam").
Labels are never edited. A retraction is a new label with neg=True.

Field rules:
- id is assigned by the store on append and never reused
- src, uri, cid, val, cts, exp are immutable
- sig may be filled in once (backfill), never altered afterwards
- cid and exp are optional; None means absent
- neg is always present (defaults to False)
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


LABEL_VERSION = 1

# Fields covered by the signature, in declaration order
SIGNED_FIELDS = ("ver", "src", "uri", "cid", "val", "neg", "cts", "exp")


def now_timestamp() -> str:
    """Current UTC time as ISO 8601 with millisecond precision and Z suffix."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(dt: datetime) -> str:
    """Format an aware datetime as 2024-01-01T00:00:00.000Z."""
    if dt.tzinfo is None:
        raise ValueError("Timestamps must be timezone-aware")
    utc = dt.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def expiry_after(cts: str, hours: int) -> str:
    """Expiry timestamp `hours` after a creation timestamp."""
    created = datetime.fromisoformat(cts.replace("Z", "+00:00"))
    return format_timestamp(created + timedelta(hours=hours))


def bytes_to_json(value: bytes) -> dict[str, str]:
    """JSON representation of a byte string: {"$bytes": base64}."""
    return {"$bytes": base64.b64encode(value).decode("ascii").rstrip("=")}


def bytes_from_json(value: dict[str, str]) -> bytes:
    encoded = value["$bytes"]
    return base64.b64decode(encoded + "=" * (-len(encoded) % 4))


class LabelBody(BaseModel):
    """Fields shared by every label shape."""

    model_config = ConfigDict(frozen=True)

    ver: int = LABEL_VERSION
    src: str = Field(..., min_length=1, description="Issuer DID")
    uri: str = Field(..., min_length=1, description="Subject URI or DID")
    cid: Optional[str] = Field(default=None, description="Pinned subject revision")
    val: str = Field(..., min_length=1, max_length=128, description="Label value")
    neg: bool = Field(default=False, description="True retracts an earlier label")
    cts: str = Field(..., description="Creation timestamp (ISO 8601)")
    exp: Optional[str] = Field(default=None, description="Expiry timestamp (ISO 8601)")

    def signing_fields(self) -> dict[str, Any]:
        """The signed payload: every signed field, absent optionals dropped."""
        data = {name: getattr(self, name) for name in SIGNED_FIELDS}
        return {k: v for k, v in data.items() if v is not None}


class Label(LabelBody):
    """
    A label as stored in the log.

    id is None until the label is appended. sig is None for labels
    that have not been signed yet (legacy rows, or candidates).
    """

    id: Optional[int] = None
    sig: Optional[bytes] = None

    @property
    def is_signed(self) -> bool:
        return self.sig is not None

    def with_id(self, label_id: int) -> "Label":
        return self.model_copy(update={"id": label_id})

    def signed(self, sig: bytes) -> "SignedLabel":
        """The signed shape of this label (drops id)."""
        return SignedLabel(**self.signing_fields(), sig=sig)


class SignedLabel(LabelBody):
    """The shape every label has when it leaves the system."""

    sig: bytes

    def to_json(self) -> dict[str, Any]:
        """JSON view (signature as {"$bytes": ...})."""
        data = self.signing_fields()
        data["sig"] = bytes_to_json(self.sig)
        return data

    def to_cbor(self) -> dict[str, Any]:
        """CBOR view (signature as raw bytes)."""
        data = self.signing_fields()
        data["sig"] = self.sig
        return data
