"""
Canonical Label Encoding

Produces the exact bytes a label signature covers.
Same label -> same bytes. Always.

If this changes, every stored signature stops verifying.
Every change here must be backward-compatible or versioned
(bump the label `ver`).

CANONICAL ENCODING RULES:
1. Payload: every signed field of the label; `id` and `sig` are never included
2. Absent optionals (cid, exp): omitted entirely, not encoded as null
3. neg: always present as a boolean
4. Map keys: canonical CBOR order (shorter keys first, then bytewise)
5. Integers: smallest CBOR encoding
6. Floats: BANNED
7. Strings: preserved byte for byte (timestamps are stored as issued)
8. Top-level: must be a map
"""

from typing import Any

import cbor2

from ..schemas.label import LabelBody


class CanonicalEncodingError(Exception):
    """Raised when a value cannot be canonically encoded."""
    pass


class LabelEncoder:
    """
    Canonical CBOR encoding for label payloads.

    The ordering rule matches DAG-CBOR, so consumers using any
    DAG-CBOR implementation reproduce the same bytes.
    """

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalEncodingError(
                f"Cannot encode float at {path}. "
                "Floats are banned in signed payloads."
            )

        if isinstance(value, (str, bytes)):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_map(value, path)

        raise CanonicalEncodingError(
            f"Cannot encode {type(value).__name__} at {path}."
        )

    @classmethod
    def _to_canonical_map(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key, value in data.items():
            if not isinstance(key, str):
                raise CanonicalEncodingError(
                    f"Map key at {path} must be string, got {type(key).__name__}"
                )
            serialized = cls._serialize_value(value, f"{path}.{key}" if path else key)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonical_fields(cls, label: LabelBody | dict[str, Any]) -> dict[str, Any]:
        """
        The signed payload of a label as a plain dict.

        Accepts a label model or a raw dict (for verifying exported
        labels). `id` and `sig` are dropped either way.
        """
        if isinstance(label, LabelBody):
            data = label.signing_fields()
        elif isinstance(label, dict):
            data = {k: v for k, v in label.items() if k not in ("id", "sig")}
        else:
            raise CanonicalEncodingError(
                f"Top-level encoding requires a label or dict, got {type(label).__name__}"
            )
        return cls._to_canonical_map(data)

    @classmethod
    def encode(cls, label: LabelBody | dict[str, Any]) -> bytes:
        """
        Encode a label to its canonical signing bytes.

        Raises:
            CanonicalEncodingError: If the label holds a non-encodable value
        """
        return cbor2.dumps(cls.canonical_fields(label), canonical=True)
