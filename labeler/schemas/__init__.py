# Canonical schemas for the labeler.
# Labels are the only persisted entity; events are request shapes.

from .label import (
    Label,
    LabelBody,
    SignedLabel,
    LABEL_VERSION,
    now_timestamp,
    format_timestamp,
    expiry_after,
    bytes_to_json,
    bytes_from_json,
)
from .events import (
    ModEventLabel,
    ModEventView,
    RepoRef,
    StrongRef,
    Subject,
    MOD_EVENT_LABEL,
)

__all__ = [
    # Label
    "Label",
    "LabelBody",
    "SignedLabel",
    "LABEL_VERSION",
    "now_timestamp",
    "format_timestamp",
    "expiry_after",
    "bytes_to_json",
    "bytes_from_json",
    # Events
    "ModEventLabel",
    "ModEventView",
    "RepoRef",
    "StrongRef",
    "Subject",
    "MOD_EVENT_LABEL",
]
