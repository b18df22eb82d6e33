# Core labeler services
from .encoding import LabelEncoder, CanonicalEncodingError
from .signer import Signer, Ed25519Signer, load_signer
from .bridge import SigningBridge
from .query import QueryEngine, QueryResult, parse_cursor, parse_limit
from .frames import MessageFrame, ErrorFrame, FrameDecodeError, decode_frame
from .hub import SubscriptionHub, ConnectionClosed, LABELS_TOPIC
from .replay import (
    ReplayCoordinator,
    Subscription,
    SubscriptionState,
    FrameTransport,
)
from .auth import AuthGate, AuthVerifier, SharedSecretVerifier, allow_list
from .labeler import LabelerService

__all__ = [
    "LabelEncoder",
    "CanonicalEncodingError",
    "Signer",
    "Ed25519Signer",
    "load_signer",
    "SigningBridge",
    "QueryEngine",
    "QueryResult",
    "parse_cursor",
    "parse_limit",
    "MessageFrame",
    "ErrorFrame",
    "FrameDecodeError",
    "decode_frame",
    "SubscriptionHub",
    "ConnectionClosed",
    "LABELS_TOPIC",
    "ReplayCoordinator",
    "Subscription",
    "SubscriptionState",
    "FrameTransport",
    "AuthGate",
    "AuthVerifier",
    "SharedSecretVerifier",
    "allow_list",
    "LabelerService",
]
