# XRPC surface of the labeler
from .routes import router, QUERY_LABELS, SUBSCRIBE_LABELS, EMIT_EVENT
from .errors import install_error_handlers
from .transport import WebSocketTransport

__all__ = [
    "router",
    "QUERY_LABELS",
    "SUBSCRIBE_LABELS",
    "EMIT_EVENT",
    "install_error_handlers",
    "WebSocketTransport",
]
