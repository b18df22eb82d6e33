"""
XRPC Routes

- GET  /xrpc/com.atproto.label.queryLabels
- WS   /xrpc/com.atproto.label.subscribeLabels
- POST /xrpc/tools.ozone.moderation.emitEvent

Reads are public. Writes go through the AuthGate.
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket
from fastapi.responses import JSONResponse

from ..core import AuthGate, LabelerService, QueryEngine, ReplayCoordinator
from ..errors import InvalidRequest
from ..observability import get_logger
from .deps import get_auth_gate, get_labeler, get_query_engine, get_replay_coordinator
from .transport import WebSocketTransport

logger = get_logger(__name__)

router = APIRouter(prefix="/xrpc", tags=["XRPC"])

QUERY_LABELS = "com.atproto.label.queryLabels"
SUBSCRIBE_LABELS = "com.atproto.label.subscribeLabels"
EMIT_EVENT = "tools.ozone.moderation.emitEvent"


# ============================================================
# Query
# ============================================================

@router.get(f"/{QUERY_LABELS}")
async def query_labels(
    uri_patterns: list[str] = Query(default=[], alias="uriPatterns"),
    sources: list[str] = Query(default=[]),
    limit: Optional[str] = None,
    cursor: Optional[str] = None,
    engine: QueryEngine = Depends(get_query_engine),
):
    """
    Find labels relevant to the given URI patterns.

    Returns {"cursor": <last id>, "labels": [...]} ascending by id.
    """
    result = await engine.query(uri_patterns, sources, cursor=cursor, limit=limit)
    return result.to_json()


# ============================================================
# Subscribe
# ============================================================

@router.websocket(f"/{SUBSCRIBE_LABELS}")
async def subscribe_labels(
    websocket: WebSocket,
    cursor: Optional[str] = None,
    replay: ReplayCoordinator = Depends(get_replay_coordinator),
):
    """
    Stream labels as binary frames.

    With a cursor, every label after it is replayed first. The stream
    then stays open for live labels until the client disconnects.
    """
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    subscription = await replay.open(transport, cursor)
    if not subscription.is_open:
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                transport.mark_closed()
                break
    finally:
        replay.close(subscription)
        logger.debug("Subscriber disconnected", last_seq=subscription.last_seq)


# ============================================================
# Write
# ============================================================

@router.post(f"/{EMIT_EVENT}")
async def emit_event(
    request: Request,
    gate: AuthGate = Depends(get_auth_gate),
    labeler: LabelerService = Depends(get_labeler),
):
    """
    Apply a label moderation event.

    Requires a bearer token for this labeler. Creates then negates the
    requested label values on the subject.
    """
    actor = await gate.check(request.headers.get("Authorization"), EMIT_EVENT)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Request body must be JSON")

    view = await labeler.emit_event(body, actor)
    return JSONResponse(content=view)
