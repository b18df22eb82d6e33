"""
Dependency injection for XRPC routes.

Services live on app.state (built in the lifespan), never in module
globals.
"""

from starlette.requests import HTTPConnection

from ..core import AuthGate, LabelerService, QueryEngine, ReplayCoordinator


def get_labeler(conn: HTTPConnection) -> LabelerService:
    """Get the write path from app state."""
    return conn.app.state.labeler


def get_query_engine(conn: HTTPConnection) -> QueryEngine:
    return conn.app.state.query_engine


def get_replay_coordinator(conn: HTTPConnection) -> ReplayCoordinator:
    return conn.app.state.replay


def get_auth_gate(conn: HTTPConnection) -> AuthGate:
    return conn.app.state.auth_gate
