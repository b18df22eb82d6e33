"""
Database Layer for the Labeler

Provides:
- LabelStore abstraction (InMemory for dev, asyncpg/PostgreSQL for prod)
- URI pattern compilation for filtered scans
- Connection configuration
"""

from .store import (
    LabelStore,
    InMemoryLabelStore,
    AsyncPostgresLabelStore,
    SCHEMA_SQL,
    open_label_store,
)
from .patterns import UriPattern, compile_uri_patterns
from .config import (
    DatabaseConfig,
    LabelStoreDriver,
    get_database_url,
    get_labelstore_driver,
)

__all__ = [
    "LabelStore",
    "InMemoryLabelStore",
    "AsyncPostgresLabelStore",
    "SCHEMA_SQL",
    "open_label_store",
    "UriPattern",
    "compile_uri_patterns",
    "DatabaseConfig",
    "LabelStoreDriver",
    "get_database_url",
    "get_labelstore_driver",
]
