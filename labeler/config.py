"""
Labeler Configuration

Environment Variables:
    LABELER_DID: The labeler's DID (required in production)
    LABELER_SIGNING_KEY: Base64 Ed25519 private key (32-byte seed)
    LABELER_AUTH_SECRET: Shared secret for write tokens
    LABELER_AUTH_MAX_AGE: Token lifetime in seconds (default 300)
    LABELER_AUTHORIZED_DIDS: Comma-separated DIDs allowed to write,
        in addition to the labeler itself
    LABELER_REPLAY_BATCH_SIZE: Rows per backlog page on subscribe (default 500)
    LABELER_CORS_ORIGINS: Comma-separated allowed origins
    LABELER_PRODUCTION: 1/true/yes enables production checks
"""

import os
import warnings
from dataclasses import dataclass, field
from typing import Optional

from .observability import is_production

DEV_LABELER_DID = "did:example:labeler"
DEV_AUTH_SECRET = "dev-insecure-labeler-secret-do-not-use-in-production"


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class LabelerConfig:
    """Runtime configuration for one labeler instance."""
    did: str = DEV_LABELER_DID
    signing_key: Optional[str] = None
    auth_secret: str = DEV_AUTH_SECRET
    auth_max_age: int = 300
    authorized_dids: list[str] = field(default_factory=list)
    replay_batch_size: int = 500
    cors_origins: list[str] = field(default_factory=list)
    production: bool = False

    @classmethod
    def from_env(cls) -> "LabelerConfig":
        """
        Load configuration from environment variables.

        Raises:
            RuntimeError: If a production deployment is missing its DID or secret
        """
        production = is_production()

        did = os.getenv("LABELER_DID", "")
        if not did:
            if production:
                raise RuntimeError("LABELER_DID must be set in production")
            did = DEV_LABELER_DID

        auth_secret = os.getenv("LABELER_AUTH_SECRET", "")
        if not auth_secret or len(auth_secret) < 16:
            if production:
                raise RuntimeError(
                    "LABELER_AUTH_SECRET must be set in production (16+ characters). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
                )
            warnings.warn(
                "LABELER_AUTH_SECRET not set. Using insecure default.",
                stacklevel=2,
            )
            auth_secret = DEV_AUTH_SECRET

        batch_size = int(os.getenv("LABELER_REPLAY_BATCH_SIZE", "500"))
        if batch_size < 1:
            raise ValueError("LABELER_REPLAY_BATCH_SIZE must be positive")

        return cls(
            did=did,
            signing_key=os.getenv("LABELER_SIGNING_KEY") or None,
            auth_secret=auth_secret,
            auth_max_age=int(os.getenv("LABELER_AUTH_MAX_AGE", "300")),
            authorized_dids=_split_list(os.getenv("LABELER_AUTHORIZED_DIDS", "")),
            replay_batch_size=batch_size,
            cors_origins=_split_list(os.getenv("LABELER_CORS_ORIGINS", "")),
            production=production,
        )

    @property
    def writer_dids(self) -> list[str]:
        """Every DID allowed to emit events: the labeler plus the extra allow-list."""
        return [self.did, *[d for d in self.authorized_dids if d != self.did]]
