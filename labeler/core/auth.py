"""
Auth for write endpoints.

Two steps, two errors:
- Authentication: the bearer token must verify for this labeler and
  method. Anything wrong with the credential -> AuthRequired (401).
- Authorization: the verified issuer must be allowed to write labels.
  Denial -> Unauthorized (403).

Token verification is a capability (AuthVerifier). The bundled
SharedSecretVerifier checks tokens signed with a shared secret
(itsdangerous); a deployment that resolves DIDs and verifies
service JWTs plugs in its own verifier.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, Optional, Union

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from ..errors import AuthRequired, Unauthorized
from ..observability import actor_did_var, get_logger

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "
TOKEN_SALT = "labeler-service-auth-v1"
DEFAULT_MAX_AGE = 300

AuthorizePolicy = Callable[[str], Union[bool, Awaitable[bool]]]


# ============================================================
# VERIFIERS
# ============================================================

class AuthVerifier(ABC):
    """Verifies a bearer token for an audience and method."""

    @abstractmethod
    async def verify(self, token: str, audience: str, nsid: str) -> str:
        """
        Verify a token.

        Args:
            token: Raw bearer token
            audience: DID the token must be addressed to
            nsid: Method being called

        Returns:
            The issuer DID

        Raises:
            AuthRequired: If the token is invalid for this call
        """
        pass


class SharedSecretVerifier(AuthVerifier):
    """
    Tokens signed with a shared secret.

    Payload: {"iss": <did>, "aud": <did>, "lxm": <nsid or absent>}.
    Tokens older than max_age seconds are rejected.
    """

    def __init__(self, secret: str, max_age: int = DEFAULT_MAX_AGE):
        if not secret:
            raise ValueError("A shared secret is required")
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=TOKEN_SALT)
        self._max_age = max_age

    def issue(self, iss: str, aud: str, lxm: Optional[str] = None) -> str:
        """Mint a token (used by the management CLI and tests)."""
        payload = {"iss": iss, "aud": aud}
        if lxm:
            payload["lxm"] = lxm
        return self._serializer.dumps(payload)

    async def verify(self, token: str, audience: str, nsid: str) -> str:
        try:
            payload = self._serializer.loads(token, max_age=self._max_age)
        except SignatureExpired:
            raise AuthRequired("Token has expired")
        except BadSignature:
            raise AuthRequired("Token could not be verified")

        if not isinstance(payload, dict) or not payload.get("iss"):
            raise AuthRequired("Token has no issuer")
        if payload.get("aud") != audience:
            raise AuthRequired("Token audience does not match this service")
        lxm = payload.get("lxm")
        if lxm is not None and lxm != nsid:
            raise AuthRequired("Token is not valid for this method")
        return str(payload["iss"])


# ============================================================
# POLICY
# ============================================================

def allow_list(dids: Iterable[str]) -> AuthorizePolicy:
    """Policy allowing exactly the given DIDs."""
    allowed = frozenset(did for did in dids if did)

    def policy(did: str) -> bool:
        return did in allowed

    return policy


def parse_bearer(authorization: Optional[str]) -> str:
    """
    Extract the token from an Authorization header value.

    Raises:
        AuthRequired: Missing header, wrong scheme or empty token
    """
    if not authorization:
        raise AuthRequired("Authorization header is required")
    if not authorization.startswith(BEARER_PREFIX):
        raise AuthRequired("Authorization must use the Bearer scheme")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthRequired("Bearer token is empty")
    return token


class AuthGate:
    """Authenticates and authorizes callers of write endpoints."""

    def __init__(
        self,
        verifier: AuthVerifier,
        audience: str,
        authorize: Optional[AuthorizePolicy] = None,
    ):
        """
        Args:
            verifier: Token verification capability
            audience: This labeler's DID
            authorize: did -> bool (sync or async); defaults to the labeler itself
        """
        self._verifier = verifier
        self._audience = audience
        self._authorize = authorize or allow_list([audience])

    async def check(self, authorization: Optional[str], nsid: str) -> str:
        """
        Gate a call to `nsid`.

        Returns:
            The caller's DID

        Raises:
            AuthRequired: If authentication fails
            Unauthorized: If the caller may not write labels
        """
        token = parse_bearer(authorization)
        did = await self._verifier.verify(token, self._audience, nsid)

        allowed = self._authorize(did)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        if not allowed:
            logger.warning("Write denied", actor=did, nsid=nsid)
            raise Unauthorized("Not authorized to create labels")

        actor_did_var.set(did)
        return did
