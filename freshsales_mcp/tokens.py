"""
Stateless signed tokens for the OAuth flow.

Authorization codes and access tokens are both produced by TokenSigner and
carry their whole meaning inside themselves. Nothing is stored server-side:
a token is valid iff

- its HMAC verifies under the process signing key (constant-time compare),
- its "kind" matches the slot it is presented in (code vs access), and
- the current time is before its "expires_at" deadline.

Any process holding the same operator secret can verify tokens issued by any
other. Rotating the secret invalidates everything outstanding.

Token structure (HS256 JWT payload):
    {
        "kind": "code",                      # or "access"
        "client_id": "abc",
        "code_challenge": "E9Mel...",        # code only
        "code_challenge_method": "S256",     # code only
        "redirect_uri": "https://app/cb",    # code only
        "expires_at": 1760000000000          # epoch milliseconds
    }

The standard JWT "exp" claim is not used: expiry is tracked in milliseconds
and checked here against an injectable clock, so tests can move time.
"""

import enum
import hashlib
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

import jwt

logger = logging.getLogger("freshsales-mcp.tokens")

ALGORITHM = "HS256"

AUTH_CODE_TTL_MS = 5 * 60 * 1000
ACCESS_TOKEN_TTL_MS = 7 * 24 * 60 * 60 * 1000
ACCESS_TOKEN_EXPIRES_IN = ACCESS_TOKEN_TTL_MS // 1000  # 604800 seconds

_REQUIRED_CLAIMS = ["kind", "client_id", "expires_at"]


class TokenKind(str, enum.Enum):
    """Discriminates the two token namespaces sharing one signing key."""

    CODE = "code"
    ACCESS = "access"


@dataclass(frozen=True)
class Payload:
    """
    The signed content of a code or access token.

    Frozen: a payload is created once, signed, and never mutated.

    Attributes:
        kind: Which slot the token is valid in
        client_id: Opaque client identifier supplied at /authorize
        expires_at: Absolute deadline in epoch milliseconds
        code_challenge: PKCE challenge (codes only)
        code_challenge_method: PKCE method as requested (codes only)
        redirect_uri: Redirect target of the authorization request (codes only)
    """

    kind: TokenKind
    client_id: str
    expires_at: int
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    redirect_uri: str | None = None

    def to_claims(self) -> dict[str, Any]:
        claims = {k: v for k, v in asdict(self).items() if v is not None}
        claims["kind"] = self.kind.value
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Payload":
        """Rebuild a payload from decoded claims. Raises ValueError on bad types."""
        expires_at = claims["expires_at"]
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise ValueError("expires_at must be an integer")

        client_id = claims["client_id"]
        if not isinstance(client_id, str):
            raise ValueError("client_id must be a string")

        optional = {}
        for name in ("code_challenge", "code_challenge_method", "redirect_uri"):
            value = claims.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
            optional[name] = value

        return cls(
            kind=TokenKind(claims["kind"]),
            client_id=client_id,
            expires_at=expires_at,
            **optional,
        )


def derive_signing_key(secret: str) -> bytes:
    """Derive the fixed-length (32 byte) signing key from the operator secret."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


class TokenSigner:
    """
    Signs and verifies stateless tokens with a process-wide key.

    The instance is read-only after construction, so one signer can be shared
    by every concurrent request.
    """

    def __init__(self, signing_key: bytes, clock: Callable[[], float] = time.time):
        if len(signing_key) < 32:
            raise ValueError("signing key must be at least 32 bytes")
        self._key = signing_key
        self._clock = clock

    @classmethod
    def from_secret(cls, secret: str, clock: Callable[[], float] = time.time) -> "TokenSigner":
        if not secret:
            raise ValueError("operator secret must not be empty")
        return cls(derive_signing_key(secret), clock=clock)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def sign(self, payload: Payload) -> str:
        """Serialize and MAC a payload into an opaque token string."""
        return jwt.encode(payload.to_claims(), self._key, algorithm=ALGORITHM)

    def verify(self, token: str, kind: TokenKind | None = None) -> Payload | None:
        """
        Check a token and return its payload, or None if it is not valid.

        Never raises: malformed input, a bad MAC, missing or mistyped claims,
        the wrong kind, and expiry all map to None. The reason is logged at
        debug level only.

        Args:
            token: The opaque token string
            kind: If given, the token must have been issued for this slot
        """
        if not token or not isinstance(token, str):
            return None

        # PyJWT checks the HMAC with hmac.compare_digest (constant time).
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[ALGORITHM],
                options={"require": _REQUIRED_CLAIMS, "verify_exp": False},
            )
            payload = Payload.from_claims(claims)
        except jwt.InvalidTokenError as e:
            logger.debug("Token rejected: %s", e)
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("Token rejected: malformed claims (%s)", e)
            return None

        if kind is not None and payload.kind is not kind:
            logger.debug("Token rejected: kind %s, expected %s", payload.kind.value, kind.value)
            return None

        if self.now_ms() >= payload.expires_at:
            logger.debug("Token rejected: expired")
            return None

        return payload

    # --- Issuance helpers ---

    def issue_code(
        self,
        client_id: str,
        code_challenge: str,
        code_challenge_method: str,
        redirect_uri: str,
    ) -> str:
        return self.sign(
            Payload(
                kind=TokenKind.CODE,
                client_id=client_id,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
                redirect_uri=redirect_uri,
                expires_at=self.now_ms() + AUTH_CODE_TTL_MS,
            )
        )

    def issue_access_token(self, client_id: str) -> str:
        return self.sign(
            Payload(
                kind=TokenKind.ACCESS,
                client_id=client_id,
                expires_at=self.now_ms() + ACCESS_TOKEN_TTL_MS,
            )
        )
