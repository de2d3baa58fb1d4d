"""
Authorization Code + PKCE grant, without any server-side store.

Two operations make up the flow:

- issue_authorization_code(): validates an /authorize request, signs a
  short-lived "code" token bound to the PKCE challenge, and returns the
  redirect URL carrying it.
- exchange_authorization_code(): validates a /token request, verifies the
  code and the PKCE verifier, and mints a long-lived "access" token.

Both take plain parameter mappings and raise OAuthError; the HTTP layer in
routes.py turns that into a JSON error response. Neither function records
anything: a code stays usable until it expires, so exchanging the same code
twice inside its five-minute window yields two independent access tokens.
"""

import base64
import hashlib
import logging
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from freshsales_mcp.tokens import ACCESS_TOKEN_EXPIRES_IN, TokenKind, TokenSigner

logger = logging.getLogger("freshsales-mcp.oauth")

DEFAULT_CODE_CHALLENGE_METHOD = "S256"


class OAuthError(Exception):
    """
    An OAuth protocol error (RFC 6749 section 5.2 style).

    Attributes:
        error: Machine-readable error code, e.g. "invalid_grant"
        description: Optional human-readable detail (sent as error_description)
        status_code: HTTP status code for the JSON error response
    """

    def __init__(self, error: str, description: str | None = None, status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


def compute_code_challenge(code_verifier: str) -> str:
    """S256 transform: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _param(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise OAuthError("invalid_request", f"Parameter '{name}' must be a string")
    return value


def _with_query(url: str, **extra: str) -> str:
    """Set query parameters on a URL, replacing same-named ones and keeping the rest."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in extra]
    query.extend(extra.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def issue_authorization_code(params: Mapping[str, Any], signer: TokenSigner) -> str:
    """
    Handle an authorization request and return the redirect URL.

    Raises:
        OAuthError: unsupported_response_type or invalid_request. These are
            never redirected, because the redirect target is not trusted yet.
    """
    if _param(params, "response_type") != "code":
        raise OAuthError("unsupported_response_type")

    client_id = _param(params, "client_id")
    redirect_uri = _param(params, "redirect_uri")
    code_challenge = _param(params, "code_challenge")
    state = _param(params, "state")
    code_challenge_method = _param(params, "code_challenge_method") or DEFAULT_CODE_CHALLENGE_METHOD

    if not client_id or not redirect_uri or not code_challenge:
        raise OAuthError("invalid_request")

    target = urlsplit(redirect_uri)
    if not target.scheme or not target.netloc:
        raise OAuthError("invalid_request", "redirect_uri must be an absolute URL")

    code = signer.issue_code(
        client_id=client_id,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        redirect_uri=redirect_uri,
    )

    logger.info(
        "Authorization code issued",
        extra={
            "auth_data": {
                "client_id": client_id,
                "code_challenge_method": code_challenge_method,
                "decision": "code_issued",
            }
        },
    )

    if state:
        return _with_query(redirect_uri, code=code, state=state)
    return _with_query(redirect_uri, code=code)


def exchange_authorization_code(params: Mapping[str, Any], signer: TokenSigner) -> dict[str, Any]:
    """
    Handle a token request and return the token response body.

    Validation order: grant type, required parameters, code signature / kind /
    expiry, then PKCE. Only the S256 transform is checked, whatever
    code_challenge_method the code was issued with.

    Raises:
        OAuthError: unsupported_grant_type, invalid_request or invalid_grant
    """
    if params.get("grant_type") != "authorization_code":
        raise OAuthError("unsupported_grant_type")

    code = _param(params, "code")
    code_verifier = _param(params, "code_verifier")
    client_id = _param(params, "client_id")

    if not code or not code_verifier or not client_id:
        raise OAuthError("invalid_request")

    payload = signer.verify(code, kind=TokenKind.CODE)
    if payload is None:
        _log_rejection(client_id, "invalid_code")
        raise OAuthError("invalid_grant")

    # The challenge comes out of MAC-verified data, so plain equality is fine.
    if compute_code_challenge(code_verifier) != payload.code_challenge:
        _log_rejection(client_id, "pkce_mismatch")
        raise OAuthError("invalid_grant", "Code verifier mismatch")

    if client_id != payload.client_id:
        logger.warning(
            "Token request client_id differs from authorization code",
            extra={
                "auth_data": {
                    "client_id": payload.client_id,
                    "requested_client_id": client_id,
                }
            },
        )

    access_token = signer.issue_access_token(payload.client_id)

    logger.info(
        "Access token issued",
        extra={
            "auth_data": {
                "client_id": payload.client_id,
                "expires_in": ACCESS_TOKEN_EXPIRES_IN,
                "decision": "token_issued",
            }
        },
    )

    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES_IN,
    }


def _log_rejection(client_id: str, reason: str) -> None:
    logger.warning(
        "Token exchange rejected",
        extra={
            "auth_data": {
                "client_id": client_id,
                "decision": "rejected",
                "reason": reason,
            }
        },
    )
