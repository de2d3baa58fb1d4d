"""
Bearer token validation for the MCP resource endpoint.

This module is the resource-server gate:
- Extracts Bearer tokens from the HTTP Authorization header
- Verifies them with the TokenSigner, restricted to access tokens (a leaked
  authorization code is never accepted here)
- Rejects the HTTP request with 401 before it reaches FastMCP
- Attributes tool calls to the token's client_id in the audit log

All valid access tokens carry the same privilege: client_id is recorded for
attribution, not used for authorization.
"""

import logging
import uuid
from dataclasses import dataclass

from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import ToolResult
from mcp.types import CallToolRequestParams
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from freshsales_mcp.tokens import TokenKind, TokenSigner

logger = logging.getLogger("freshsales-mcp.auth")


class AuthError(Exception):
    """
    Raised when bearer token validation fails for any reason.

    One exception type covers every failure (missing header, wrong scheme,
    bad signature, wrong kind, expired). The detailed message is logged
    server-side; the client gets a generic description.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class TokenInfo:
    """
    Validated access token information.

    Attributes:
        client_id: The OAuth client the token was issued to
        expires_at: Token deadline in epoch milliseconds
    """

    client_id: str
    expires_at: int


def validate_token(authorization_header: str | None, signer: TokenSigner) -> TokenInfo:
    """
    Validate a Bearer access token from the Authorization header.

    Args:
        authorization_header: The raw Authorization header value,
                              expected format: "Bearer <token>"
        signer: Verifier holding the process signing key

    Returns:
        TokenInfo for the token's client

    Raises:
        AuthError: If any validation step fails
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    # RFC 6750 scheme name, matched case-insensitively.
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    payload = signer.verify(parts[1].strip(), kind=TokenKind.ACCESS)
    if payload is None:
        raise AuthError("Invalid or expired token")

    return TokenInfo(client_id=payload.client_id, expires_at=payload.expires_at)


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """
    Rejects unauthenticated requests to the MCP endpoint with HTTP 401.

    Only paths under `protected_path` are gated; discovery, OAuth and health
    routes stay public. On success the client_id is stored on request.state
    so later layers can attribute the call.
    """

    def __init__(
        self,
        app: ASGIApp,
        signer: TokenSigner,
        protected_path: str = "/mcp",
        public_url: str | None = None,
    ):
        super().__init__(app)
        self.signer = signer
        self.protected_path = protected_path.rstrip("/")
        self.public_url = public_url

    def _is_protected(self, path: str) -> bool:
        return path == self.protected_path or path.startswith(self.protected_path + "/")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or not self._is_protected(request.url.path):
            return await call_next(request)

        request_id = str(uuid.uuid4())[:8]
        try:
            token_info = validate_token(request.headers.get("authorization"), self.signer)
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "path": request.url.path,
                        "decision": "rejected",
                        "reason": e.message,
                    }
                },
            )
            issuer = self.public_url or f"https://{request.headers.get('host', 'localhost')}"
            return JSONResponse(
                {"error": "unauthorized", "error_description": "Missing or invalid access token"},
                status_code=e.status_code,
                headers={
                    "WWW-Authenticate": (
                        f'Bearer resource_metadata="{issuer}/.well-known/oauth-protected-resource"'
                    )
                },
            )

        request.state.client_id = token_info.client_id
        logger.info(
            "Authentication successful",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "client_id": token_info.client_id,
                    "decision": "authenticated",
                }
            },
        )
        return await call_next(request)


class ToolAuditMiddleware(Middleware):
    """Logs every tool call together with the client that made it."""

    def _get_client_id(self) -> str | None:
        # No HTTP request exists under the stdio transport.
        try:
            request = get_http_request()
        except RuntimeError:
            return None
        return getattr(request.state, "client_id", None)

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        logger.info(
            "Tool call",
            extra={
                "auth_data": {
                    "client_id": self._get_client_id(),
                    "tool": context.message.name,
                }
            },
        )
        return await call_next(context)
