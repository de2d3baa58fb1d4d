"""
Plain HTTP endpoints served next to the MCP endpoint.

- /oauth/authorize, /oauth/token: the stateless Authorization Code + PKCE flow
- /oauth/register: dynamic client registration (identity only, nothing stored)
- /.well-known/*: authorization server and protected resource metadata
- /health: liveness probe

None of these require authentication. Every error is a JSON body with an
"error" field; nothing propagates to the client as a stack trace.
"""

import json
import logging
import uuid
from typing import Any

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from freshsales_mcp.oauth import OAuthError, exchange_authorization_code, issue_authorization_code
from freshsales_mcp.tokens import TokenSigner

logger = logging.getLogger("freshsales-mcp.routes")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept, Authorization, Mcp-Session-Id",
    "Access-Control-Expose-Headers": "Mcp-Session-Id",
}

# Registered on every OAuth route so wrong verbs get a JSON 405, not Starlette's text one.
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    """Adds permissive CORS headers to every response and answers preflights with 204."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=CORS_HEADERS)

        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response


def _error(error: str, status_code: int, description: str | None = None) -> JSONResponse:
    return JSONResponse(OAuthError(error, description).to_dict(), status_code=status_code)


def _method_not_allowed() -> JSONResponse:
    return _error("method_not_allowed", 405)


async def read_body_params(request: Request) -> dict[str, Any]:
    """
    Read a JSON or form-encoded body into a dict.

    An empty body reads as {}. A body that cannot be parsed raises ValueError.
    """
    raw = await request.body()
    if not raw.strip():
        return {}

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def register_oauth_routes(
    mcp: FastMCP,
    signer: TokenSigner,
    public_url: str | None = None,
) -> None:
    """Attach the OAuth, discovery and health routes to a FastMCP server."""

    def issuer_for(request: Request) -> str:
        if public_url:
            return public_url
        return f"https://{request.headers.get('host', 'localhost')}"

    @mcp.custom_route("/oauth/authorize", methods=ALL_METHODS)
    async def authorize(request: Request) -> Response:
        if request.method != "GET":
            return _method_not_allowed()

        try:
            location = issue_authorization_code(request.query_params, signer)
        except OAuthError as e:
            logger.info("Authorization request rejected: %s", e)
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception:
            logger.exception("Authorization request failed")
            return _error("internal", 500)

        return RedirectResponse(location, status_code=302)

    @mcp.custom_route("/oauth/token", methods=ALL_METHODS)
    async def token(request: Request) -> Response:
        if request.method != "POST":
            return _method_not_allowed()

        try:
            params = await read_body_params(request)
        except ValueError as e:
            logger.warning("Token request with malformed body: %s", e)
            return _error("internal", 500, "Malformed request body")

        try:
            body = exchange_authorization_code(params, signer)
        except OAuthError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception:
            logger.exception("Token request failed")
            return _error("internal", 500)

        return JSONResponse(body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    @mcp.custom_route("/oauth/register", methods=ALL_METHODS)
    async def register(request: Request) -> Response:
        if request.method != "POST":
            return _method_not_allowed()

        try:
            metadata = await read_body_params(request)
        except ValueError as e:
            logger.warning("Registration request with malformed body: %s", e)
            return _error("internal", 500, "Malformed request body")

        client_id = str(uuid.uuid4())
        logger.info(
            "Client registered",
            extra={"auth_data": {"client_id": client_id, "client_name": metadata.get("client_name")}},
        )
        return JSONResponse(
            {
                "client_id": client_id,
                "client_name": metadata.get("client_name") or "MCP Client",
                "redirect_uris": metadata.get("redirect_uris") or [],
                "grant_types": metadata.get("grant_types") or ["authorization_code"],
                "response_types": metadata.get("response_types") or ["code"],
                "token_endpoint_auth_method": "none",
            },
            status_code=201,
        )

    @mcp.custom_route("/.well-known/oauth-authorization-server", methods=["GET", "OPTIONS"])
    async def authorization_server_metadata(request: Request) -> Response:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
        issuer = issuer_for(request)
        return JSONResponse(
            {
                "issuer": issuer,
                "authorization_endpoint": f"{issuer}/oauth/authorize",
                "token_endpoint": f"{issuer}/oauth/token",
                "registration_endpoint": f"{issuer}/oauth/register",
                "response_types_supported": ["code"],
                "grant_types_supported": ["authorization_code"],
                "code_challenge_methods_supported": ["S256"],
                "token_endpoint_auth_methods_supported": ["none"],
            }
        )

    async def protected_resource_metadata(request: Request) -> Response:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
        issuer = issuer_for(request)
        return JSONResponse(
            {
                "resource": issuer,
                "authorization_servers": [issuer],
                "bearer_methods_supported": ["header"],
            }
        )

    mcp.custom_route("/.well-known/oauth-protected-resource", methods=["GET", "OPTIONS"])(
        protected_resource_metadata
    )
    mcp.custom_route("/.well-known/oauth-protected-resource/mcp", methods=["GET", "OPTIONS"])(
        protected_resource_metadata
    )

    # Liveness probe. It exposes nothing sensitive, so it stays unauthenticated.
    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})
