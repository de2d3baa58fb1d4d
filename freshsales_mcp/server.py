"""
Freshsales MCP server with a stateless OAuth 2.0 + PKCE front door.

This module assembles the application:
- FastMCP server with the CRM tools (tools.py) at /mcp (Streamable HTTP)
- OAuth, discovery, registration and health routes (routes.py)
- CORS on every response, OPTIONS preflights answered with 204
- Bearer access token gate on /mcp (auth.py); rejected calls never reach the CRM
- Structured JSON logging for issuance and gate decisions

Architecture:
    The signing key is derived once from the operator secret in Settings and
    injected into every component through a single TokenSigner. Nothing else
    is shared between requests.

    Request path for a tool call:

    1. CORSHeadersMiddleware (outermost): preflight short-circuit, headers
    2. BearerAuthMiddleware: verifies the access token or answers 401
    3. FastMCP transport + ToolAuditMiddleware: logs tool and client_id
    4. Tool handler: calls the Freshsales API through CrmClient

Running the server:
    python -m freshsales_mcp.server

    Requires FRESHSALES_API_KEY and FRESHSALES_BASE_URL; startup fails
    without them.
"""

import json
import logging
import sys

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware

from freshsales_mcp.auth import BearerAuthMiddleware, ToolAuditMiddleware
from freshsales_mcp.config import Settings, load_settings
from freshsales_mcp.crm import CrmClient
from freshsales_mcp.routes import CORSHeadersMiddleware, register_oauth_routes
from freshsales_mcp.tokens import TokenSigner
from freshsales_mcp.tools import register_tools

MCP_PATH = "/mcp"

logger = logging.getLogger("freshsales-mcp")


# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
         "logger": "freshsales-mcp.oauth", "message": "Access token issued",
         "client_id": "abc", "decision": "token_issued"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"auth_data": {...}})
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_server(
    settings: Settings,
    signer: TokenSigner,
    crm: CrmClient | None = None,
) -> FastMCP:
    """Build the FastMCP server with tools and the public OAuth routes."""
    mcp = FastMCP(
        name="freshsales-real-estate",
        instructions=(
            "Freshsales CRM assistant for a real estate team. Look up client "
            "briefs, create and update contacts, and log notes."
        ),
        middleware=[ToolAuditMiddleware()],
    )

    if crm is None:
        crm = CrmClient(settings.crm_base_url, settings.crm_api_key.get_secret_value())

    register_tools(mcp, crm)
    register_oauth_routes(mcp, signer, public_url=settings.public_url)
    return mcp


def create_app(
    settings: Settings,
    signer: TokenSigner | None = None,
    crm: CrmClient | None = None,
) -> Starlette:
    """
    Build the ASGI application.

    Args:
        settings: Validated configuration (carries the operator secret)
        signer: Token signer override; derived from settings when omitted
        crm: CRM client override (tests pass one with a mock transport)
    """
    if signer is None:
        signer = TokenSigner.from_secret(settings.signing_secret)

    mcp = create_server(settings, signer, crm)
    return mcp.http_app(
        path=MCP_PATH,
        transport="streamable-http",
        middleware=[
            Middleware(CORSHeadersMiddleware),
            Middleware(
                BearerAuthMiddleware,
                signer=signer,
                protected_path=MCP_PATH,
                public_url=settings.public_url,
            ),
        ],
    )


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


def main() -> None:
    # Fails fast (pydantic ValidationError) when the operator secret is missing.
    settings = load_settings()
    configure_logging(settings.log_level)

    app = create_app(settings)
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=oauth-pkce)",
        settings.host,
        settings.port,
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
