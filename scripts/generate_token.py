"""
CLI utility to mint access tokens without going through the OAuth flow.

Useful for smoke-testing the /mcp endpoint with curl. The token is signed
with the same key derivation the server uses, so the secret must match the
server's operator secret (MCP_OAUTH_SECRET, or FRESHSALES_API_KEY when that
is unset).

Usage examples:

    # Token for client "cli" signed with the operator secret from the environment
    python -m scripts.generate_token --client-id cli

    # Explicit secret, 2 hour lifetime
    python -m scripts.generate_token --client-id ci-agent --secret my-secret --exp-hours 2

    # Expired token (for testing rejection)
    python -m scripts.generate_token --client-id cli --exp-hours -1
"""

import argparse
import datetime
import os

from freshsales_mcp.tokens import Payload, TokenKind, TokenSigner


def generate_token(client_id: str, secret: str, exp_hours: float = 8.0) -> str:
    """
    Mint a signed access token for the given client.

    Args:
        client_id: Client identifier embedded in the token
        secret: Operator secret the signing key is derived from
        exp_hours: Hours until expiration (negative = already expired)
    """
    signer = TokenSigner.from_secret(secret)
    payload = Payload(
        kind=TokenKind.ACCESS,
        client_id=client_id,
        expires_at=signer.now_ms() + int(exp_hours * 3600 * 1000),
    )
    return signer.sign(payload)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint access tokens for the Freshsales MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--client-id", required=True, help="Client identifier to embed")
    parser.add_argument(
        "--secret",
        default=os.getenv("MCP_OAUTH_SECRET") or os.getenv("FRESHSALES_API_KEY"),
        help="Operator secret (default: MCP_OAUTH_SECRET or FRESHSALES_API_KEY)",
    )
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until token expires (negative = already expired, default: 8)",
    )
    args = parser.parse_args()

    if not args.secret:
        parser.error("no secret given and neither MCP_OAUTH_SECRET nor FRESHSALES_API_KEY is set")

    token = generate_token(args.client_id, args.secret, args.exp_hours)
    exp_time = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
        hours=args.exp_hours
    )

    print(f"Client:     {args.client_id}")
    print(f"Expires:    {exp_time.isoformat()}")
    print()
    print(f"Token: {token}")
    print()
    print("Usage with curl (initialize MCP session):")
    print("  curl -X POST http://localhost:8080/mcp \\")
    print('    -H "Content-Type: application/json" \\')
    print('    -H "Accept: application/json, text/event-stream" \\')
    print(f'    -H "Authorization: Bearer {token}" \\')
    print(
        '    -d \'{"jsonrpc":"2.0","id":1,"method":"initialize",'
        '"params":{"protocolVersion":"2025-03-26","capabilities":{},'
        '"clientInfo":{"name":"test","version":"1.0"}}}\''
    )


if __name__ == "__main__":
    main()
