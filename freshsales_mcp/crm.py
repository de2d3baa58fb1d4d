"""Thin async client for the Freshsales CRM REST API."""

import logging
from typing import Any

import httpx

logger = logging.getLogger("freshsales-mcp.crm")


def _unwrap(data: Any, key: str) -> dict[str, Any]:
    """Return data[key] from a Freshsales response envelope, which must be an object."""
    if not isinstance(data, dict):
        raise TypeError(f"Expected a JSON object with '{key}', got {type(data).__name__}")
    entity = data[key]
    if not isinstance(entity, dict):
        raise TypeError(f"Expected '{key}' to be an object, got {type(entity).__name__}")
    return entity


class CrmClient:
    """
    Freshsales API client authenticated with the static account API key.

    A fresh httpx.AsyncClient is opened per call, so the object holds no
    connections and is safe to share. Non-2xx responses raise
    httpx.HTTPStatusError. A 2xx body that is not JSON raises ValueError, and
    one without the expected envelope raises KeyError or TypeError. Callers
    decide how to report them.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Token token={api_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async with self._client() as client:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

    async def find_contact_id(self, query: str) -> int | str | None:
        """Return the id of the first contact matching a name or email, or None."""
        try:
            results = await self._request(
                "GET", "/search", params={"q": query, "include": "contact"}
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Contact search failed: %s", e)
            return None

        if not isinstance(results, list):
            logger.warning("Contact search returned %s, expected a list", type(results).__name__)
            return None

        for item in results:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "contact" or item.get("entity_type") == "contact":
                return item.get("id") or item.get("entity_id")
        return None

    async def get_contact(self, contact_id: int | str) -> dict[str, Any]:
        data = await self._request("GET", f"/contacts/{contact_id}")
        return _unwrap(data, "contact")

    async def list_notes(self, contact_id: int | str, limit: int = 3) -> list[dict[str, Any]]:
        """Most recent notes first."""
        data = await self._request(
            "GET",
            f"/contacts/{contact_id}/notes",
            params={"sort": "created_at", "sort_type": "desc", "per_page": limit},
        )
        if data is None:
            return []
        if not isinstance(data, dict):
            raise TypeError(f"Expected a JSON object with 'notes', got {type(data).__name__}")
        return [note for note in data.get("notes") or [] if isinstance(note, dict)]

    async def create_contact(self, fields: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/contacts", json={"contact": fields})
        return _unwrap(data, "contact")

    async def update_contact(self, contact_id: int | str, fields: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PUT", f"/contacts/{contact_id}", json={"contact": fields})
        return _unwrap(data, "contact")

    async def add_note(self, contact_id: int | str, description: str) -> dict[str, Any] | None:
        data = await self._request(
            "POST",
            "/notes",
            json={
                "note": {
                    "description": description,
                    "targetable_type": "Contact",
                    "targetable_id": contact_id,
                }
            },
        )
        if data is None:
            return None
        return _unwrap(data, "note")
