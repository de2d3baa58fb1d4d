"""
CRM tools exposed over MCP.

Each tool is a plain async function taking a CrmClient; register_tools()
binds them to a FastMCP server. CRM failures come back as text results
and are never raised.
"""

import json
import logging
from typing import Any

import httpx
from fastmcp import FastMCP

from freshsales_mcp.crm import CrmClient

logger = logging.getLogger("freshsales-mcp.tools")

NOT_SPECIFIED = "Not specified"

# Freshsales custom fields shown in the client brief.
PROFILE_FIELDS = {
    "budget": "cf_techo_de_presupuesto_fb",
    "zones_of_interest": "cf_zonas_de_interes",
    "decision_time": "cf_tiempo_decision",
    "pre_qualified": "cf_precalificado_fb",
}


# Everything CrmClient raises for a failed call or an unexpected response body.
CRM_ERRORS = (httpx.HTTPError, KeyError, TypeError, ValueError)


def _is_conflict(error: Exception) -> bool:
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 409


def split_name(name: str) -> tuple[str, str]:
    """Split a full name into (first_name, last_name) at the last space."""
    parts = name.strip().split()
    if len(parts) < 2:
        return "", name
    return " ".join(parts[:-1]), parts[-1]


async def get_client_brief(crm: CrmClient, query: str) -> dict[str, Any] | str:
    contact_id = await crm.find_contact_id(query)
    if not contact_id:
        return f'Client not found: "{query}"'

    try:
        contact = await crm.get_contact(contact_id)
    except CRM_ERRORS as e:
        return f"Error: {e}"

    try:
        notes = await crm.list_notes(contact_id, limit=3)
    except CRM_ERRORS as e:
        logger.warning("Could not load notes for contact %s: %s", contact_id, e)
        notes = []

    custom = contact.get("custom_field") or {}
    return {
        "type": "CLIENT_BRIEF",
        "client": {
            "name": contact.get("display_name"),
            "email": contact.get("email"),
            "mobile": contact.get("mobile_number"),
            "work_phone": contact.get("work_number"),
            "location": contact.get("city") or contact.get("address"),
        },
        "profile": {
            key: custom.get(field) or NOT_SPECIFIED for key, field in PROFILE_FIELDS.items()
        },
        "recent_history": [
            {"date": (note.get("created_at") or "")[:10], "note": note.get("description")}
            for note in notes
        ],
    }


async def create_contact(
    crm: CrmClient,
    name: str,
    email: str | None = None,
    phone: str | None = None,
    city: str | None = None,
) -> dict[str, Any] | str:
    first_name, last_name = split_name(name)
    fields = {
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "mobile_number": phone,
        "city": city,
    }
    try:
        contact = await crm.create_contact({k: v for k, v in fields.items() if v is not None})
    except CRM_ERRORS as e:
        if _is_conflict(e):
            return "Error: a contact with that data already exists."
        return f"Error creating contact: {e}"

    return {
        "success": True,
        "message": f"Contact created: {contact.get('display_name')} (ID: {contact.get('id')})",
    }


async def modify_contact_details(
    crm: CrmClient,
    query: str,
    phone: str | None = None,
    work_phone: str | None = None,
    email: str | None = None,
    city: str | None = None,
) -> dict[str, Any] | str:
    contact_id = await crm.find_contact_id(query)
    if not contact_id:
        return f'Contact not found: "{query}"'

    fields = {}
    if email:
        fields["email"] = email
    if phone:
        fields["mobile_number"] = phone
    if work_phone:
        fields["work_number"] = work_phone
    if city:
        fields["city"] = city

    if not fields:
        return "No fields to update were provided."

    try:
        updated = await crm.update_contact(contact_id, fields)
    except CRM_ERRORS as e:
        if _is_conflict(e):
            return "Error: that number already belongs to another contact (unique field)."
        return f"Error updating contact: {e}"

    return {
        "success": True,
        "message": "Contact updated.",
        "new_values": {
            "name": updated.get("display_name"),
            "mobile": updated.get("mobile_number"),
            "work_phone": updated.get("work_number"),
        },
    }


async def add_note(crm: CrmClient, query: str, content: str) -> dict[str, Any] | str:
    contact_id = await crm.find_contact_id(query)
    if not contact_id:
        return f'Client not found: "{query}"'

    try:
        await crm.add_note(contact_id, content)
    except CRM_ERRORS as e:
        return f"Error: {e}"

    return {"success": True, "message": "Note added."}


def _as_text(result: dict[str, Any] | str) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, ensure_ascii=False)


def register_tools(mcp: FastMCP, crm: CrmClient) -> None:
    """Register the CRM tools on a FastMCP server, bound to one CrmClient."""

    @mcp.tool(
        name="get_client_brief",
        description="Get the client's card: contact details, profile and recent notes.",
    )
    async def _get_client_brief(query: str) -> str:
        return _as_text(await get_client_brief(crm, query))

    @mcp.tool(name="create_contact", description="Create a NEW contact.")
    async def _create_contact(
        name: str,
        email: str | None = None,
        phone: str | None = None,
        city: str | None = None,
    ) -> str:
        return _as_text(await create_contact(crm, name, email=email, phone=phone, city=city))

    @mcp.tool(
        name="modify_contact_details",
        description=(
            "Update a contact's card directly. Use it to ADD or CHANGE the mobile "
            "phone, work phone, email or city. It is the only way to store phone numbers."
        ),
    )
    async def _modify_contact_details(
        query: str,
        phone: str | None = None,
        work_phone: str | None = None,
        email: str | None = None,
        city: str | None = None,
    ) -> str:
        return _as_text(
            await modify_contact_details(
                crm, query, phone=phone, work_phone=work_phone, email=email, city=city
            )
        )

    @mcp.tool(
        name="add_note",
        description="Add a text note to the client's history (visits, calls, any interaction).",
    )
    async def _add_note(query: str, content: str) -> str:
        return _as_text(await add_note(crm, query, content))
