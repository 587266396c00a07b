import logging
import os
from typing import Any, Dict, List, Mapping, Optional

import httpx

from leadmagnet import monitoring

logger = logging.getLogger("crm")

DEFAULT_TIMEOUT = float(os.getenv("AC_TIMEOUT_SECONDS", "10"))

TAGS_BY_RISK: Dict[str, List[str]] = {
    "CRITICAL": ["Lead Magnet", "Critical Risk", "High Priority", "Hot Lead"],
    "HIGH": ["Lead Magnet", "High Risk", "Medium Priority"],
    "ELEVATED": ["Lead Magnet", "Elevated Risk", "Medium Priority"],
    "MODERATE": ["Lead Magnet", "Moderate Risk", "Low Priority"],
    "LOW": ["Lead Magnet", "Low Risk", "Nurture"],
}
DEFAULT_TAGS = ["Lead Magnet"]


def _api_url() -> str:
    url = os.getenv("AC_API_URL")
    if not url:
        raise RuntimeError("ActiveCampaign API URL not configured")
    return url.rstrip("/")


def _token() -> str:
    token = os.getenv("AC_API_KEY")
    if not token:
        raise RuntimeError("ActiveCampaign API key not configured")
    return token


def is_configured() -> bool:
    return bool(os.getenv("AC_API_URL") and os.getenv("AC_API_KEY"))


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=f"{_api_url()}/api/3",
        headers={"Api-Token": _token(), "Content-Type": "application/json"},
        timeout=DEFAULT_TIMEOUT,
    )


def tags_for(risk_level: str, prefix: str = "") -> List[str]:
    tags = TAGS_BY_RISK.get(risk_level, DEFAULT_TAGS)
    return [f"{prefix}{tag}" for tag in tags]


async def upsert_contact(client: httpx.AsyncClient, *, email: str, first_name: str = "", last_name: str = "") -> Dict[str, Any]:
    payload = {"contact": {"email": email, "firstName": first_name, "lastName": last_name}}
    response = await client.post("/contact/sync", json=payload)
    try:
        response.raise_for_status()
        data = response.json()
    except Exception as exc:
        monitoring.capture_exception(exc, step="crm_contact")
        raise RuntimeError(f"ActiveCampaign contact sync failed: {exc}") from exc
    return data["contact"]


async def find_or_create_tag(client: httpx.AsyncClient, name: str) -> Optional[str]:
    payload = {"tag": {"tag": name, "tagType": "contact", "description": "Auto-generated from assessment lead magnet"}}
    response = await client.post("/tags", json=payload)
    if response.is_success:
        return str(response.json()["tag"]["id"])

    # creation fails when the tag already exists
    search = await client.get("/tags", params={"search": name})
    if search.is_success:
        tags = search.json().get("tags") or []
        for tag in tags:
            if tag.get("tag") == name:
                return str(tag["id"])
        if tags:
            return str(tags[0]["id"])
    return None


async def tag_contact(client: httpx.AsyncClient, contact_id: str, tags: List[str]) -> List[str]:
    """Apply ``tags`` to a contact; individual tag failures are logged and skipped."""
    applied = []
    for name in tags:
        try:
            tag_id = await find_or_create_tag(client, name)
            if not tag_id:
                logger.warning("Could not resolve ActiveCampaign tag %s", name)
                continue
            response = await client.post("/contactTags", json={"contactTag": {"contact": contact_id, "tag": tag_id}})
            response.raise_for_status()
            applied.append(name)
        except httpx.HTTPError as exc:
            logger.warning("Failed to apply tag %s to contact %s: %s", name, contact_id, exc)
    return applied


async def update_custom_fields(client: httpx.AsyncClient, contact_id: str, fields: Mapping[str, Any]) -> int:
    """Set custom field values by field title; unknown titles are skipped."""
    response = await client.get("/fields", params={"limit": 100})
    try:
        response.raise_for_status()
        definitions = response.json().get("fields") or []
    except Exception as exc:
        monitoring.capture_exception(exc, step="crm_fields")
        raise RuntimeError(f"ActiveCampaign field lookup failed: {exc}") from exc

    field_ids = {definition["title"]: definition["id"] for definition in definitions}
    updated = 0
    for title, value in fields.items():
        field_id = field_ids.get(title)
        if not field_id:
            logger.debug("ActiveCampaign field %s not defined; skipping", title)
            continue
        payload = {"fieldValue": {"contact": contact_id, "field": field_id, "value": "" if value is None else str(value)}}
        result = await client.post("/fieldValues", json=payload)
        if result.is_success:
            updated += 1
        else:
            logger.warning("Failed to set field %s for contact %s: %s", title, contact_id, result.status_code)
    return updated


async def add_to_automation(client: httpx.AsyncClient, contact_id: str, automation_id: str) -> Dict[str, Any]:
    payload = {"contactAutomation": {"contact": contact_id, "automation": automation_id}}
    response = await client.post("/contactAutomations", json=payload)
    try:
        response.raise_for_status()
        data = response.json()
    except Exception as exc:
        monitoring.capture_exception(exc, step="crm_automation")
        raise RuntimeError(f"ActiveCampaign automation enrollment failed: {exc}") from exc
    return data.get("contactAutomation", {})


async def sync_lead(
    *,
    email: str,
    first_name: str,
    risk_level: str,
    fields: Mapping[str, Any],
    tag_prefix: str = "",
    automation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Upsert the contact, tag it by risk level, set its fields and enroll it.

    Only the contact upsert is required to succeed; the later steps degrade to
    logged warnings.
    """
    async with _client() as client:
        contact = await upsert_contact(client, email=email, first_name=first_name)
        contact_id = str(contact["id"])
        applied = await tag_contact(client, contact_id, tags_for(risk_level, tag_prefix))

        updated = 0
        try:
            updated = await update_custom_fields(client, contact_id, fields)
        except RuntimeError as exc:
            logger.warning("Custom field sync skipped for contact %s: %s", contact_id, exc)

        enrolled = False
        if automation_id:
            try:
                await add_to_automation(client, contact_id, automation_id)
                enrolled = True
            except RuntimeError as exc:
                logger.warning("Automation enrollment skipped for contact %s: %s", contact_id, exc)

    logger.info(
        "crm",
        extra={"crm": {"contact_id": contact_id, "tags": applied, "fields": updated, "automation": enrolled}},
    )
    return {"contact_id": contact_id, "tags": applied, "fields_updated": updated, "automation": enrolled}
