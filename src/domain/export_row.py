from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final, Mapping

from src.models.sheets_export import LeadEventRow


MESSAGE_KEYS: Final[tuple[str, ...]] = ("message", "messaggio", "notes", "pain_area")
CAMPAIGN_KEYS: Final[tuple[str, ...]] = ("campaign_name", "campagna", "utm_campaign")
ADSET_KEYS: Final[tuple[str, ...]] = ("adset_name", "adset", "utm_content")
AD_KEYS: Final[tuple[str, ...]] = ("ad_name", "ad", "creative")


@dataclass
class ExportEnrichment:
    """CRM context looked up for one lead event. Missing pieces stay empty."""

    brand_name: str | None = None
    contact: dict[str, Any] = field(default_factory=dict)
    primary_phone: str | None = None
    deal: dict[str, Any] = field(default_factory=dict)
    stage_name: str | None = None
    tag_names: list[str] = field(default_factory=list)
    appointment: dict[str, Any] = field(default_factory=dict)
    last_operator_action: str | None = None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _first_payload_text(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


def tag_names_from_assignments(assignments: list[dict[str, Any]]) -> list[str]:
    # The embedded relation comes back as an object or a one-element list.
    names: list[str] = []
    for assignment in assignments:
        tags = assignment.get("tags")
        if isinstance(tags, list):
            tags = tags[0] if tags else None
        if isinstance(tags, dict) and tags.get("name"):
            names.append(str(tags["name"]))
    return names


def build_export_row(event: LeadEventRow, enrichment: ExportEnrichment) -> list[str]:
    """Return the 20 spreadsheet cells (columns A..T) for one lead event."""
    payload = event.raw_payload or {}
    contact = enrichment.contact
    deal = enrichment.deal
    appointment = enrichment.appointment
    return [
        event.received_at,
        _text(enrichment.brand_name),
        event.source_name or event.source,
        _first_payload_text(payload, CAMPAIGN_KEYS),
        _first_payload_text(payload, ADSET_KEYS),
        _first_payload_text(payload, AD_KEYS),
        _text(contact.get("first_name")),
        _text(contact.get("last_name")),
        _text(enrichment.primary_phone),
        _text(contact.get("email")),
        _text(contact.get("city")),
        _first_payload_text(payload, MESSAGE_KEYS),
        _text(event.ai_priority),
        _text(enrichment.stage_name),
        ", ".join(enrichment.tag_names),
        _text(appointment.get("status")),
        _text(appointment.get("scheduled_at")),
        _text(deal.get("status")),
        _text(deal.get("value")),
        _text(enrichment.last_operator_action),
    ]
