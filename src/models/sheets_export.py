from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class SheetsExportRequest(BaseModel):
    lead_event_id: str | None = None
    force: bool = False


class LeadEventRow(BaseModel):
    id: str
    brand_id: str
    contact_id: str | None = None
    deal_id: str | None = None
    source: str = "webhook"
    source_name: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: str | None = None
    received_at: str
    ai_priority: int | None = None
    archived: bool = False


class SheetsExportSkipped(BaseModel):
    success: Literal[True] = True
    skipped: Literal[True] = True
    reason: str | None = None


class SheetsExportResult(BaseModel):
    success: Literal[True] = True
    all_raw_tab: str
    source_raw_tab: str
    source_view_tab: str
