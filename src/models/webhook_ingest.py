from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, field_validator


AuditStatus = Literal["pending", "success", "rejected", "failed"]
ContactStatus = Literal["new", "active", "qualified", "unqualified", "archived"]


class WebhookSource(BaseModel):
    id: str
    brand_id: str
    name: str
    api_key_hash: str
    is_active: bool = True
    rate_limit_per_min: int = 60
    mapping: dict[str, str] | None = None
    hmac_enabled: bool = False
    hmac_secret_hash: str | None = None
    replay_window_seconds: int | None = None

    @field_validator("mapping", mode="before")
    @classmethod
    def _string_mapping_only(cls, value: Any) -> dict[str, str] | None:
        if not isinstance(value, dict):
            return None
        return {str(k): v for k, v in value.items() if isinstance(v, str) and v}


class IngestSuccessResponse(BaseModel):
    success: Literal[True] = True
    contact_id: str
    deal_id: str | None = None
    lead_event_id: str
    archived: bool = False
    contact_status: ContactStatus | None = None
