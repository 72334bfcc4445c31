from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.auth import is_internal_caller
from src.config import settings
from src.db import supabase
from src.domain.export_row import ExportEnrichment, build_export_row, tag_names_from_assignments
from src.domain.ingest_errors import is_unique_violation
from src.models.sheets_export import (
    LeadEventRow,
    SheetsExportRequest,
    SheetsExportResult,
    SheetsExportSkipped,
)
from src.observability import incr_metric, log_event
from src.providers.google_sheets.client import (
    ALL_RAW_TAB,
    SUMMARY_TAB,
    SheetInfoCache,
    append_row,
    ensure_raw_tab,
    ensure_summary_tab,
    ensure_view_tab,
    get_access_token,
    load_service_account_key,
    source_tab_names,
)


router = APIRouter(tags=["sheets-export"])

# Placeholder until the lead event is read; the real brand is written at finalization.
_UNKNOWN_BRAND_ID = "00000000-0000-0000-0000-000000000000"
_SYSTEME_DEDUP_WINDOW = timedelta(seconds=5)
_LEAD_EVENT_COLUMNS = (
    "id, brand_id, contact_id, deal_id, source, source_name, "
    "raw_payload, occurred_at, received_at, ai_priority, archived"
)


class SheetsNotConfigured(Exception):
    pass


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _json_error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# --- Claim row (sheets_export_logs) ---

def _claim_export(lead_event_id: str, force: bool = False) -> str | None:
    """
    Take the export claim for a lead event.

    Returns None when this invocation owns the export, otherwise the skip reason.
    The unique constraint on lead_event_id makes the insert the mutex: of two
    concurrent callers exactly one insert succeeds.
    """
    claim = {"lead_event_id": lead_event_id, "brand_id": _UNKNOWN_BRAND_ID, "status": "processing", "error": None}
    if force:
        supabase.table("sheets_export_logs").upsert(claim, on_conflict="lead_event_id").execute()
        return None

    try:
        supabase.table("sheets_export_logs").insert(claim).execute()
    except Exception as exc:
        if not is_unique_violation(exc):
            raise
        existing = (
            supabase.table("sheets_export_logs")
            .select("status")
            .eq("lead_event_id", lead_event_id)
            .execute()
        )
        status = existing.data[0].get("status") if existing.data else None
        if status == "success":
            return "already_exported"
        if status == "processing":
            return "in_progress"
        return status or "unknown"
    return None


def _finalize_claim(lead_event_id: str, values: dict[str, Any]) -> None:
    supabase.table("sheets_export_logs").update(values).eq("lead_event_id", lead_event_id).execute()


def _mark_claim_failed(lead_event_id: str, error: str, request_id: str | None) -> None:
    try:
        _finalize_claim(lead_event_id, {"status": "failed", "error": error})
    except Exception as exc:
        log_event(
            "sheets_export_claim_update_failed",
            level=logging.ERROR,
            request_id=request_id,
            lead_event_id=lead_event_id,
            error=str(exc),
        )


# --- Lead event and enrichment reads ---

def _fetch_lead_event(lead_event_id: str) -> LeadEventRow | None:
    result = supabase.table("lead_events").select(_LEAD_EVENT_COLUMNS).eq("id", lead_event_id).execute()
    if not result.data:
        return None
    return LeadEventRow.model_validate(result.data[0])


def _is_systeme_duplicate(event: LeadEventRow) -> bool:
    """
    True when an earlier event for the same contact and source, received within
    five seconds of this one, has already been exported.
    """
    if "systeme" not in (event.source_name or "").lower() or not event.contact_id:
        return False

    event_time = _parse_timestamp(event.received_at)
    siblings = (
        supabase.table("lead_events")
        .select("id, received_at")
        .eq("contact_id", event.contact_id)
        .eq("source", event.source)
        .gte("received_at", (event_time - _SYSTEME_DEDUP_WINDOW).isoformat())
        .lte("received_at", (event_time + _SYSTEME_DEDUP_WINDOW).isoformat())
        .neq("id", event.id)
        .order("received_at")
        .execute()
    )
    earlier_ids = [
        row["id"]
        for row in siblings.data or []
        if row.get("received_at") and _parse_timestamp(row["received_at"]) < event_time
    ]
    if not earlier_ids:
        return False

    exported = (
        supabase.table("sheets_export_logs")
        .select("lead_event_id")
        .eq("status", "success")
        .in_("lead_event_id", earlier_ids)
        .limit(1)
        .execute()
    )
    return bool(exported.data)


def _first_row(result: Any) -> dict[str, Any]:
    return result.data[0] if result.data else {}


def _load_enrichment(event: LeadEventRow) -> ExportEnrichment:
    enrichment = ExportEnrichment()
    brand = _first_row(supabase.table("brands").select("name").eq("id", event.brand_id).limit(1).execute())
    enrichment.brand_name = brand.get("name")

    if event.contact_id:
        enrichment.contact = _first_row(
            supabase.table("contacts")
            .select("first_name, last_name, email, city")
            .eq("id", event.contact_id)
            .limit(1)
            .execute()
        )
        phone = _first_row(
            supabase.table("contact_phones")
            .select("phone_normalized")
            .eq("contact_id", event.contact_id)
            .eq("is_primary", True)
            .limit(1)
            .execute()
        )
        enrichment.primary_phone = phone.get("phone_normalized")
        enrichment.appointment = _first_row(
            supabase.table("appointments")
            .select("status, scheduled_at")
            .eq("contact_id", event.contact_id)
            .eq("brand_id", event.brand_id)
            .order("scheduled_at", desc=True)
            .limit(1)
            .execute()
        )
        last_action = _first_row(
            supabase.table("ticket_audit_logs")
            .select("created_at")
            .eq("brand_id", event.brand_id)
            .not_.is_("user_id", "null")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        enrichment.last_operator_action = last_action.get("created_at")

    if event.deal_id:
        enrichment.deal = _first_row(
            supabase.table("deals")
            .select("id, status, value, current_stage_id, closed_at")
            .eq("id", event.deal_id)
            .limit(1)
            .execute()
        )
        stage_id = enrichment.deal.get("current_stage_id")
        if stage_id:
            stage = _first_row(
                supabase.table("pipeline_stages").select("name").eq("id", stage_id).limit(1).execute()
            )
            enrichment.stage_name = stage.get("name")

    tags = supabase.table("tag_assignments").select("tag_id, tags(name)").eq("lead_event_id", event.id).execute()
    enrichment.tag_names = tag_names_from_assignments(tags.data or [])
    return enrichment


# --- Spreadsheet writes ---

def _write_to_spreadsheet(event: LeadEventRow, row: list[str], request_id: str | None = None) -> SheetsExportResult:
    if not settings.google_service_account_key or not settings.google_sheets_file_id:
        raise SheetsNotConfigured("Sheets not configured")

    service_account = load_service_account_key(settings.google_service_account_key)
    access_token = get_access_token(service_account, timeout_seconds=settings.google_oauth_timeout_seconds)
    cache = SheetInfoCache(
        access_token,
        settings.google_sheets_file_id,
        timeout_seconds=settings.google_sheets_timeout_seconds,
    )
    raw_tab, view_tab = source_tab_names(event.source_name, cache.tab_names())

    created_tabs: list[str] = []
    for tab_name in (ALL_RAW_TAB, raw_tab):
        if ensure_raw_tab(cache, tab_name).created:
            created_tabs.append(tab_name)
        append_row(
            access_token,
            settings.google_sheets_file_id,
            tab_name,
            row,
            timeout_seconds=settings.google_sheets_timeout_seconds,
        )
    if ensure_view_tab(cache, view_tab, raw_tab).created:
        created_tabs.append(view_tab)
    if ensure_summary_tab(cache):
        created_tabs.append(SUMMARY_TAB)

    if created_tabs:
        incr_metric("sheets_export.tab_created", value=len(created_tabs))
        log_event(
            "sheets_tabs_created",
            request_id=request_id,
            lead_event_id=event.id,
            tabs=created_tabs,
        )
    return SheetsExportResult(all_raw_tab=ALL_RAW_TAB, source_raw_tab=raw_tab, source_view_tab=view_tab)


# --- Endpoint ---

@router.post("/sheets-export")
async def export_lead_event(
    request: Request,
    authorization: str | None = Header(None),
    x_internal_token: str | None = Header(None),
):
    req_id = _request_id(request)
    if not is_internal_caller(authorization, x_internal_token):
        log_event("sheets_export_unauthorized", level=logging.WARNING, request_id=req_id)
        return _json_error(401, "Unauthorized - internal only")

    if not settings.google_sheets_enabled:
        return JSONResponse(status_code=200, content={"success": False, "error": "Sheets export is disabled"})

    raw_body = await request.body()
    try:
        body = json.loads(raw_body.decode("utf-8") or "{}")
        export_request = SheetsExportRequest.model_validate(body)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError):
        return _json_error(400, "Invalid JSON body")
    lead_event_id = export_request.lead_event_id
    if not lead_event_id:
        return _json_error(400, "lead_event_id required")

    try:
        skip_reason = _claim_export(lead_event_id, force=export_request.force)
    except Exception as exc:
        incr_metric("sheets_export.failed", reason="claim_failed")
        log_event(
            "sheets_export_claim_failed",
            level=logging.ERROR,
            request_id=req_id,
            lead_event_id=lead_event_id,
            error=str(exc),
        )
        return _json_error(500, str(exc))
    if skip_reason:
        incr_metric("sheets_export.skipped", reason=skip_reason)
        log_event("sheets_export_skipped", request_id=req_id, lead_event_id=lead_event_id, reason=skip_reason)
        return JSONResponse(status_code=200, content=SheetsExportSkipped(reason=skip_reason).model_dump())
    incr_metric("sheets_export.claimed", force=export_request.force)

    try:
        event = _fetch_lead_event(lead_event_id)
        if event is None:
            _mark_claim_failed(lead_event_id, "Lead event not found", req_id)
            incr_metric("sheets_export.failed", reason="not_found")
            return _json_error(404, "Lead event not found")

        if not export_request.force and _is_systeme_duplicate(event):
            supabase.table("sheets_export_logs").upsert(
                {
                    "lead_event_id": lead_event_id,
                    "brand_id": event.brand_id,
                    "status": "skipped",
                    "error": "systeme_duplicate_within_5s",
                },
                on_conflict="lead_event_id",
            ).execute()
            incr_metric("sheets_export.skipped", reason="systeme_duplicate_within_5s")
            log_event(
                "sheets_export_skipped",
                request_id=req_id,
                lead_event_id=lead_event_id,
                reason="systeme_duplicate_within_5s",
            )
            return JSONResponse(
                status_code=200,
                content=SheetsExportSkipped(reason="systeme_duplicate_within_5s").model_dump(),
            )

        row = build_export_row(event, _load_enrichment(event))
        result = _write_to_spreadsheet(event, row, req_id)
        _finalize_claim(
            lead_event_id,
            {"status": "success", "brand_id": event.brand_id, "tab_name": result.source_raw_tab, "error": None},
        )
    except Exception as exc:
        message = str(exc) or "Unknown error"
        _mark_claim_failed(lead_event_id, message, req_id)
        incr_metric("sheets_export.failed", reason=type(exc).__name__)
        log_event(
            "sheets_export_failed",
            level=logging.ERROR,
            request_id=req_id,
            lead_event_id=lead_event_id,
            error=message,
        )
        return _json_error(500, message)

    incr_metric("sheets_export.succeeded")
    log_event(
        "sheets_export_succeeded",
        request_id=req_id,
        lead_event_id=lead_event_id,
        source_raw_tab=result.source_raw_tab,
        source_view_tab=result.source_view_tab,
    )
    return JSONResponse(status_code=200, content=result.model_dump())
