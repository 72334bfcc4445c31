from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from fastapi.datastructures import Headers

from src.auth.credentials import (
    compute_signature,
    constant_time_equals,
    parse_signature_header,
    verify_credential,
)
from src.config import settings
from src.db import supabase
from src.domain.ingest_errors import IngestFailed, IngestRejected
from src.domain.normalization import (
    MissingPhoneError,
    NormalizedLead,
    apply_field_mapping,
    client_ip,
    extract_lead,
    filter_headers,
)
from src.domain.phone import is_valid_phone_number
from src.models.webhook_ingest import AuditStatus, IngestSuccessResponse, WebhookSource
from src.observability import incr_metric, log_event


router = APIRouter(tags=["webhook-ingest"])

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_SOURCE_COLUMNS = (
    "id, name, brand_id, api_key_hash, rate_limit_per_min, mapping, is_active, "
    "hmac_enabled, hmac_secret_hash, replay_window_seconds"
)
_MAX_RAW_BODY_TEXT = 10_000
# Unix seconds; twelve digits covers every plausible clock.
_MAX_TIMESTAMP_DIGITS = 12


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


@dataclass
class RequestCapture:
    """Everything read from the inbound request before any validation."""

    body_text: str
    payload: Any
    json_error: bool
    headers: dict[str, str]
    ip_address: str
    user_agent: str | None
    received_at: str


def _capture_request(headers: Headers, raw_body: bytes) -> RequestCapture:
    body_text = raw_body.decode("utf-8", errors="replace")
    payload: Any = None
    json_error = False
    if body_text:
        try:
            payload = json.loads(body_text)
        except json.JSONDecodeError:
            json_error = True
    return RequestCapture(
        body_text=body_text,
        payload=payload,
        json_error=json_error,
        headers=filter_headers(headers),
        ip_address=client_ip(headers),
        user_agent=headers.get("user-agent"),
        received_at=_now_iso(),
    )


# --- Audit trail ---

def _create_audit_record(
    capture: RequestCapture,
    *,
    status: AuditStatus,
    error_message: str | None,
    source_id: str | None,
    brand_id: str | None,
    request_id: str | None,
) -> str | None:
    record = {
        "source_id": source_id,
        "brand_id": brand_id,
        "raw_body": None if capture.json_error else capture.payload,
        "raw_body_text": capture.body_text[:_MAX_RAW_BODY_TEXT] if capture.json_error else None,
        "headers": capture.headers,
        "ip_address": capture.ip_address,
        "user_agent": capture.user_agent,
        "status": status,
        "processed": status != "pending",
        "error_message": error_message,
        "lead_event_id": None,
    }
    try:
        result = supabase.table("incoming_requests").insert(record).execute()
    except Exception as exc:
        log_event(
            "audit_record_write_failed",
            level=logging.ERROR,
            request_id=request_id,
            source_id=source_id,
            status=status,
            error=str(exc),
        )
        return None
    if not result.data:
        return None
    return result.data[0].get("id")


def _finalize_audit_record(
    audit_id: str | None,
    *,
    status: AuditStatus,
    error_message: str | None,
    request_id: str | None,
    lead_event_id: str | None = None,
) -> None:
    if not audit_id:
        return
    try:
        supabase.table("incoming_requests").update(
            {
                "status": status,
                "processed": True,
                "error_message": error_message,
                "lead_event_id": lead_event_id,
            }
        ).eq("id", audit_id).eq("status", "pending").execute()
    except Exception as exc:
        log_event(
            "audit_record_write_failed",
            level=logging.ERROR,
            request_id=request_id,
            audit_id=audit_id,
            status=status,
            error=str(exc),
        )


# --- Source resolution and the auth/integrity gate ---

def _load_source(source_id: str, request_id: str | None) -> WebhookSource | None:
    try:
        result = supabase.table("webhook_sources").select(_SOURCE_COLUMNS).eq("id", source_id).execute()
    except Exception as exc:
        log_event(
            "webhook_source_lookup_failed",
            level=logging.WARNING,
            request_id=request_id,
            source_id=source_id,
            error=str(exc),
        )
        return None
    if not result.data:
        return None
    return WebhookSource.model_validate(result.data[0])


def _verify_hmac_or_raise(
    source: WebhookSource,
    headers: Headers,
    body_text: str,
    now: float | None = None,
) -> None:
    context = {"source_id": source.id, "brand_id": source.brand_id}

    secret = headers.get("x-webhook-secret")
    if not secret:
        raise IngestRejected("missing_webhook_secret", **context)
    if not verify_credential(secret, source.hmac_secret_hash):
        raise IngestRejected("invalid_webhook_secret", **context)

    signature_header = headers.get("x-signature")
    if not signature_header:
        raise IngestRejected("missing_signature", **context)
    provided_signature = parse_signature_header(signature_header)
    if provided_signature is None:
        raise IngestRejected("invalid_signature_format", **context)

    timestamp_header = headers.get("x-timestamp")
    if not timestamp_header:
        raise IngestRejected("missing_timestamp", **context)
    timestamp_text = timestamp_header.strip()
    if (
        not timestamp_text.isascii()
        or not timestamp_text.isdigit()
        or len(timestamp_text) > _MAX_TIMESTAMP_DIGITS
    ):
        raise IngestRejected("invalid_timestamp", **context)

    window = source.replay_window_seconds or settings.default_replay_window_seconds
    current = time.time() if now is None else now
    if abs(current - int(timestamp_text)) > window:
        raise IngestRejected("replay_detected", **context)

    expected_signature = compute_signature(secret, timestamp_text, body_text)
    if not constant_time_equals(expected_signature, provided_signature):
        raise IngestRejected("invalid_signature", **context)


def _consume_rate_limit_token(source_id: str, request_id: str | None) -> bool:
    try:
        result = supabase.rpc("consume_rate_limit_token", {"p_source_id": source_id}).execute()
    except Exception as exc:
        # Fail closed: an unknown bucket state is treated as exhausted.
        log_event(
            "rate_limit_check_failed",
            level=logging.WARNING,
            request_id=request_id,
            source_id=source_id,
            error=str(exc),
        )
        return False
    return bool(result.data)


def _authorize_request(
    source_id: str | None,
    headers: Headers,
    capture: RequestCapture,
    request_id: str | None,
) -> WebhookSource:
    """
    Ordered validation chain. Each failure raises IngestRejected carrying as much
    source/brand context as is known at that point, for the audit record.
    """
    if not source_id or not _UUID_RE.match(source_id):
        raise IngestRejected("invalid_uuid")

    api_key = headers.get("x-api-key")
    if not api_key:
        raise IngestRejected("missing_api_key", source_id=source_id)

    source = _load_source(source_id, request_id)
    if source is None:
        raise IngestRejected("source_not_found", source_id=source_id)

    context = {"source_id": source.id, "brand_id": source.brand_id}
    if not source.is_active:
        raise IngestRejected("inactive_source", **context)

    if not verify_credential(api_key, source.api_key_hash):
        raise IngestRejected("invalid_api_key", **context)

    if source.hmac_enabled:
        _verify_hmac_or_raise(source, headers, capture.body_text)

    if not _consume_rate_limit_token(source.id, request_id):
        retry_after = settings.rate_limit_retry_after_seconds
        raise IngestRejected(
            "rate_limited",
            headers={"Retry-After": str(retry_after)},
            extra={"retry_after": retry_after},
            **context,
        )

    if capture.json_error or not isinstance(capture.payload, dict):
        raise IngestRejected("invalid_json", **context)

    return source


# --- Contact, deal and lead event writes ---

def _find_or_create_contact(brand_id: str, lead: NormalizedLead) -> str:
    try:
        result = supabase.rpc(
            "find_or_create_contact",
            {
                "p_brand_id": brand_id,
                "p_phone_normalized": lead.phone.normalized,
                "p_phone_raw": lead.phone.raw,
                "p_country_code": lead.phone.country_code,
                "p_assumed_country": lead.phone.assumed_country,
                "p_first_name": lead.first_name,
                "p_last_name": lead.last_name,
                "p_email": lead.email,
                "p_city": lead.city,
                "p_cap": lead.cap,
            },
        ).execute()
    except Exception as exc:
        raise IngestFailed(f"contact_creation_failed: {exc}") from exc
    if not result.data:
        raise IngestFailed("contact_creation_failed: no contact id returned")
    return str(result.data)


def _fetch_contact_status(contact_id: str) -> str | None:
    result = supabase.table("contacts").select("id, status").eq("id", contact_id).execute()
    if not result.data:
        return None
    return result.data[0].get("status")


def _find_or_create_deal(brand_id: str, contact_id: str, request_id: str | None) -> str | None:
    try:
        result = supabase.rpc(
            "find_or_create_deal",
            {"p_brand_id": brand_id, "p_contact_id": contact_id},
        ).execute()
    except Exception as exc:
        # The lead event still records the fact; the deal can be reconciled later.
        log_event(
            "deal_resolution_failed",
            level=logging.WARNING,
            request_id=request_id,
            brand_id=brand_id,
            contact_id=contact_id,
            error=str(exc),
        )
        return None
    return str(result.data) if result.data else None


def _insert_lead_event(
    *,
    source: WebhookSource,
    contact_id: str,
    deal_id: str | None,
    raw_payload: dict[str, Any],
    archived: bool,
    received_at: str,
) -> str:
    try:
        result = supabase.table("lead_events").insert(
            {
                "brand_id": source.brand_id,
                "contact_id": contact_id,
                "deal_id": deal_id,
                "source": "webhook",
                "source_name": source.name,
                "raw_payload": raw_payload,
                "occurred_at": received_at,
                "received_at": received_at,
                "archived": archived,
            }
        ).execute()
    except Exception as exc:
        raise IngestFailed(f"lead_event_creation_failed: {exc}") from exc
    if not result.data or not result.data[0].get("id"):
        raise IngestFailed("lead_event_creation_failed: no lead event id returned")
    return str(result.data[0]["id"])


def _process_lead(
    source: WebhookSource,
    payload: dict[str, Any],
    capture: RequestCapture,
    request_id: str | None,
) -> IngestSuccessResponse:
    mapped_payload = apply_field_mapping(payload, source.mapping)
    try:
        lead = extract_lead(mapped_payload, default_country=settings.default_phone_country)
    except MissingPhoneError:
        raise IngestRejected("missing_phone", source_id=source.id, brand_id=source.brand_id)

    if not is_valid_phone_number(lead.phone_raw):
        incr_metric("webhook.ingest.phone_out_of_range")
        log_event(
            "phone_number_out_of_range",
            level=logging.WARNING,
            request_id=request_id,
            source_id=source.id,
            digits=len(lead.phone.normalized),
        )

    contact_id = _find_or_create_contact(source.brand_id, lead)
    contact_status = _fetch_contact_status(contact_id)
    archived = contact_status == "archived"

    # Opted-out contacts still get their lead event, but no deal is touched.
    deal_id = None if archived else _find_or_create_deal(source.brand_id, contact_id, request_id)

    lead_event_id = _insert_lead_event(
        source=source,
        contact_id=contact_id,
        deal_id=deal_id,
        raw_payload=payload,
        archived=archived,
        received_at=capture.received_at,
    )
    return IngestSuccessResponse(
        contact_id=contact_id,
        deal_id=deal_id,
        lead_event_id=lead_event_id,
        archived=archived,
        contact_status=contact_status,
    )


# --- Downstream export trigger ---

def _trigger_sheets_export(lead_event_id: str, request_id: str | None) -> None:
    """
    Fire-and-forget call to the export endpoint, run after the response is sent.
    Every failure is logged here and never reaches the ingestion caller.
    """
    export_url = settings.sheets_export_url
    if not export_url:
        log_event(
            "sheets_export_trigger_skipped",
            request_id=request_id,
            lead_event_id=lead_event_id,
            reason="export_url_not_configured",
        )
        return

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {settings.supabase_service_role_key}",
    }
    if request_id:
        headers["X-Request-ID"] = request_id
    try:
        with httpx.Client(timeout=settings.sheets_export_trigger_timeout_seconds) as client:
            response = client.post(export_url, headers=headers, json={"lead_event_id": lead_event_id})
        if response.status_code >= 400:
            incr_metric("sheets_export.trigger.failed", reason="http_status")
            log_event(
                "sheets_export_trigger_failed",
                level=logging.WARNING,
                request_id=request_id,
                lead_event_id=lead_event_id,
                status_code=response.status_code,
                response_text=response.text[:200],
            )
    except Exception as exc:
        incr_metric("sheets_export.trigger.failed", reason="exception")
        log_event(
            "sheets_export_trigger_failed",
            level=logging.WARNING,
            request_id=request_id,
            lead_event_id=lead_event_id,
            error=str(exc),
        )


# --- Endpoint ---

def _rejection_response(exc: IngestRejected) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers)


def _server_error_response() -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def _handle_ingest(request: Request, background_tasks: BackgroundTasks, source_id: str | None) -> JSONResponse:
    req_id = _request_id(request)
    raw_body = await request.body()
    capture = _capture_request(request.headers, raw_body)
    incr_metric("webhook.ingest.received")

    try:
        source = _authorize_request(source_id, request.headers, capture, req_id)
    except IngestRejected as exc:
        _create_audit_record(
            capture,
            status="rejected",
            error_message=exc.reason,
            source_id=exc.source_id,
            brand_id=exc.brand_id,
            request_id=req_id,
        )
        incr_metric("webhook.ingest.rejected", reason=exc.reason)
        log_event(
            "webhook_ingest_rejected",
            request_id=req_id,
            source_id=source_id,
            outcome=exc.reason,
            status=exc.status_code,
        )
        return _rejection_response(exc)
    except Exception as exc:
        _create_audit_record(
            capture,
            status="failed",
            error_message=f"internal_error: {exc}",
            source_id=source_id if source_id and _UUID_RE.match(source_id) else None,
            brand_id=None,
            request_id=req_id,
        )
        incr_metric("webhook.ingest.failed", reason="internal_error")
        log_event(
            "webhook_ingest_failed",
            level=logging.ERROR,
            request_id=req_id,
            source_id=source_id,
            outcome="internal_error",
            status=500,
            error=str(exc),
        )
        return _server_error_response()

    audit_id = _create_audit_record(
        capture,
        status="pending",
        error_message=None,
        source_id=source.id,
        brand_id=source.brand_id,
        request_id=req_id,
    )

    try:
        result = _process_lead(source, capture.payload, capture, req_id)
    except IngestRejected as exc:
        _finalize_audit_record(audit_id, status="rejected", error_message=exc.reason, request_id=req_id)
        incr_metric("webhook.ingest.rejected", reason=exc.reason)
        log_event(
            "webhook_ingest_rejected",
            request_id=req_id,
            source_id=source.id,
            outcome=exc.reason,
            status=exc.status_code,
        )
        return _rejection_response(exc)
    except IngestFailed as exc:
        _finalize_audit_record(audit_id, status="failed", error_message=exc.error_message, request_id=req_id)
        incr_metric("webhook.ingest.failed", reason=exc.error_message.split(":", 1)[0])
        log_event(
            "webhook_ingest_failed",
            level=logging.ERROR,
            request_id=req_id,
            source_id=source.id,
            outcome="failed",
            status=500,
            error=exc.error_message,
        )
        return _server_error_response()
    except Exception as exc:
        _finalize_audit_record(audit_id, status="failed", error_message=f"internal_error: {exc}", request_id=req_id)
        incr_metric("webhook.ingest.failed", reason="internal_error")
        log_event(
            "webhook_ingest_failed",
            level=logging.ERROR,
            request_id=req_id,
            source_id=source.id,
            outcome="internal_error",
            status=500,
            error=str(exc),
        )
        return _server_error_response()

    _finalize_audit_record(
        audit_id,
        status="success",
        error_message=None,
        lead_event_id=result.lead_event_id,
        request_id=req_id,
    )
    background_tasks.add_task(_trigger_sheets_export, result.lead_event_id, req_id)

    incr_metric("webhook.ingest.succeeded", archived=result.archived)
    log_event(
        "webhook_ingest_succeeded",
        request_id=req_id,
        source_id=source.id,
        outcome="success",
        status=200,
        contact_id=result.contact_id,
        lead_event_id=result.lead_event_id,
        archived=result.archived,
    )
    return JSONResponse(status_code=200, content=result.model_dump())


@router.post("/webhook-ingest")
async def ingest_webhook_without_source(request: Request, background_tasks: BackgroundTasks):
    return await _handle_ingest(request, background_tasks, source_id=None)


@router.post("/webhook-ingest/{source_id}")
async def ingest_webhook(source_id: str, request: Request, background_tasks: BackgroundTasks):
    return await _handle_ingest(request, background_tasks, source_id=source_id)
