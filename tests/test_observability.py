import json
import logging

from src.observability import incr_metric, log_event, metric_totals, metrics_snapshot, reset_metrics


def _logged_payloads(caplog) -> list[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "crm_ingest"]


def test_log_event_emits_correlation_keys_only_when_set(caplog):
    caplog.set_level(logging.INFO, logger="crm_ingest")

    log_event("webhook_ingest_succeeded", request_id="req-1", source_id="src-1", lead_event_id="evt-1", status=200)
    log_event("sheets_export_skipped", lead_event_id="evt-2")

    first, second = _logged_payloads(caplog)
    assert first == {
        "event": "webhook_ingest_succeeded",
        "request_id": "req-1",
        "source_id": "src-1",
        "lead_event_id": "evt-1",
        "status": 200,
    }
    assert second == {"event": "sheets_export_skipped", "lead_event_id": "evt-2"}


def test_log_event_redacts_source_credentials(caplog):
    caplog.set_level(logging.INFO, logger="crm_ingest")

    log_event(
        "webhook_ingest_rejected",
        api_key="source-api-key",
        headers={"X-Webhook-Secret": "shh", "user-agent": "lead-producer/1.0"},
    )

    (payload,) = _logged_payloads(caplog)
    assert payload["api_key"] == "[redacted]"
    assert payload["headers"] == {"X-Webhook-Secret": "[redacted]", "user-agent": "lead-producer/1.0"}


def test_log_event_level_is_respected(caplog):
    caplog.set_level(logging.WARNING, logger="crm_ingest")

    log_event("webhook_ingest_received")
    log_event("sheets_export_trigger_failed", level=logging.WARNING, error="timeout")

    assert [payload["event"] for payload in _logged_payloads(caplog)] == ["sheets_export_trigger_failed"]


def test_metric_snapshot_prefix_and_totals():
    reset_metrics()
    incr_metric("webhook.ingest.received")
    incr_metric("webhook.ingest.rejected", reason="invalid_api_key")
    incr_metric("webhook.ingest.rejected", reason="rate_limited")
    incr_metric("sheets_export.tab_created", tab="raw")

    assert metrics_snapshot("webhook.ingest.rejected") == {
        "webhook.ingest.rejected|reason=invalid_api_key": 1,
        "webhook.ingest.rejected|reason=rate_limited": 1,
    }
    assert metric_totals() == {
        "webhook.ingest.received": 1,
        "webhook.ingest.rejected": 2,
        "sheets_export.tab_created": 1,
    }
    assert metric_totals("sheets_export.") == {"sheets_export.tab_created": 1}
