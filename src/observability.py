from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any


logger = logging.getLogger("crm_ingest")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()

# Field names that may carry a source credential; their values never reach the log.
_CREDENTIAL_FIELDS = frozenset(
    {"api_key", "x-api-key", "webhook_secret", "x-webhook-secret", "hmac_secret", "signature", "x-signature"}
)


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {
            str(k): "[redacted]" if str(k).lower() in _CREDENTIAL_FIELDS else _normalize(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot(prefix: str | None = None) -> dict[str, int]:
    """Counters keyed `name|label=value`, optionally limited to names starting with `prefix`."""
    with _metrics_lock:
        counters = dict(_metrics_counter)
    if prefix:
        counters = {key: count for key, count in counters.items() if key.startswith(prefix)}
    return counters


def metric_totals(prefix: str | None = None) -> dict[str, int]:
    """Counters summed across labels, e.g. every `webhook.ingest.rejected|reason=*` in one total."""
    totals: Counter[str] = Counter()
    for key, count in metrics_snapshot(prefix).items():
        totals[key.split("|", 1)[0]] += count
    return dict(totals)


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    source_id: str | None = None,
    lead_event_id: str | None = None,
    **fields: Any,
) -> None:
    """
    One JSON line per event. `request_id`, `source_id` and `lead_event_id` are the
    correlation keys shared by ingestion and export lines and are only emitted when set.
    """
    payload: dict[str, Any] = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    if source_id:
        payload["source_id"] = source_id
    if lead_event_id:
        payload["lead_event_id"] = lead_event_id
    for key, value in fields.items():
        payload[key] = "[redacted]" if key.lower() in _CREDENTIAL_FIELDS else _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))
