from __future__ import annotations

from typing import Any, Final


# reason -> (HTTP status, human message). The reason is also the audit error_message.
REJECTIONS: Final[dict[str, tuple[int, str]]] = {
    "invalid_uuid": (400, "Valid source ID (UUID) required in URL path"),
    "missing_api_key": (401, "Missing X-API-Key header"),
    "source_not_found": (404, "Unknown webhook source"),
    "inactive_source": (409, "Webhook source is not active"),
    "invalid_api_key": (401, "Invalid API key"),
    "missing_webhook_secret": (401, "Missing X-Webhook-Secret header"),
    "invalid_webhook_secret": (401, "Invalid webhook secret"),
    "missing_signature": (401, "Missing X-Signature header"),
    "invalid_signature_format": (400, "Invalid X-Signature header, expected sha256=<hex>"),
    "missing_timestamp": (401, "Missing X-Timestamp header"),
    "invalid_timestamp": (400, "Invalid X-Timestamp header, expected Unix seconds"),
    "replay_detected": (401, "Request timestamp outside replay window"),
    "invalid_signature": (401, "Invalid signature"),
    "rate_limited": (429, "Rate limit exceeded"),
    "invalid_json": (400, "Invalid JSON body"),
    "missing_phone": (400, "Phone number is required"),
}

# Reasons whose public `error` field is the code itself, with the text under `message`.
_CODE_AS_ERROR: Final[set[str]] = {"inactive_source", "replay_detected"}


class IngestRejected(Exception):
    """A client or policy error: audited as `rejected`, answered with a 4xx."""

    def __init__(
        self,
        reason: str,
        *,
        source_id: str | None = None,
        brand_id: str | None = None,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ):
        if reason not in REJECTIONS:
            raise ValueError(f"Unknown rejection reason: {reason}")
        super().__init__(reason)
        self.reason = reason
        self.status_code, self.message = REJECTIONS[reason]
        self.source_id = source_id
        self.brand_id = brand_id
        self.headers = headers or {}
        self.extra = extra or {}

    def body(self) -> dict[str, Any]:
        if self.reason in _CODE_AS_ERROR:
            payload: dict[str, Any] = {"error": self.reason, "message": self.message}
        else:
            payload = {"error": self.message}
        payload["code"] = self.reason
        payload.update(self.extra)
        return payload


class IngestFailed(Exception):
    """A server-side failure after validation: audited as `failed`, answered with a 500."""

    def __init__(self, error_message: str):
        super().__init__(error_message)
        self.error_message = error_message


def is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces Postgres 23505 on unique violations.
    if str(getattr(exc, "code", "") or "") == "23505":
        return True
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text
