import base64
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from urllib.parse import unquote

import pytest
from fastapi.testclient import TestClient

from src.main import app
from src.observability import incr_metric, metrics_snapshot, reset_metrics
from src.providers.google_sheets import client as sheets_client
from src.routers import sheets_export as sheets_router


BRAND_ID = "22222222-2222-4222-8222-222222222222"
SERVICE_ACCOUNT = {"client_email": "exporter@project.iam.gserviceaccount.com", "private_key": "unused-in-tests"}


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeUniqueViolation(Exception):
    code = "23505"


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.negate_next = False
        self.order_by = None
        self.row_limit = None

    def select(self, _fields: str):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.payload = payload
        return self

    def upsert(self, payload: dict, on_conflict: str = ""):
        self.operation = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def _add_filter(self, kind: str, key: str, value):
        self.filters.append((kind, key, value, self.negate_next))
        self.negate_next = False
        return self

    @property
    def not_(self):
        self.negate_next = True
        return self

    def eq(self, key: str, value):
        return self._add_filter("eq", key, value)

    def neq(self, key: str, value):
        return self._add_filter("neq", key, value)

    def gte(self, key: str, value):
        return self._add_filter("gte", key, value)

    def lte(self, key: str, value):
        return self._add_filter("lte", key, value)

    def in_(self, key: str, values):
        return self._add_filter("in", key, list(values))

    def is_(self, key: str, value):
        return self._add_filter("is", key, value)

    def order(self, key: str, desc: bool = False):
        self.order_by = (key, desc)
        return self

    def limit(self, count: int):
        self.row_limit = count
        return self

    def _matches(self, row: dict) -> bool:
        for kind, key, value, negated in self.filters:
            current = row.get(key)
            if kind == "eq":
                result = current == value
            elif kind == "neq":
                result = current != value
            elif kind == "gte":
                result = current is not None and _parse_ts(current) >= _parse_ts(value)
            elif kind == "lte":
                result = current is not None and _parse_ts(current) <= _parse_ts(value)
            elif kind == "in":
                result = current in value
            else:
                result = current is None if value == "null" else current == value
            if result == negated:
                return False
        return True

    def execute(self):
        with self.db.lock:
            return self._execute()

    def _execute(self):
        table = self.db.tables.setdefault(self.table_name, [])
        if self.operation == "insert":
            if self.table_name == "sheets_export_logs":
                for row in table:
                    if row["lead_event_id"] == self.payload["lead_event_id"]:
                        raise FakeUniqueViolation(
                            'duplicate key value violates unique constraint "sheets_export_logs_lead_event_id_key"'
                        )
            row = dict(self.payload)
            row.setdefault("id", f"{self.table_name}-{len(table)+1}")
            table.append(row)
            return FakeResponse([dict(row)])

        if self.operation == "upsert":
            for row in table:
                if row.get(self.on_conflict) == self.payload.get(self.on_conflict):
                    row.update(self.payload)
                    return FakeResponse([dict(row)])
            row = dict(self.payload)
            row.setdefault("id", f"{self.table_name}-{len(table)+1}")
            table.append(row)
            return FakeResponse([dict(row)])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return FakeResponse(updated)

        rows = [dict(row) for row in table if self._matches(row)]
        if self.order_by:
            key, desc = self.order_by
            rows.sort(key=lambda r: r.get(key) or "", reverse=desc)
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return FakeResponse(rows)


class FakeSupabase:
    def __init__(self, tables: dict):
        self.tables = tables
        self.lock = threading.Lock()

    def table(self, table_name: str):
        return FakeQuery(table_name, self)


class FakeHttpResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
        return self._payload


class FakeSheetsApi:
    """Minimal Google OAuth + Sheets v4 behaviour over the client's single HTTP seam."""

    def __init__(self, existing_tabs: list[str] | None = None):
        self.tabs = {title: index + 1 for index, title in enumerate(existing_tabs or [])}
        self.next_sheet_id = 100
        self.appends: list[tuple[str, list[str]]] = []
        self.writes: list[tuple[str, list[list[str]], str]] = []
        self.batch_requests: list[dict] = []
        self.fail_appends = False

    def __call__(self, **kwargs):
        method = kwargs["method"]
        url = kwargs["url"]
        if url == sheets_client.GOOGLE_TOKEN_URL:
            return FakeHttpResponse(200, {"access_token": "sheets-token"})
        if method == "GET":
            sheets = [{"properties": {"title": t, "sheetId": sid}} for t, sid in self.tabs.items()]
            return FakeHttpResponse(200, {"sheets": sheets})
        if url.endswith(":batchUpdate"):
            replies = []
            for request in kwargs["json_payload"]["requests"]:
                self.batch_requests.append(request)
                if "addSheet" in request:
                    title = request["addSheet"]["properties"]["title"]
                    self.next_sheet_id += 1
                    self.tabs[title] = self.next_sheet_id
                    replies.append({"addSheet": {"properties": {"title": title, "sheetId": self.next_sheet_id}}})
                else:
                    replies.append({})
            return FakeHttpResponse(200, {"replies": replies})
        range_part = unquote(url.split("/values/", 1)[1])
        if range_part.endswith(":append"):
            if self.fail_appends:
                return FakeHttpResponse(400, {"error": {"message": "Unable to parse range"}})
            tab = range_part[: -len(":append")].split("!", 1)[0]
            self.appends.append((tab, kwargs["json_payload"]["values"][0]))
            return FakeHttpResponse(200, {"updates": {"updatedRows": 1}})
        self.writes.append((range_part, kwargs["json_payload"]["values"], kwargs["params"]["valueInputOption"]))
        return FakeHttpResponse(200, {})

    def added_tabs(self) -> list[str]:
        return [r["addSheet"]["properties"]["title"] for r in self.batch_requests if "addSheet" in r]


def _lead_event(event_id: str = "evt-1", **overrides) -> dict:
    event = {
        "id": event_id,
        "brand_id": BRAND_ID,
        "contact_id": "contact-1",
        "deal_id": "deal-1",
        "source": "webhook",
        "source_name": "Meta Lead Ads",
        "raw_payload": {"phone": "3331234567", "utm_campaign": "primavera", "message": "Mal di schiena"},
        "occurred_at": "2026-03-01T10:00:00+00:00",
        "received_at": "2026-03-01T10:00:00+00:00",
        "ai_priority": 4,
        "archived": False,
    }
    event.update(overrides)
    return event


def _fake_db(lead_events: list[dict] | None = None, export_logs: list[dict] | None = None) -> FakeSupabase:
    return FakeSupabase(
        {
            "lead_events": lead_events if lead_events is not None else [_lead_event()],
            "sheets_export_logs": export_logs or [],
            "brands": [{"id": BRAND_ID, "name": "Clinica Salute"}],
            "contacts": [
                {"id": "contact-1", "first_name": "Mario", "last_name": "Rossi", "email": "mario@example.com", "city": "Roma"}
            ],
            "contact_phones": [
                {"contact_id": "contact-1", "phone_normalized": "3331234567", "is_primary": True},
            ],
            "deals": [{"id": "deal-1", "status": "open", "value": 1200, "current_stage_id": "stage-1", "closed_at": None}],
            "pipeline_stages": [{"id": "stage-1", "name": "Nuovo Lead"}],
            "tag_assignments": [
                {"lead_event_id": "evt-1", "tag_id": "tag-1", "tags": {"name": "Caldo"}},
                {"lead_event_id": "evt-1", "tag_id": "tag-2", "tags": [{"name": "Facebook"}]},
            ],
            "appointments": [
                {"contact_id": "contact-1", "brand_id": BRAND_ID, "status": "scheduled", "scheduled_at": "2026-03-05T09:00:00+00:00"},
                {"contact_id": "contact-1", "brand_id": BRAND_ID, "status": "cancelled", "scheduled_at": "2026-03-02T09:00:00+00:00"},
            ],
            "ticket_audit_logs": [
                {"brand_id": BRAND_ID, "user_id": None, "created_at": "2026-03-03T12:00:00+00:00"},
                {"brand_id": BRAND_ID, "user_id": "user-1", "created_at": "2026-03-02T08:30:00+00:00"},
            ],
        }
    )


def _configure(monkeypatch, db: FakeSupabase, api: FakeSheetsApi | None = None) -> FakeSheetsApi:
    api = api or FakeSheetsApi()
    encoded_key = base64.b64encode(json.dumps(SERVICE_ACCOUNT).encode()).decode()
    monkeypatch.setattr(sheets_router, "supabase", db)
    monkeypatch.setattr(sheets_router.settings, "google_sheets_enabled", True)
    monkeypatch.setattr(sheets_router.settings, "google_service_account_key", encoded_key)
    monkeypatch.setattr(sheets_router.settings, "google_sheets_file_id", "spreadsheet-1")
    monkeypatch.setattr(sheets_client, "build_jwt_assertion", lambda service_account: "signed-assertion")
    monkeypatch.setattr(sheets_client, "_request_with_retry", api)
    return api


def _auth_headers() -> dict:
    return {"Authorization": f"Bearer {sheets_router.settings.supabase_service_role_key}"}


def _export(client: TestClient, body, headers: dict | None = None):
    content = body if isinstance(body, str) else json.dumps(body)
    return client.post("/sheets-export", content=content, headers=headers if headers is not None else _auth_headers())


def test_export_requires_internal_caller(monkeypatch):
    _configure(monkeypatch, _fake_db())
    client = TestClient(app)

    anonymous = _export(client, {"lead_event_id": "evt-1"}, headers={})
    wrong_bearer = _export(client, {"lead_event_id": "evt-1"}, headers={"Authorization": "Bearer nope"})

    assert anonymous.status_code == 401
    assert anonymous.json() == {"error": "Unauthorized - internal only"}
    assert wrong_bearer.status_code == 401


def test_export_accepts_internal_token(monkeypatch):
    db = _fake_db()
    _configure(monkeypatch, db)
    monkeypatch.setattr(sheets_router.settings, "sheets_internal_token", "internal-123")
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"}, headers={"X-Internal-Token": "internal-123"})

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_export_disabled_returns_success_false(monkeypatch):
    db = _fake_db()
    _configure(monkeypatch, db)
    monkeypatch.setattr(sheets_router.settings, "google_sheets_enabled", False)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"})

    assert response.status_code == 200
    assert response.json() == {"success": False, "error": "Sheets export is disabled"}
    assert db.tables["sheets_export_logs"] == []


def test_export_validates_body(monkeypatch):
    _configure(monkeypatch, _fake_db())
    client = TestClient(app)

    invalid = _export(client, "{broken")
    missing = _export(client, {"force": True})

    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid JSON body"}
    assert missing.status_code == 400
    assert missing.json() == {"error": "lead_event_id required"}


def test_full_export_writes_aggregate_and_source_tabs(monkeypatch):
    db = _fake_db()
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "all_raw_tab": "ALL_RAW",
        "source_raw_tab": "Meta_RAW",
        "source_view_tab": "Meta",
    }
    assert [tab for tab, _ in api.appends] == ["ALL_RAW", "Meta_RAW"]
    row = api.appends[0][1]
    assert len(row) == 20
    assert row[0] == "2026-03-01T10:00:00+00:00"
    assert row[1] == "Clinica Salute"
    assert row[2] == "Meta Lead Ads"
    assert row[3] == "primavera"
    assert row[6:11] == ["Mario", "Rossi", "3331234567", "mario@example.com", "Roma"]
    assert row[11] == "Mal di schiena"
    assert row[12] == "4"
    assert row[13] == "Nuovo Lead"
    assert row[14] == "Caldo, Facebook"
    assert row[15:17] == ["scheduled", "2026-03-05T09:00:00+00:00"]
    assert row[17:19] == ["open", "1200"]
    assert row[19] == "2026-03-02T08:30:00+00:00"
    assert set(api.added_tabs()) == {"ALL_RAW", "Meta_RAW", "Meta", "Riepilogo"}

    log = db.tables["sheets_export_logs"][0]
    assert log["status"] == "success"
    assert log["brand_id"] == BRAND_ID
    assert log["tab_name"] == "Meta_RAW"


def test_repeat_export_is_skipped_as_already_exported(monkeypatch):
    db = _fake_db()
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    first = _export(client, {"lead_event_id": "evt-1"})
    second = _export(client, {"lead_event_id": "evt-1"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"success": True, "skipped": True, "reason": "already_exported"}
    assert len(api.appends) == 2


@pytest.mark.parametrize(
    "existing_status,expected_reason",
    [("processing", "in_progress"), ("failed", "failed"), ("skipped", "skipped")],
)
def test_existing_claim_is_skipped(monkeypatch, existing_status, expected_reason):
    db = _fake_db(export_logs=[{"lead_event_id": "evt-1", "brand_id": BRAND_ID, "status": existing_status}])
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"})

    assert response.json() == {"success": True, "skipped": True, "reason": expected_reason}
    assert api.appends == []


def test_force_reexports_and_reclaims(monkeypatch):
    db = _fake_db()
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    _export(client, {"lead_event_id": "evt-1"})
    forced = _export(client, {"lead_event_id": "evt-1", "force": True})

    assert forced.status_code == 200
    assert forced.json()["success"] is True
    assert len(api.appends) == 4
    assert len(db.tables["sheets_export_logs"]) == 1
    assert db.tables["sheets_export_logs"][0]["status"] == "success"


def test_tabs_are_created_and_formatted_once(monkeypatch):
    reset_metrics()
    db = _fake_db(lead_events=[_lead_event("evt-1"), _lead_event("evt-2")])
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    _export(client, {"lead_event_id": "evt-1"})
    assert metrics_snapshot()["sheets_export.tab_created"] == 4
    batch_count = len(api.batch_requests)
    header_writes = len(api.writes)
    _export(client, {"lead_event_id": "evt-2"})

    assert len(api.appends) == 4
    assert len(api.batch_requests) == batch_count
    assert len(api.writes) == header_writes
    assert metrics_snapshot()["sheets_export.tab_created"] == 4


def test_lead_event_not_found_marks_claim_failed(monkeypatch):
    db = _fake_db(lead_events=[])
    _configure(monkeypatch, db)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "missing"})

    assert response.status_code == 404
    assert response.json() == {"error": "Lead event not found"}
    assert db.tables["sheets_export_logs"][0]["status"] == "failed"
    assert db.tables["sheets_export_logs"][0]["error"] == "Lead event not found"


def test_missing_google_credentials_marks_claim_failed(monkeypatch):
    db = _fake_db()
    _configure(monkeypatch, db)
    monkeypatch.setattr(sheets_router.settings, "google_sheets_file_id", None)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"})

    assert response.status_code == 500
    assert response.json() == {"error": "Sheets not configured"}
    assert db.tables["sheets_export_logs"][0]["status"] == "failed"


def test_sheets_api_error_marks_claim_failed(monkeypatch):
    reset_metrics()
    db = _fake_db()
    api = FakeSheetsApi()
    api.fail_appends = True
    _configure(monkeypatch, db, api)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"})

    assert response.status_code == 500
    assert "HTTP 400" in response.json()["error"]
    log = db.tables["sheets_export_logs"][0]
    assert log["status"] == "failed"
    assert "HTTP 400" in log["error"]
    assert metrics_snapshot()["sheets_export.failed|reason=GoogleSheetsProviderError"] == 1


def test_systeme_burst_duplicate_is_skipped(monkeypatch):
    earlier = _lead_event("evt-1", source_name="Systeme.io Funnel", received_at="2026-03-01T10:00:00+00:00")
    later = _lead_event("evt-2", source_name="Systeme.io Funnel", received_at="2026-03-01T10:00:03+00:00")
    db = _fake_db(
        lead_events=[earlier, later],
        export_logs=[{"lead_event_id": "evt-1", "brand_id": BRAND_ID, "status": "success"}],
    )
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-2"})

    assert response.json() == {"success": True, "skipped": True, "reason": "systeme_duplicate_within_5s"}
    assert api.appends == []
    log = next(row for row in db.tables["sheets_export_logs"] if row["lead_event_id"] == "evt-2")
    assert log["status"] == "skipped"
    assert log["error"] == "systeme_duplicate_within_5s"
    assert log["brand_id"] == BRAND_ID


def test_systeme_events_outside_window_are_exported(monkeypatch):
    earlier = _lead_event("evt-1", source_name="Systeme.io Funnel", received_at="2026-03-01T10:00:00+00:00")
    later = _lead_event("evt-2", source_name="Systeme.io Funnel", received_at="2026-03-01T10:00:09+00:00")
    db = _fake_db(
        lead_events=[earlier, later],
        export_logs=[{"lead_event_id": "evt-1", "brand_id": BRAND_ID, "status": "success"}],
    )
    api = _configure(monkeypatch, db)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-2"})

    assert response.json()["success"] is True
    assert response.json()["source_raw_tab"] == "Systemeio Funnel_RAW"
    assert len(api.appends) == 2


def test_concurrent_claims_have_single_owner(monkeypatch):
    db = _fake_db()
    monkeypatch.setattr(sheets_router, "supabase", db)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: sheets_router._claim_export("evt-1"), range(8)))

    assert results.count(None) == 1
    assert results.count("in_progress") == 7
    assert len(db.tables["sheets_export_logs"]) == 1


def test_non_unique_claim_error_returns_500(monkeypatch):
    db = _fake_db()
    _configure(monkeypatch, db)

    def _broken_table(name):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(db, "table", _broken_table)
    client = TestClient(app)

    response = _export(client, {"lead_event_id": "evt-1"})

    assert response.status_code == 500
    assert response.json() == {"error": "connection reset"}


def test_internal_metrics_endpoint_requires_internal_caller():
    reset_metrics()
    client = TestClient(app)

    denied = client.get("/internal/metrics")
    allowed = client.get("/internal/metrics", headers=_auth_headers())

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json() == {"counters": {}, "totals": {}}


def test_internal_metrics_endpoint_filters_by_prefix():
    reset_metrics()
    incr_metric("webhook.ingest.rejected", reason="invalid_uuid")
    incr_metric("webhook.ingest.rejected", reason="rate_limited", value=2)
    incr_metric("sheets_export.succeeded")
    client = TestClient(app)

    response = client.get("/internal/metrics", params={"prefix": "webhook."}, headers=_auth_headers())

    assert response.status_code == 200
    assert response.json() == {
        "counters": {
            "webhook.ingest.rejected|reason=invalid_uuid": 1,
            "webhook.ingest.rejected|reason=rate_limited": 2,
        },
        "totals": {"webhook.ingest.rejected": 3},
    }
