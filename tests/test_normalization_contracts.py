import pytest

from src.domain.export_row import ExportEnrichment, build_export_row, tag_names_from_assignments
from src.domain.normalization import (
    MissingPhoneError,
    apply_field_mapping,
    client_ip,
    extract_lead,
    filter_headers,
)
from src.domain.phone import is_valid_phone_number, normalize_phone
from src.models.sheets_export import LeadEventRow
from src.models.webhook_ingest import WebhookSource


def test_phone_normalization_contract():
    international = normalize_phone("+39 333 123 4567")
    assert (international.normalized, international.country_code, international.assumed_country) == (
        "3331234567",
        "IT",
        False,
    )
    assert international.raw == "+39 333 123 4567"

    national = normalize_phone("333-123-4567")
    assert (national.normalized, national.country_code, national.assumed_country) == ("3331234567", "IT", True)

    assert normalize_phone("0039 333 1234567").normalized == "00393331234567"
    assert normalize_phone("+44 7911 123456").country_code == "GB"
    assert normalize_phone("+1 415 555 0100").country_code == "US"
    assert normalize_phone("+49 1512 3456789").normalized == "15123456789"
    assert normalize_phone("333 1234567", default_country="CH").country_code == "CH"


def test_phone_validity():
    assert is_valid_phone_number("333 123") is True
    assert is_valid_phone_number("12345") is False
    assert is_valid_phone_number("1" * 16) is False


def test_field_mapping_contract():
    payload = {"cellulare": "333", "nome": "Anna", "utm_source": "fb"}
    mapped = apply_field_mapping(payload, {"phone": "cellulare", "first_name": "nome", "email": "absent"})

    assert mapped == {"phone": "333", "first_name": "Anna", "utm_source": "fb"}
    assert payload == {"cellulare": "333", "nome": "Anna", "utm_source": "fb"}
    assert apply_field_mapping(payload, None) == payload
    assert apply_field_mapping(payload, None) is not payload


def test_extract_lead_aliases_and_missing_phone():
    lead = extract_lead(
        {"telefono": " 3331234567 ", "nome": "Anna", "cognome": "Bianchi", "email": "ANNA@X.IT", "citta": "Torino", "zip": "10100"}
    )
    assert lead.phone.normalized == "3331234567"
    assert (lead.first_name, lead.last_name, lead.email, lead.city, lead.cap) == (
        "Anna",
        "Bianchi",
        "anna@x.it",
        "Torino",
        "10100",
    )

    assert extract_lead({"mobile": 3331234567}).phone_raw == "3331234567"

    for payload in ({}, {"phone": ""}, {"phone": "   "}, {"phone": None}):
        with pytest.raises(MissingPhoneError):
            extract_lead(payload)


def test_header_whitelist_and_client_ip():
    headers = {
        "Content-Type": "application/json",
        "X-API-Key": "secret",
        "X-Webhook-Secret": "secret",
        "Authorization": "Bearer x",
        "Cookie": "session=1",
        "Referer": "https://example.com/?phone=333",
        "User-Agent": "producer",
    }
    assert filter_headers(headers) == {"content-type": "application/json", "user-agent": "producer"}

    assert client_ip({"x-forwarded-for": " 198.51.100.4 , 10.0.0.1"}) == "198.51.100.4"
    assert client_ip({"cf-connecting-ip": "198.51.100.9"}) == "198.51.100.9"
    assert client_ip({}) == "unknown"


def test_webhook_source_mapping_is_sanitized():
    source = WebhookSource(
        id="s-1",
        brand_id="b-1",
        name="Form",
        api_key_hash="0" * 64,
        mapping={"phone": "tel", "email": "", "city": 3},
    )
    assert source.mapping == {"phone": "tel"}
    assert WebhookSource(id="s-1", brand_id="b-1", name="Form", api_key_hash="0" * 64, mapping=["x"]).mapping is None


def test_export_row_falls_back_to_blank_cells():
    event = LeadEventRow(id="evt-1", brand_id="b-1", source="webhook", source_name=None, received_at="2026-03-01T10:00:00Z")
    row = build_export_row(event, ExportEnrichment())

    assert len(row) == 20
    assert row[0] == "2026-03-01T10:00:00Z"
    assert row[2] == "webhook"
    assert row[1:2] == [""]
    assert all(cell == "" for cell in row[3:])


def test_export_row_payload_aliases():
    event = LeadEventRow(
        id="evt-1",
        brand_id="b-1",
        source_name="Landing",
        received_at="2026-03-01T10:00:00Z",
        raw_payload={"campagna": "Estate", "adset": "Roma 25-45", "creative": "video-1", "notes": "Chiamare sera"},
    )
    row = build_export_row(event, ExportEnrichment(tag_names=["Caldo"]))

    assert row[3:6] == ["Estate", "Roma 25-45", "video-1"]
    assert row[11] == "Chiamare sera"
    assert row[14] == "Caldo"


def test_tag_names_from_embedded_relation():
    assignments = [
        {"tag_id": "t1", "tags": {"name": "Caldo"}},
        {"tag_id": "t2", "tags": [{"name": "Facebook"}]},
        {"tag_id": "t3", "tags": None},
        {"tag_id": "t4", "tags": []},
    ]
    assert tag_names_from_assignments(assignments) == ["Caldo", "Facebook"]
