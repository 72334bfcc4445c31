from __future__ import annotations

import base64
import binascii
import json
import random
import re
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx
from jose import jwt
from jose.exceptions import JOSEError


GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
_JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
_ASSERTION_LIFETIME_SECONDS = 3600

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

HEADERS_ITA = [
    "Timestamp",
    "Brand",
    "Fonte",
    "Campagna",
    "AdSet",
    "Ad",
    "Nome",
    "Cognome",
    "Telefono",
    "Email",
    "Città",
    "Messaggio/Pain Area",
    "Priorità AI",
    "Stage Pipeline",
    "Tags",
    "Appuntamento Status",
    "Appuntamento Data",
    "Vendita Outcome",
    "Vendita Valore",
    "Operatore Ultima Azione",
]
COLUMN_COUNT = len(HEADERS_ITA)
LAST_COLUMN = chr(64 + COLUMN_COUNT)
ALL_RAW_TAB = "ALL_RAW"
SUMMARY_TAB = "Riepilogo"
_TAB_NAME_CLEAN_RE = re.compile(r"[^\w\s-]", re.ASCII)
_TAB_NAME_MAX_LENGTH = 50


class GoogleSheetsProviderError(Exception):
    """Provider-level exception for Google OAuth and Sheets API failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if (
            "access denied" in message
            or "not found" in message
            or "invalid service account" in message
            or "failed to get access token" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    form_data: dict[str, str] | None = None,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json_payload,
                    data=form_data,
                )
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def _request_json(
    *,
    method: str,
    url: str,
    access_token: str,
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
) -> Any:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            headers=headers,
            timeout_seconds=timeout_seconds,
            params=params,
            json_payload=json_payload,
        )
    except httpx.HTTPError as exc:
        raise GoogleSheetsProviderError(f"Google Sheets connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise GoogleSheetsProviderError("Google Sheets access denied")
    if response.status_code == 404:
        raise GoogleSheetsProviderError("Google Sheets spreadsheet not found")
    if response.status_code >= 400:
        raise GoogleSheetsProviderError(
            f"Google Sheets API returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        return response.json()
    except ValueError as exc:
        raise GoogleSheetsProviderError("Google Sheets returned non-JSON response") from exc


def load_service_account_key(value: str) -> dict[str, Any]:
    """Parse the service-account JSON, accepting either raw JSON or its base64 encoding."""
    text = value.strip()
    if not text.startswith("{"):
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise GoogleSheetsProviderError("Invalid service account key encoding") from exc
    try:
        key = json.loads(text)
    except json.JSONDecodeError as exc:
        raise GoogleSheetsProviderError("Invalid service account key JSON") from exc
    if not isinstance(key, dict) or not key.get("client_email") or not key.get("private_key"):
        raise GoogleSheetsProviderError("Invalid service account key: client_email and private_key required")
    return key


def build_jwt_assertion(service_account: dict[str, Any], now: int | None = None) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {
        "iss": service_account["client_email"],
        "scope": SHEETS_SCOPE,
        "aud": service_account.get("token_uri") or GOOGLE_TOKEN_URL,
        "iat": issued_at,
        "exp": issued_at + _ASSERTION_LIFETIME_SECONDS,
    }
    try:
        return jwt.encode(claims, service_account["private_key"], algorithm="RS256")
    except JOSEError as exc:
        raise GoogleSheetsProviderError(f"Invalid service account private key: {exc}") from exc


def get_access_token(service_account: dict[str, Any], timeout_seconds: float = 10.0) -> str:
    token_url = service_account.get("token_uri") or GOOGLE_TOKEN_URL
    try:
        response = _request_with_retry(
            method="POST",
            url=token_url,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout_seconds=timeout_seconds,
            form_data={
                "grant_type": _JWT_BEARER_GRANT,
                "assertion": build_jwt_assertion(service_account),
            },
        )
    except httpx.HTTPError as exc:
        raise GoogleSheetsProviderError(f"Google OAuth connectivity error: {exc}") from exc

    try:
        token_data = response.json()
    except ValueError:
        token_data = {}
    access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
    if not access_token:
        raise GoogleSheetsProviderError(
            f"Failed to get access token: HTTP {response.status_code}: {response.text[:200]}"
        )
    return access_token


def _spreadsheet_url(spreadsheet_id: str, suffix: str = "") -> str:
    return f"{SHEETS_API_BASE}/{quote(spreadsheet_id, safe='')}{suffix}"


def _values_url(spreadsheet_id: str, range_a1: str, suffix: str = "") -> str:
    return _spreadsheet_url(spreadsheet_id, f"/values/{quote(range_a1, safe='')}{suffix}")


def get_spreadsheet_tabs(access_token: str, spreadsheet_id: str, timeout_seconds: float = 15.0) -> list[dict[str, Any]]:
    data = _request_json(
        method="GET",
        url=_spreadsheet_url(spreadsheet_id),
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        params={"fields": "sheets.properties"},
    )
    sheets = data.get("sheets") if isinstance(data, dict) else None
    return [
        sheet["properties"]
        for sheet in (sheets or [])
        if isinstance(sheet, dict) and isinstance(sheet.get("properties"), dict)
    ]


def batch_update(
    access_token: str,
    spreadsheet_id: str,
    requests: list[dict[str, Any]],
    timeout_seconds: float = 15.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        url=_spreadsheet_url(spreadsheet_id, ":batchUpdate"),
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        json_payload={"requests": requests},
    )
    return data if isinstance(data, dict) else {}


def create_tab(access_token: str, spreadsheet_id: str, title: str, timeout_seconds: float = 15.0) -> int:
    result = batch_update(
        access_token,
        spreadsheet_id,
        [{"addSheet": {"properties": {"title": title}}}],
        timeout_seconds=timeout_seconds,
    )
    replies = result.get("replies") or [{}]
    properties = (replies[0].get("addSheet") or {}).get("properties") or {}
    return int(properties.get("sheetId") or 0)


def write_range(
    access_token: str,
    spreadsheet_id: str,
    range_a1: str,
    values: list[list[str]],
    input_option: str = "RAW",
    timeout_seconds: float = 15.0,
) -> None:
    _request_json(
        method="PUT",
        url=_values_url(spreadsheet_id, range_a1),
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        params={"valueInputOption": input_option},
        json_payload={"values": values},
    )


def append_row(
    access_token: str,
    spreadsheet_id: str,
    tab_name: str,
    row: list[str],
    timeout_seconds: float = 15.0,
) -> None:
    _request_json(
        method="POST",
        url=_values_url(spreadsheet_id, f"{tab_name}!A:{LAST_COLUMN}", ":append"),
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
        json_payload={"values": [row]},
    )


class SheetInfoCache:
    """
    Tab listing of one spreadsheet, memoized for the lifetime of a single export.

    Never shared across requests: a new instance is built per export call so tab
    creations made by concurrent exports are always re-read.
    """

    def __init__(self, access_token: str, spreadsheet_id: str, timeout_seconds: float = 15.0):
        self.access_token = access_token
        self.spreadsheet_id = spreadsheet_id
        self.timeout_seconds = timeout_seconds
        self._tabs: list[dict[str, Any]] | None = None

    def load(self) -> list[dict[str, Any]]:
        if self._tabs is None:
            self._tabs = get_spreadsheet_tabs(self.access_token, self.spreadsheet_id, self.timeout_seconds)
        return self._tabs

    def invalidate(self) -> None:
        self._tabs = None

    def tab_names(self) -> list[str]:
        return [str(tab.get("title")) for tab in self.load()]

    def tab_exists(self, title: str) -> bool:
        return title in self.tab_names()

    def sheet_id(self, title: str) -> int | None:
        for tab in self.load():
            if tab.get("title") == title:
                return tab.get("sheetId")
        return None


@dataclass(frozen=True)
class TabHandle:
    sheet_id: int
    created: bool


def tab_layout_requests(sheet_id: int) -> list[dict[str, Any]]:
    return [
        {
            "updateSheetProperties": {
                "properties": {"sheetId": sheet_id, "gridProperties": {"frozenRowCount": 1}},
                "fields": "gridProperties.frozenRowCount",
            }
        },
        {
            "setBasicFilter": {
                "filter": {
                    "range": {
                        "sheetId": sheet_id,
                        "startRowIndex": 0,
                        "startColumnIndex": 0,
                        "endColumnIndex": COLUMN_COUNT,
                    }
                }
            }
        },
        {
            "repeatCell": {
                "range": {
                    "sheetId": sheet_id,
                    "startRowIndex": 0,
                    "endRowIndex": 1,
                    "startColumnIndex": 0,
                    "endColumnIndex": COLUMN_COUNT,
                },
                "cell": {
                    "userEnteredFormat": {
                        "textFormat": {"bold": True},
                        "backgroundColor": {"red": 0.9, "green": 0.9, "blue": 0.9},
                    }
                },
                "fields": "userEnteredFormat(textFormat,backgroundColor)",
            }
        },
        {
            "autoResizeDimensions": {
                "dimensions": {
                    "sheetId": sheet_id,
                    "dimension": "COLUMNS",
                    "startIndex": 0,
                    "endIndex": COLUMN_COUNT,
                }
            }
        },
    ]


def ensure_raw_tab(cache: SheetInfoCache, tab_name: str) -> TabHandle:
    """Create the tab with its header row if missing. Existing tabs are left untouched."""
    if cache.tab_exists(tab_name):
        return TabHandle(sheet_id=cache.sheet_id(tab_name) or 0, created=False)

    sheet_id = create_tab(cache.access_token, cache.spreadsheet_id, tab_name, cache.timeout_seconds)
    write_range(
        cache.access_token,
        cache.spreadsheet_id,
        f"{tab_name}!A1:{LAST_COLUMN}1",
        [HEADERS_ITA],
        timeout_seconds=cache.timeout_seconds,
    )
    cache.invalidate()
    return TabHandle(sheet_id=sheet_id, created=True)


def ensure_view_tab(cache: SheetInfoCache, view_tab_name: str, raw_tab_name: str) -> TabHandle:
    if cache.tab_exists(view_tab_name):
        return TabHandle(sheet_id=cache.sheet_id(view_tab_name) or 0, created=False)

    sheet_id = create_tab(cache.access_token, cache.spreadsheet_id, view_tab_name, cache.timeout_seconds)
    formula = f"=ARRAYFORMULA('{raw_tab_name}'!A:{LAST_COLUMN})"
    write_range(
        cache.access_token,
        cache.spreadsheet_id,
        f"{view_tab_name}!A1",
        [[formula]],
        input_option="USER_ENTERED",
        timeout_seconds=cache.timeout_seconds,
    )
    # Layout only at creation; later user edits to the view are preserved.
    batch_update(cache.access_token, cache.spreadsheet_id, tab_layout_requests(sheet_id), cache.timeout_seconds)
    cache.invalidate()
    return TabHandle(sheet_id=sheet_id, created=True)


def summary_tab_rows(raw_tab: str = ALL_RAW_TAB) -> list[list[str]]:
    separator = ["═" * 39, "", "", "", ""]
    blank = ["", "", "", "", ""]
    ref = f"'{raw_tab}'"
    return [
        ["RIEPILOGO KPI ENTERPRISE", "", "", "", ""],
        ["Ultimo aggiornamento:", "=NOW()", "", "", ""],
        blank,
        separator,
        ["KPI 1-5: VOLUME & VELOCITÀ", "", "", "", ""],
        separator,
        ["KPI", "Valore", "Trend/Note", "", ""],
        ["1. Lead Totali", f"=MAX(0,COUNTA({ref}!A:A)-1)", "", "", ""],
        [
            "2. Lead Ultime 24h",
            f"=SUMPRODUCT(({ref}!A2:A<>\"\")*((DATEVALUE(LEFT({ref}!A2:A,10))"
            f"+IFERROR(TIMEVALUE(MID({ref}!A2:A,12,8)),0))>=NOW()-1))",
            "",
            "",
            "",
        ],
        [
            "3. Lead Ultimi 7 giorni",
            f"=SUMPRODUCT(({ref}!A2:A<>\"\")*((DATEVALUE(LEFT({ref}!A2:A,10)))>=TODAY()-7))",
            "",
            "",
            "",
        ],
        [
            "4. Lead Ultimi 30 giorni",
            f"=SUMPRODUCT(({ref}!A2:A<>\"\")*((DATEVALUE(LEFT({ref}!A2:A,10)))>=TODAY()-30))",
            "",
            "",
            "",
        ],
        ["5. Media Giornaliera (30gg)", "=IFERROR(ROUND(B11/30,1),0)", "", "", ""],
        blank,
        separator,
        ["KPI 6-7: CONVERSIONE", "", "", "", ""],
        separator,
        ["6. Appuntamenti Schedulati", f"=COUNTIF({ref}!P:P,\"scheduled\")", "", "", ""],
        ["7. Vendite Chiuse (Won)", f"=COUNTIF({ref}!R:R,\"won\")", "", "", ""],
        ["   Conversion Rate", "=IFERROR(ROUND(B18/B8*100,1)&\"%\",\"0%\")", "", "", ""],
        blank,
        separator,
        ["KPI 8: DISTRIBUZIONE PRIORITÀ AI", "", "", "", ""],
        separator,
        ["Priorità 5 (Urgente)", f"=COUNTIF({ref}!M:M,\"5\")", "", "", ""],
        ["Priorità 4", f"=COUNTIF({ref}!M:M,\"4\")", "", "", ""],
        ["Priorità 3", f"=COUNTIF({ref}!M:M,\"3\")", "", "", ""],
        ["Priorità 2", f"=COUNTIF({ref}!M:M,\"2\")", "", "", ""],
        ["Priorità 1 (Bassa)", f"=COUNTIF({ref}!M:M,\"1\")", "", "", ""],
        blank,
        separator,
        ["KPI 9: PER FONTE", "", "", "", ""],
        separator,
        [
            f"=IFERROR(QUERY({ref}!C2:C,\"SELECT C, COUNT(C) WHERE C<>'' GROUP BY C "
            f"ORDER BY COUNT(C) DESC LABEL COUNT(C) 'Conteggio'\",0),\"Nessun dato\")",
            "",
            "",
            "",
            "",
        ],
        blank,
        blank,
        blank,
        blank,
        blank,
        separator,
        ["KPI 10: PER CAMPAGNA (Top 10)", "", "", "", ""],
        separator,
        [
            f"=IFERROR(QUERY({ref}!D2:D,\"SELECT D, COUNT(D) WHERE D<>'' GROUP BY D "
            f"ORDER BY COUNT(D) DESC LIMIT 10 LABEL COUNT(D) 'Conteggio'\",0),\"Nessun dato\")",
            "",
            "",
            "",
            "",
        ],
    ]


def ensure_summary_tab(cache: SheetInfoCache) -> bool:
    """Create and format the KPI summary tab once. Returns True when it was created now."""
    if cache.tab_exists(SUMMARY_TAB):
        return False

    sheet_id = create_tab(cache.access_token, cache.spreadsheet_id, SUMMARY_TAB, cache.timeout_seconds)
    write_range(
        cache.access_token,
        cache.spreadsheet_id,
        f"{SUMMARY_TAB}!A1:E50",
        summary_tab_rows(),
        input_option="USER_ENTERED",
        timeout_seconds=cache.timeout_seconds,
    )
    batch_update(
        cache.access_token,
        cache.spreadsheet_id,
        [
            {
                "repeatCell": {
                    "range": {
                        "sheetId": sheet_id,
                        "startRowIndex": 0,
                        "endRowIndex": 1,
                        "startColumnIndex": 0,
                        "endColumnIndex": 1,
                    },
                    "cell": {"userEnteredFormat": {"textFormat": {"bold": True, "fontSize": 16}}},
                    "fields": "userEnteredFormat.textFormat",
                }
            },
            {
                "autoResizeDimensions": {
                    "dimensions": {"sheetId": sheet_id, "dimension": "COLUMNS", "startIndex": 0, "endIndex": 5}
                }
            },
        ],
        cache.timeout_seconds,
    )
    cache.invalidate()
    return True


def _short_name_hash(value: str) -> str:
    # 32-bit rolling hash (h * 31 + c), rendered as signed hex; last 4 chars kept.
    acc = 0
    for char in value:
        acc = (acc * 31 + ord(char)) & 0xFFFFFFFF
    if acc >= 0x80000000:
        acc -= 0x100000000
    text = f"-{-acc:x}" if acc < 0 else f"{acc:x}"
    return text[-4:]


def source_tab_names(source_name: str | None, existing_tabs: list[str]) -> tuple[str, str]:
    """Return (raw_tab, view_tab) for a lead source."""
    is_meta = "meta" in (source_name or "").lower()
    base_name = "Meta" if is_meta else (source_name or "Generic")
    clean_name = _TAB_NAME_CLEAN_RE.sub("", base_name)[:_TAB_NAME_MAX_LENGTH]

    raw_name = f"{clean_name}_RAW"
    view_name = clean_name
    raw_exists = raw_name in existing_tabs
    view_exists = view_name in existing_tabs
    # Half of the pair exists: the other half is a user tab, pick a disambiguated pair.
    if raw_exists != view_exists:
        suffix = _short_name_hash(source_name or base_name)
        raw_name = f"{clean_name}_{suffix}_RAW"
        view_name = f"{clean_name}_{suffix}"
    return raw_name, view_name
