"""
Tests for the Google Sheets sink against mocked Sheets and OAuth endpoints.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import pytest
from cryptography.fernet import Fernet
from pytest_httpx import HTTPXMock

from src.exceptions import SheetSinkError, TokenCipherError
from src.schemas.extraction import METADATA_COLUMNS, DeliveryStatus
from src.schemas.owner import Owner
from src.services.sheet_sink import GOOGLE_TOKEN_URL, SHEETS_API_URL, GoogleSheetsSink, TokenCipher

APPEND_URL = f"{SHEETS_API_URL}/sheet-123/values/A:A:append?valueInputOption=RAW&insertDataOption=INSERT_ROWS"


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key().decode())


@pytest.fixture
def connected_owner(store, cipher) -> Owner:
    owner = Owner(
        id="owner-1",
        google_authorized=True,
        google_sheet_id="sheet-123",
        google_access_token=cipher.encrypt("access-1"),
        google_refresh_token=cipher.encrypt("refresh-1"),
        google_token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    store.add_owner(owner)
    return owner


@pytest.fixture
def sheet_sink(store, cipher) -> GoogleSheetsSink:
    return GoogleSheetsSink(store, cipher, client_id="client-id", client_secret="client-secret")


class TestTokenCipher:

    def test_round_trip_and_empty_values(self, cipher):
        assert cipher.decrypt(cipher.encrypt("secret")) == "secret"
        assert cipher.encrypt("") is None
        assert cipher.decrypt(None) is None

    def test_foreign_token_is_rejected(self, cipher):
        other = TokenCipher(Fernet.generate_key().decode())
        with pytest.raises(TokenCipherError):
            cipher.decrypt(other.encrypt("secret"))

    def test_invalid_key_is_rejected(self):
        with pytest.raises(ValueError):
            TokenCipher("not-a-fernet-key")


class TestAppendRow:

    @pytest.mark.asyncio
    async def test_appends_row_with_stored_token(self, sheet_sink, connected_owner, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=APPEND_URL, json={"updates": {"updatedRows": 1}})

        result = await sheet_sink.append_row(connected_owner, ["Dr. Rao", "Pune", "2024-05-01"])

        assert result.status == DeliveryStatus.DELIVERED
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer access-1"
        assert json.loads(request.content) == {"values": [["Dr. Rao", "Pune", "2024-05-01"]]}

    @pytest.mark.asyncio
    async def test_owner_without_sheet_is_skipped(self, sheet_sink, httpx_mock: HTTPXMock):
        owner = Owner(id="owner-2", google_authorized=True)

        result = await sheet_sink.append_row(owner, ["x"])

        assert result.status == DeliveryStatus.SKIPPED
        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_unauthorized_owner_is_skipped(self, sheet_sink):
        owner = Owner(id="owner-2", google_authorized=False, google_sheet_id="sheet-123")

        result = await sheet_sink.append_row(owner, ["x"])

        assert result.status == DeliveryStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_api_error_is_returned_not_raised(self, sheet_sink, connected_owner, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", url=APPEND_URL, status_code=403, text="forbidden")

        result = await sheet_sink.append_row(connected_owner, ["x"])

        assert result.status == DeliveryStatus.FAILED
        assert "403" in result.error

    @pytest.mark.asyncio
    async def test_undecryptable_token_is_a_failed_delivery(self, sheet_sink, connected_owner):
        connected_owner.google_access_token = "garbage"

        result = await sheet_sink.append_row(connected_owner, ["x"])

        assert result.status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_and_persisted(
        self, sheet_sink, connected_owner, store, cipher, httpx_mock: HTTPXMock
    ):
        connected_owner.google_token_expiry = datetime.now(timezone.utc) + timedelta(seconds=60)
        httpx_mock.add_response(
            method="POST", url=GOOGLE_TOKEN_URL, json={"access_token": "access-2", "expires_in": 3600},
        )
        httpx_mock.add_response(method="POST", url=APPEND_URL, json={})

        result = await sheet_sink.append_row(connected_owner, ["x"])

        assert result.delivered
        token_request, append_request = httpx_mock.get_requests()
        form = parse_qs(token_request.content.decode())
        assert form["refresh_token"] == ["refresh-1"]
        assert form["grant_type"] == ["refresh_token"]
        assert append_request.headers["Authorization"] == "Bearer access-2"

        persisted = await store.get_owner("owner-1")
        assert cipher.decrypt(persisted.google_access_token) == "access-2"
        assert persisted.google_token_expiry > datetime.now(timezone.utc) + timedelta(minutes=50)

    @pytest.mark.asyncio
    async def test_failed_refresh_is_a_failed_delivery(
        self, sheet_sink, connected_owner, httpx_mock: HTTPXMock
    ):
        connected_owner.google_token_expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        httpx_mock.add_response(method="POST", url=GOOGLE_TOKEN_URL, status_code=400, json={"error": "invalid_grant"})

        result = await sheet_sink.append_row(connected_owner, ["x"])

        assert result.status == DeliveryStatus.FAILED

    @pytest.mark.asyncio
    async def test_non_json_refresh_response_is_a_failed_delivery(
        self, sheet_sink, connected_owner, httpx_mock: HTTPXMock
    ):
        connected_owner.google_token_expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        httpx_mock.add_response(method="POST", url=GOOGLE_TOKEN_URL, text="<html>Service Unavailable</html>")

        result = await sheet_sink.append_row(connected_owner, ["x"])

        assert result.status == DeliveryStatus.FAILED
        assert "unusable payload" in result.error

    @pytest.mark.asyncio
    async def test_unsaved_refreshed_token_is_a_failed_delivery(
        self, sheet_sink, connected_owner, store, httpx_mock: HTTPXMock
    ):
        connected_owner.google_token_expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        httpx_mock.add_response(
            method="POST", url=GOOGLE_TOKEN_URL, json={"access_token": "access-2", "expires_in": 3600},
        )
        store.update_owner = AsyncMock(side_effect=ConnectionError("supabase write timed out"))

        result = await sheet_sink.append_row(connected_owner, ["x"])

        assert result.status == DeliveryStatus.FAILED
        assert "could not be saved" in result.error


class TestHeaders:

    @pytest.mark.asyncio
    async def test_initialize_headers_writes_and_styles_row_one(
        self, sheet_sink, connected_owner, httpx_mock: HTTPXMock
    ):
        httpx_mock.add_response(
            method="GET",
            url=f"{SHEETS_API_URL}/sheet-123?fields=sheets.properties",
            json={"sheets": [{"properties": {"sheetId": 7, "title": "Sheet1"}}]},
        )
        httpx_mock.add_response(
            method="PUT", url=f"{SHEETS_API_URL}/sheet-123/values/A1?valueInputOption=RAW", json={},
        )
        httpx_mock.add_response(method="POST", url=f"{SHEETS_API_URL}/sheet-123:batchUpdate", json={})

        headers = await sheet_sink.initialize_headers(connected_owner, ["Doctor_Name", "City"])

        assert headers == ["Doctor_Name", "City", *METADATA_COLUMNS]
        _, put_request, batch_request = httpx_mock.get_requests()
        assert json.loads(put_request.content) == {"values": [headers]}
        batch = json.loads(batch_request.content)
        assert batch["requests"][0]["repeatCell"]["range"]["sheetId"] == 7
        assert batch["requests"][1]["updateSheetProperties"]["properties"]["gridProperties"] == {
            "frozenRowCount": 1
        }

    @pytest.mark.asyncio
    async def test_initialize_headers_requires_a_sheet(self, sheet_sink):
        with pytest.raises(SheetSinkError):
            await sheet_sink.initialize_headers(Owner(id="owner-2"), ["City"])

    @pytest.mark.asyncio
    async def test_validate_access(self, sheet_sink, connected_owner, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="GET",
            url=f"{SHEETS_API_URL}/sheet-123?fields=properties.title%2CspreadsheetUrl",
            json={"properties": {"title": "Calls"}, "spreadsheetUrl": "https://docs.google.com/x"},
        )

        assert await sheet_sink.validate_access(connected_owner) == {
            "title": "Calls",
            "url": "https://docs.google.com/x",
        }
