"""
Google Sheets Sink.

Appends extracted rows to an owner's Google Sheet through the Sheets v4
REST API, and rewrites the header row when the owner's field schema
changes. OAuth tokens are stored Fernet-encrypted on the owner record;
an access token close to expiry is refreshed (and written back) before
any Sheets call.

``append_row`` never raises: it returns a ``DeliveryResult`` so the
extraction step can record the outcome and move on. It never retries.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import httpx
from cryptography.fernet import Fernet, InvalidToken

from src.exceptions import SheetSinkError, TokenCipherError
from src.logging_config import get_logger
from src.schemas.extraction import METADATA_COLUMNS, DeliveryResult, DeliveryStatus
from src.schemas.owner import Owner

logger = get_logger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Header row style: bold white text on orange, row frozen
HEADER_BACKGROUND = {"red": 1.0, "green": 0.42, "blue": 0.21}
HEADER_FOREGROUND = {"red": 1.0, "green": 1.0, "blue": 1.0}


class TokenCipher:
    """Fernet wrapper for OAuth tokens at rest."""

    def __init__(self, key: str = "") -> None:
        if not key:
            logger.warning("token_encryption_key_missing_using_ephemeral_key")
            key = Fernet.generate_key().decode()
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ValueError("TOKEN_ENCRYPTION_KEY must be a urlsafe base64 32-byte Fernet key") from e

    def encrypt(self, text: str | None) -> str | None:
        if not text:
            return None
        return self._fernet.encrypt(text.encode()).decode()

    def decrypt(self, token: str | None) -> str | None:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise TokenCipherError("Stored Google token cannot be decrypted") from e


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_header_row(field_names: Sequence[str]) -> list[str]:
    return [*field_names, *METADATA_COLUMNS]


class GoogleSheetsSink:
    """Owner-scoped Google Sheets destination."""

    def __init__(
        self,
        store: Any,
        cipher: TokenCipher,
        client_id: str,
        client_secret: str,
        refresh_lookahead_seconds: int = 300,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_lookahead = timedelta(seconds=refresh_lookahead_seconds)
        self._http = http_client
        self._timeout = timeout

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http is not None:
                response = await self._http.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise SheetSinkError(
                f"{method} {url} returned {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise SheetSinkError(f"{method} {url} failed: {e}") from e

    # -- Credentials --

    async def ensure_fresh_token(self, owner: Owner) -> str:
        """
        Return a usable access token for ``owner``.

        Refreshes through Google's token endpoint when the stored expiry
        falls inside the lookahead window, and persists the new token and
        expiry on the owner record.
        """
        expiry = owner.google_token_expiry
        now = datetime.now(timezone.utc)

        if expiry is not None and _as_utc(expiry) - now < self.refresh_lookahead:
            return await self._refresh_access_token(owner, now)

        access_token = self.cipher.decrypt(owner.google_access_token)
        if not access_token:
            raise SheetSinkError(f"Owner {owner.id} has no stored Google access token")
        return access_token

    async def _refresh_access_token(self, owner: Owner, now: datetime) -> str:
        logger.info("google_token_refresh_started", owner_id=owner.id)

        refresh_token = self.cipher.decrypt(owner.google_refresh_token)
        if not refresh_token:
            raise SheetSinkError(f"Owner {owner.id} has no stored Google refresh token")

        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        try:
            payload = response.json()
            access_token = payload.get("access_token")
            expires_in = payload.get("expires_in")
            new_expiry = now + timedelta(seconds=int(expires_in)) if expires_in else None
        except (ValueError, TypeError, AttributeError) as e:
            raise SheetSinkError(f"Google token refresh returned an unusable payload: {e}") from e
        if not access_token or not isinstance(access_token, str):
            raise SheetSinkError("Google token refresh returned no access_token")

        updates: dict[str, Any] = {"google_access_token": self.cipher.encrypt(access_token)}
        if new_expiry is not None:
            updates["google_token_expiry"] = new_expiry.isoformat()

        try:
            await self.store.update_owner(owner.id, updates)
        except Exception as e:
            raise SheetSinkError(f"Refreshed Google token could not be saved for owner {owner.id}: {e}") from e

        owner.google_access_token = updates["google_access_token"]
        if new_expiry is not None:
            owner.google_token_expiry = new_expiry
        logger.info("google_token_refreshed", owner_id=owner.id)
        return access_token

    # -- Sheet operations --

    async def append_row(self, owner: Owner, values: Sequence[Any]) -> DeliveryResult:
        """Append one row to the owner's sheet; failures come back as results."""
        if not owner.has_sheet_destination:
            logger.warning(
                "sheet_destination_not_configured",
                owner_id=owner.id,
                authorized=owner.google_authorized,
                sheet_bound=bool(owner.google_sheet_id),
            )
            return DeliveryResult(status=DeliveryStatus.SKIPPED, error="No Google Sheet connected")

        try:
            access_token = await self.ensure_fresh_token(owner)
            await self._request(
                "POST",
                f"{SHEETS_API_URL}/{owner.google_sheet_id}/values/A:A:append",
                params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                headers={"Authorization": f"Bearer {access_token}"},
                json={"values": [list(values)]},
            )
        except SheetSinkError as e:
            logger.error("sheet_append_failed", owner_id=owner.id, error=str(e))
            return DeliveryResult(status=DeliveryStatus.FAILED, error=str(e))

        logger.info("sheet_row_appended", owner_id=owner.id, columns=len(values))
        return DeliveryResult(status=DeliveryStatus.DELIVERED)

    async def initialize_headers(self, owner: Owner, field_names: Sequence[str]) -> list[str]:
        """
        Replace row 1 with the active field names plus the metadata columns,
        then style it. Called when the owner's field schema changes.
        """
        if not owner.has_sheet_destination:
            raise SheetSinkError(f"Owner {owner.id} has no Google Sheet connected")

        headers = build_header_row(field_names)
        access_token = await self.ensure_fresh_token(owner)
        auth = {"Authorization": f"Bearer {access_token}"}
        sheet_url = f"{SHEETS_API_URL}/{owner.google_sheet_id}"

        spreadsheet = (
            await self._request("GET", sheet_url, params={"fields": "sheets.properties"}, headers=auth)
        ).json()
        sheets = spreadsheet.get("sheets") or []
        if not sheets:
            raise SheetSinkError(f"Spreadsheet {owner.google_sheet_id} has no sheets")
        sheet_id = sheets[0]["properties"]["sheetId"]

        await self._request(
            "PUT",
            f"{sheet_url}/values/A1",
            params={"valueInputOption": "RAW"},
            headers=auth,
            json={"values": [headers]},
        )

        await self._request(
            "POST",
            f"{sheet_url}:batchUpdate",
            headers=auth,
            json={
                "requests": [
                    {
                        "repeatCell": {
                            "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1},
                            "cell": {
                                "userEnteredFormat": {
                                    "backgroundColor": HEADER_BACKGROUND,
                                    "textFormat": {"foregroundColor": HEADER_FOREGROUND, "bold": True},
                                }
                            },
                            "fields": "userEnteredFormat(backgroundColor,textFormat)",
                        }
                    },
                    {
                        "updateSheetProperties": {
                            "properties": {"sheetId": sheet_id, "gridProperties": {"frozenRowCount": 1}},
                            "fields": "gridProperties.frozenRowCount",
                        }
                    },
                ]
            },
        )

        logger.info("sheet_headers_initialized", owner_id=owner.id, columns=len(headers))
        return headers

    async def validate_access(self, owner: Owner) -> dict[str, str]:
        """Confirm the stored credential can read the bound spreadsheet."""
        if not owner.has_sheet_destination:
            raise SheetSinkError(f"Owner {owner.id} has no Google Sheet connected")

        access_token = await self.ensure_fresh_token(owner)
        data = (
            await self._request(
                "GET",
                f"{SHEETS_API_URL}/{owner.google_sheet_id}",
                params={"fields": "properties.title,spreadsheetUrl"},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        ).json()
        return {
            "title": data.get("properties", {}).get("title", ""),
            "url": data.get("spreadsheetUrl", ""),
        }
