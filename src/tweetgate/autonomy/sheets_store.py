from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import Config
from .errors import NotFoundError, StoreError
from .models import (
    APPROVAL_COLUMNS,
    INTERACTION_LEDGER_COLUMNS,
    POST_LEDGER_COLUMNS,
    ApprovalRequest,
)
from .store import DecisionStore


logger = logging.getLogger("tweetgate.autonomy")

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def build_sheets_service(credentials_info: Dict[str, Any]) -> Any:
    if not credentials_info:
        raise StoreError("Missing Google Sheets credentials. Set GOOGLE_SHEETS_CREDENTIALS to service-account JSON.")
    try:
        creds = service_account.Credentials.from_service_account_info(credentials_info, scopes=SHEETS_SCOPES)
    except (ValueError, GoogleAuthError) as e:
        raise StoreError(f"Invalid Google Sheets credentials: {e}") from e
    return build("sheets", "v4", credentials=creds, cache_discovery=False)


class GoogleSheetsDecisionStore(DecisionStore):
    """Approvals, Posts and Interactions tabs of one spreadsheet.

    Reviewers edit the ``status``/``modified_content``/``reason`` cells of the
    Approvals tab by hand; the agent reads the tab back on every poll. Columns
    are matched by header name, so reviewers may reorder or add columns.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        service: Any = None,
        credentials_info: Optional[Dict[str, Any]] = None,
        approvals_sheet: str = "Approvals",
        posts_sheet: str = "Posts",
        interactions_sheet: str = "Interactions",
    ):
        if not spreadsheet_id:
            raise StoreError("Missing spreadsheet id. Set GOOGLE_SHEETS_SPREADSHEET_ID.")
        self.spreadsheet_id = spreadsheet_id
        self.service = service if service is not None else build_sheets_service(credentials_info or {})
        self.approvals_sheet = approvals_sheet
        self.posts_sheet = posts_sheet
        self.interactions_sheet = interactions_sheet
        self._headers_ready: Set[str] = set()

    @classmethod
    def from_config(cls, cfg: Config, service: Any = None) -> "GoogleSheetsDecisionStore":
        credentials_info: Dict[str, Any] = {}
        if service is None:
            try:
                credentials_info = json.loads(cfg.sheets_credentials_json or "{}")
            except json.JSONDecodeError as e:
                raise StoreError(f"GOOGLE_SHEETS_CREDENTIALS is not valid JSON: {e}") from e
        return cls(
            cfg.sheets_spreadsheet_id,
            service=service,
            credentials_info=credentials_info,
            approvals_sheet=cfg.approvals_sheet,
            posts_sheet=cfg.posts_sheet,
            interactions_sheet=cfg.interactions_sheet,
        )

    def _values(self) -> Any:
        return self.service.spreadsheets().values()

    async def _call(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except HttpError as e:
            status = getattr(getattr(e, "resp", None), "status", "?")
            logger.error("Sheets request failed op=%s status=%s error=%s", label, status, e)
            raise StoreError(f"Google Sheets {label} failed (status={status}): {e}") from e
        except (OSError, GoogleAuthError) as e:
            logger.error("Sheets request failed op=%s error=%s", label, e)
            raise StoreError(f"Google Sheets {label} failed: {e}") from e

    async def _get_values(self, range_name: str) -> List[List[str]]:
        result = await self._call(
            f"get {range_name}",
            lambda: self._values().get(spreadsheetId=self.spreadsheet_id, range=range_name).execute(),
        )
        values = (result or {}).get("values") or []
        return [[str(cell) for cell in row] for row in values]

    async def _append_values(self, sheet: str, rows: List[List[str]]) -> None:
        await self._call(
            f"append {sheet}",
            lambda: self._values()
            .append(
                spreadsheetId=self.spreadsheet_id,
                range=f"{sheet}!A:Z",
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": rows},
            )
            .execute(),
        )

    async def _ensure_header(self, sheet: str, columns: List[str]) -> None:
        if sheet in self._headers_ready:
            return
        first_row = await self._get_values(f"{sheet}!A1:1")
        if not first_row or not any(cell.strip() for cell in first_row[0]):
            logger.info("Writing header row sheet=%s columns=%s", sheet, len(columns))
            await self._append_values(sheet, [list(columns)])
        self._headers_ready.add(sheet)

    async def _approval_rows(self) -> List[List[str]]:
        return await self._get_values(f"{self.approvals_sheet}!A:Z")

    @staticmethod
    def _headers_from(rows: List[List[str]]) -> List[str]:
        if rows and "approval_id" in [cell.strip() for cell in rows[0]]:
            return [cell.strip() for cell in rows[0]]
        return list(APPROVAL_COLUMNS)

    async def list_all(self) -> List[ApprovalRequest]:
        rows = await self._approval_rows()
        if not rows:
            return []
        headers = self._headers_from(rows)
        out: List[ApprovalRequest] = []
        for row_number, row in enumerate(rows[1:], start=2):
            if not any(cell.strip() for cell in row):
                continue
            try:
                out.append(ApprovalRequest.from_row(row, headers))
            except ValueError as e:
                logger.warning(
                    "Skipping unreadable approval row sheet=%s row=%s error=%s",
                    self.approvals_sheet,
                    row_number,
                    e,
                )
        return out

    async def append(self, request: ApprovalRequest) -> None:
        await self._ensure_header(self.approvals_sheet, APPROVAL_COLUMNS)
        await self._append_values(self.approvals_sheet, [request.to_row()])

    async def _write(self, request: ApprovalRequest) -> None:
        rows = await self._approval_rows()
        headers = self._headers_from(rows)
        id_index = headers.index("approval_id")
        record = request.to_cache()
        for row_number, row in enumerate(rows[1:], start=2):
            if id_index < len(row) and row[id_index].strip() == request.id:
                values = [record.get(name, row[idx] if idx < len(row) else "") for idx, name in enumerate(headers)]
                range_name = f"{self.approvals_sheet}!A{row_number}"
                await self._call(
                    f"update {range_name}",
                    lambda: self._values()
                    .update(
                        spreadsheetId=self.spreadsheet_id,
                        range=range_name,
                        valueInputOption="RAW",
                        body={"values": [values]},
                    )
                    .execute(),
                )
                return
        raise NotFoundError(request.id)

    async def append_post_ledger(self, row: List[str]) -> None:
        await self._ensure_header(self.posts_sheet, POST_LEDGER_COLUMNS)
        await self._append_values(self.posts_sheet, [list(row)])

    async def append_interaction_ledger(self, row: List[str]) -> None:
        await self._ensure_header(self.interactions_sheet, INTERACTION_LEDGER_COLUMNS)
        await self._append_values(self.interactions_sheet, [list(row)])
