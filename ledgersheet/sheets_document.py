"""
SheetsDocument - Document implementation over the Google Sheets API v4.

Authenticates with a service-account key file. Sheet metadata is fetched
with spreadsheets().get and cached until the next structural change.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build

from ledgersheet.a1 import CellRange, quote_sheet_name
from ledgersheet.document import SheetInfo

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def build_sheets_service(service_account_path: str) -> Any:
    """Build a Sheets API client from a service-account key file."""
    creds_path = Path(service_account_path).expanduser()
    if not creds_path.exists():
        raise FileNotFoundError(f"Service account JSON not found: {creds_path}")
    credentials = service_account.Credentials.from_service_account_file(
        str(creds_path), scopes=SCOPES
    )
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


def _grid_range(sheet_id: int, cells: CellRange) -> dict[str, int]:
    return {
        "sheetId": sheet_id,
        "startRowIndex": cells.row - 1,
        "endRowIndex": cells.last_row,
        "startColumnIndex": cells.col - 1,
        "endColumnIndex": cells.last_col,
    }


class SheetsDocument:
    """
    A Google spreadsheet exposed through the Document protocol.

    Args:
        service: Sheets API client from build_sheets_service()
        spreadsheet_id: Id of the target spreadsheet
    """

    def __init__(self, service: Any, spreadsheet_id: str):
        self._service = service
        self.spreadsheet_id = spreadsheet_id
        self._metadata: Optional[dict[str, Any]] = None

    def _meta(self) -> dict[str, Any]:
        if self._metadata is None:
            self._metadata = (
                self._service.spreadsheets()
                .get(
                    spreadsheetId=self.spreadsheet_id,
                    fields="sheets.properties,namedRanges",
                )
                .execute()
            )
        return self._metadata

    def _batch_update(self, requests: list[dict[str, Any]]) -> dict[str, Any]:
        response = (
            self._service.spreadsheets()
            .batchUpdate(spreadsheetId=self.spreadsheet_id, body={"requests": requests})
            .execute()
        )
        self._metadata = None
        return response

    def _a1(self, sheet_id: int, cells: CellRange) -> str:
        info = self.get_sheet_by_id(sheet_id)
        if info is None:
            raise KeyError(f"No sheet with id {sheet_id}")
        return f"{quote_sheet_name(info.title)}!{cells.a1}"

    def list_sheets(self) -> list[SheetInfo]:
        sheets = []
        for sheet in self._meta().get("sheets", []):
            props = sheet.get("properties", {})
            grid = props.get("gridProperties", {})
            sheets.append(SheetInfo(
                sheet_id=int(props.get("sheetId", 0)),
                title=props.get("title", ""),
                row_count=int(grid.get("rowCount", 0)),
                col_count=int(grid.get("columnCount", 0)),
            ))
        return sheets

    def get_sheet_by_id(self, sheet_id: int) -> Optional[SheetInfo]:
        return next((s for s in self.list_sheets() if s.sheet_id == sheet_id), None)

    def get_sheet_by_name(self, name: str) -> Optional[SheetInfo]:
        return next((s for s in self.list_sheets() if s.title == name), None)

    def add_sheet(self, title: str) -> SheetInfo:
        response = self._batch_update([{"addSheet": {"properties": {"title": title}}}])
        props = response["replies"][0]["addSheet"]["properties"]
        grid = props.get("gridProperties", {})
        logger.info(f"Created sheet '{title}' (id {props['sheetId']})")
        return SheetInfo(
            sheet_id=int(props["sheetId"]),
            title=props["title"],
            row_count=int(grid.get("rowCount", 0)),
            col_count=int(grid.get("columnCount", 0)),
        )

    def resize_sheet(self, sheet_id: int, rows: int, cols: int) -> None:
        self._batch_update([{
            "updateSheetProperties": {
                "properties": {
                    "sheetId": sheet_id,
                    "gridProperties": {"rowCount": rows, "columnCount": cols},
                },
                "fields": "gridProperties.rowCount,gridProperties.columnCount",
            }
        }])

    def clear_range(self, sheet_id: int, cells: CellRange) -> None:
        (
            self._service.spreadsheets()
            .values()
            .clear(spreadsheetId=self.spreadsheet_id, range=self._a1(sheet_id, cells), body={})
            .execute()
        )

    def write_range(self, sheet_id: int, cells: CellRange, values: list[list[Any]]) -> None:
        (
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self.spreadsheet_id,
                range=self._a1(sheet_id, cells),
                valueInputOption="RAW",
                body={"values": values},
            )
            .execute()
        )

    def read_range(self, sheet_id: int, cells: CellRange) -> list[list[Any]]:
        result = (
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=self.spreadsheet_id, range=self._a1(sheet_id, cells))
            .execute()
        )
        return result.get("values", [])

    def _named_range(self, name: str) -> Optional[dict[str, Any]]:
        return next(
            (nr for nr in self._meta().get("namedRanges", []) if nr.get("name") == name),
            None,
        )

    def get_named_range(self, name: str) -> Optional[tuple[int, CellRange]]:
        named = self._named_range(name)
        if named is None:
            return None
        grid = named.get("range", {})
        start_row = int(grid.get("startRowIndex", 0))
        start_col = int(grid.get("startColumnIndex", 0))
        cells = CellRange(
            row=start_row + 1,
            col=start_col + 1,
            rows=int(grid.get("endRowIndex", start_row + 1)) - start_row,
            cols=int(grid.get("endColumnIndex", start_col + 1)) - start_col,
        )
        return int(grid.get("sheetId", 0)), cells

    def set_named_range(self, name: str, sheet_id: int, cells: CellRange) -> None:
        self._batch_update([{
            "addNamedRange": {
                "namedRange": {"name": name, "range": _grid_range(sheet_id, cells)}
            }
        }])

    def delete_named_range(self, name: str) -> bool:
        named = self._named_range(name)
        if named is None:
            return False
        self._batch_update([{"deleteNamedRange": {"namedRangeId": named["namedRangeId"]}}])
        return True
