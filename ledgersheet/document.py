"""
Document surface - the spreadsheet that receives dataset output.

Document is the protocol the OutputWriter depends on:
- sheet lookup by id or by name, sheet creation, grid resizing
- clear/write/read of rectangular cell ranges
- named-range get/set/delete

Implementations:
- InMemoryDocument (tests, local runs)
- SheetsDocument (Google Sheets API v4, see ledgersheet.sheets_document)
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ledgersheet.a1 import CellRange

DEFAULT_ROWS = 1000
DEFAULT_COLS = 26


@dataclass
class SheetInfo:
    """One tab of the document."""
    sheet_id: int
    title: str
    row_count: int = DEFAULT_ROWS
    col_count: int = DEFAULT_COLS


class Document(Protocol):
    """Operations the output writer needs from a spreadsheet."""

    def get_sheet_by_id(self, sheet_id: int) -> Optional[SheetInfo]: ...

    def get_sheet_by_name(self, name: str) -> Optional[SheetInfo]: ...

    def list_sheets(self) -> list[SheetInfo]: ...

    def add_sheet(self, title: str) -> SheetInfo: ...

    def resize_sheet(self, sheet_id: int, rows: int, cols: int) -> None: ...

    def clear_range(self, sheet_id: int, cells: CellRange) -> None: ...

    def write_range(self, sheet_id: int, cells: CellRange, values: list[list[Any]]) -> None: ...

    def read_range(self, sheet_id: int, cells: CellRange) -> list[list[Any]]: ...

    def get_named_range(self, name: str) -> Optional[tuple[int, CellRange]]: ...

    def set_named_range(self, name: str, sheet_id: int, cells: CellRange) -> None: ...

    def delete_named_range(self, name: str) -> bool: ...


@dataclass
class _MemorySheet:
    info: SheetInfo
    cells: dict[tuple[int, int], Any] = field(default_factory=dict)


class InMemoryDocument:
    """
    In-memory implementation of Document.

    Cells are stored sparsely; a cleared cell reads back as "".
    """

    def __init__(self, sheet_titles: tuple[str, ...] = ("Sheet1",)):
        self._sheets: dict[int, _MemorySheet] = {}
        self._named: dict[str, tuple[int, CellRange]] = {}
        self._next_id = 0
        self.mutations = 0
        for title in sheet_titles:
            self.add_sheet(title)

    def _sheet(self, sheet_id: int) -> _MemorySheet:
        if sheet_id not in self._sheets:
            raise KeyError(f"No sheet with id {sheet_id}")
        return self._sheets[sheet_id]

    def get_sheet_by_id(self, sheet_id: int) -> Optional[SheetInfo]:
        sheet = self._sheets.get(sheet_id)
        return sheet.info if sheet else None

    def get_sheet_by_name(self, name: str) -> Optional[SheetInfo]:
        for sheet in self._sheets.values():
            if sheet.info.title == name:
                return sheet.info
        return None

    def list_sheets(self) -> list[SheetInfo]:
        return [s.info for s in self._sheets.values()]

    def add_sheet(self, title: str) -> SheetInfo:
        if self.get_sheet_by_name(title) is not None:
            raise ValueError(f"A sheet named '{title}' already exists")
        info = SheetInfo(sheet_id=self._next_id, title=title)
        self._sheets[info.sheet_id] = _MemorySheet(info=info)
        self._next_id += 1
        return info

    def resize_sheet(self, sheet_id: int, rows: int, cols: int) -> None:
        info = self._sheet(sheet_id).info
        info.row_count = rows
        info.col_count = cols
        self.mutations += 1

    def clear_range(self, sheet_id: int, cells: CellRange) -> None:
        sheet = self._sheet(sheet_id)
        for r in range(cells.row, cells.last_row + 1):
            for c in range(cells.col, cells.last_col + 1):
                sheet.cells.pop((r, c), None)
        self.mutations += 1

    def write_range(self, sheet_id: int, cells: CellRange, values: list[list[Any]]) -> None:
        sheet = self._sheet(sheet_id)
        if cells.last_row > sheet.info.row_count or cells.last_col > sheet.info.col_count:
            raise ValueError(f"Range {cells.a1} exceeds grid of sheet '{sheet.info.title}'")
        for i, row in enumerate(values):
            for j, value in enumerate(row):
                sheet.cells[(cells.row + i, cells.col + j)] = value
        self.mutations += 1

    def read_range(self, sheet_id: int, cells: CellRange) -> list[list[Any]]:
        sheet = self._sheet(sheet_id)
        return [
            [sheet.cells.get((r, c), "") for c in range(cells.col, cells.last_col + 1)]
            for r in range(cells.row, cells.last_row + 1)
        ]

    def get_named_range(self, name: str) -> Optional[tuple[int, CellRange]]:
        return self._named.get(name)

    def set_named_range(self, name: str, sheet_id: int, cells: CellRange) -> None:
        self._named[name] = (sheet_id, cells)
        self.mutations += 1

    def delete_named_range(self, name: str) -> bool:
        if name not in self._named:
            return False
        del self._named[name]
        self.mutations += 1
        return True

    def non_empty_cells(self, sheet_id: int) -> dict[tuple[int, int], Any]:
        """All non-blank cells of a sheet (for tests)."""
        return {k: v for k, v in self._sheet(sheet_id).cells.items() if v != ""}
