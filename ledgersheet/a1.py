"""A1 cell-reference helpers."""

import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_ANCHOR = "A1"

_CELL_PATTERN = re.compile(r"^\$?([A-Za-z]{1,3})\$?([1-9][0-9]{0,6})$")


def column_letter(index: int) -> str:
    """Convert a 1-based column index to letters (1 -> A, 27 -> AA)."""
    if index < 1:
        raise ValueError(f"Column index must be >= 1, got {index}")
    letters = ""
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def column_index(letters: str) -> int:
    """Convert column letters to a 1-based index (A -> 1, AA -> 27)."""
    index = 0
    for ch in letters.upper():
        index = index * 26 + (ord(ch) - ord("A") + 1)
    return index


def parse_cell(ref: Optional[str]) -> Optional[tuple[int, int]]:
    """
    Parse a single-cell A1 reference into (row, col), both 1-based.

    Returns None when the reference is missing or not a single cell.
    """
    if not ref:
        return None
    match = _CELL_PATTERN.match(ref.strip())
    if not match:
        return None
    return int(match.group(2)), column_index(match.group(1))


def normalize_anchor(ref: Optional[str]) -> str:
    """Return a canonical anchor (e.g. "$b$3" -> "B3"), defaulting to A1."""
    parsed = parse_cell(ref)
    if parsed is None:
        return DEFAULT_ANCHOR
    row, col = parsed
    return f"{column_letter(col)}{row}"


@dataclass(frozen=True)
class CellRange:
    """A rectangular block of cells, 1-based and inclusive."""
    row: int
    col: int
    rows: int
    cols: int

    @property
    def last_row(self) -> int:
        return self.row + self.rows - 1

    @property
    def last_col(self) -> int:
        return self.col + self.cols - 1

    @property
    def a1(self) -> str:
        start = f"{column_letter(self.col)}{self.row}"
        end = f"{column_letter(self.last_col)}{self.last_row}"
        return start if start == end else f"{start}:{end}"

    @classmethod
    def at(cls, anchor: str, rows: int, cols: int) -> "CellRange":
        parsed = parse_cell(anchor) or (1, 1)
        return cls(row=parsed[0], col=parsed[1], rows=rows, cols=cols)

    @classmethod
    def parse(cls, ref: str) -> "CellRange":
        """Parse "B2" or "B2:D10" into a CellRange."""
        parts = ref.split(":")
        start = parse_cell(parts[0])
        end = parse_cell(parts[1]) if len(parts) == 2 else start
        if start is None or end is None or len(parts) > 2:
            raise ValueError(f"Invalid A1 range: {ref!r}")
        return cls(
            row=start[0],
            col=start[1],
            rows=end[0] - start[0] + 1,
            cols=end[1] - start[1] + 1,
        )


def quote_sheet_name(name: str) -> str:
    """Quote a sheet title for use in an A1 range ("My Sheet" -> "'My Sheet'")."""
    return "'" + name.replace("'", "''") + "'"
