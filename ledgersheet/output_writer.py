"""
OutputWriter - Idempotent tabular writes into the document.

For each write:
1. Normalize the target (sheet name, anchor, named-range alias)
2. Enforce cell ceilings: soft limit warns, hard limit rejects before
   any cell is touched
3. Resolve the sheet by id, then by name, else create one with a
   de-duplicated name
4. Grow the grid if allowed, otherwise reject a write that does not fit
5. Clear the region of the previous write when it is on the same sheet
6. Write the table at the anchor
7. Recreate the named range so it points at the new region, dropping
   the previous alias when the target renamed it
8. Fingerprint the header row to detect schema drift
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ledgersheet.a1 import CellRange
from ledgersheet.document import Document, SheetInfo
from ledgersheet.errors import SizingError
from ledgersheet.schemas import LastWrite, Target
from ledgersheet.transform import NO_DATA, Table, normalize_table

logger = logging.getLogger(__name__)

DEFAULT_SOFT_LIMIT = 1_000_000
DEFAULT_HARD_LIMIT = 5_000_000


def schema_hash(table: Table) -> str:
    """Stable fingerprint of the header row (first 16 hex chars of sha256)."""
    header = [str(v) for v in table[0]] if table else []
    digest = hashlib.sha256(json.dumps(header, ensure_ascii=False).encode("utf-8"))
    return digest.hexdigest()[:16]


@dataclass
class WriteResult:
    """Outcome of one write."""
    sheet_id: int
    sheet_name: str
    range_a1: str
    rows: int
    cols: int
    schema_hash: str
    schema_changed: bool = False
    target_updates: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    cleared_range: Optional[str] = None
    named_range: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheet_id": self.sheet_id,
            "sheet_name": self.sheet_name,
            "range_a1": self.range_a1,
            "rows": self.rows,
            "cols": self.cols,
            "schema_hash": self.schema_hash,
            "schema_changed": self.schema_changed,
            "target_updates": self.target_updates,
            "warnings": self.warnings,
            "cleared_range": self.cleared_range,
            "named_range": self.named_range,
        }


class OutputWriter:
    """
    Writes tables to a Document.

    Args:
        document: Document implementation
        soft_limit: Cell count above which a warning is attached
        hard_limit: Cell count above which the write is rejected
    """

    def __init__(
        self,
        document: Document,
        soft_limit: int = DEFAULT_SOFT_LIMIT,
        hard_limit: int = DEFAULT_HARD_LIMIT,
    ):
        self.document = document
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit

    def _unique_title(self, base: str) -> str:
        taken = {s.title.lower() for s in self.document.list_sheets()}
        if base.lower() not in taken:
            return base
        n = 2
        while f"{base} ({n})".lower() in taken:
            n += 1
        return f"{base} ({n})"

    def resolve_sheet(self, target: Target) -> SheetInfo:
        """Find the target sheet by id, then name; create it if neither resolves."""
        if target.sheet_id is not None:
            sheet = self.document.get_sheet_by_id(target.sheet_id)
            if sheet is not None:
                return sheet
        sheet = self.document.get_sheet_by_name(target.sheet_name)
        if sheet is not None:
            return sheet
        title = self._unique_title(target.sheet_name)
        logger.info(f"Creating sheet '{title}'")
        return self.document.add_sheet(title)

    def write(
        self,
        target: Target,
        table: Table,
        previous: Optional[LastWrite] = None,
        default_sheet_name: str = "",
    ) -> WriteResult:
        """
        Write a table to the target location.

        Args:
            target: Where to write (normalized here)
            table: Rows, header first
            previous: LastWrite of the previous run, used for clearing and
                schema-drift detection
            default_sheet_name: Sheet name used when the target names none

        Raises:
            SizingError: Hard cell limit exceeded, or the grid is too small
                and allow_resize is off
        """
        normalized = target.normalized(default_sheet_name)
        rows, cols, values = normalize_table(table)
        if rows == 0:
            rows, cols, values = normalize_table([row[:] for row in NO_DATA])

        cells = rows * cols
        if cells > self.hard_limit:
            raise SizingError(
                f"Output has {cells:,} cells ({rows} x {cols}), over the limit of {self.hard_limit:,}",
                cells=cells,
                limit=self.hard_limit,
            )
        warnings = []
        if cells > self.soft_limit:
            warnings.append(
                f"Output has {cells:,} cells, above the soft limit of {self.soft_limit:,}"
            )
            logger.warning(warnings[-1])

        sheet = self.resolve_sheet(normalized)
        region = CellRange.at(normalized.anchor_cell, rows, cols)

        if region.last_row > sheet.row_count or region.last_col > sheet.col_count:
            if not normalized.allow_resize:
                raise SizingError(
                    f"Range {region.a1} does not fit sheet '{sheet.title}' "
                    f"({sheet.row_count} x {sheet.col_count}) and resizing is disabled",
                    cells=cells,
                )
            new_rows = max(sheet.row_count, region.last_row)
            new_cols = max(sheet.col_count, region.last_col)
            logger.info(f"Resizing sheet '{sheet.title}' to {new_rows} x {new_cols}")
            self.document.resize_sheet(sheet.sheet_id, new_rows, new_cols)

        cleared = None
        if previous is not None and previous.sheet_id == sheet.sheet_id and previous.range_a1:
            old_region = CellRange.parse(previous.range_a1)
            self.document.clear_range(sheet.sheet_id, old_region)
            cleared = old_region.a1

        self.document.write_range(sheet.sheet_id, region, values)

        stale_alias = previous.named_range if previous is not None else None
        if stale_alias and stale_alias != normalized.named_range:
            logger.info(f"Removing previous named range '{stale_alias}'")
            self.document.delete_named_range(stale_alias)

        if normalized.named_range:
            self.document.delete_named_range(normalized.named_range)
            self.document.set_named_range(normalized.named_range, sheet.sheet_id, region)

        new_hash = schema_hash(values)
        schema_changed = bool(previous and previous.schema_hash and previous.schema_hash != new_hash)
        if schema_changed:
            logger.warning(
                f"Schema changed on '{sheet.title}' ({previous.schema_hash} -> {new_hash}); "
                f"formulas referencing this output may need review"
            )

        target_updates: dict[str, Any] = {}
        if target.sheet_id != sheet.sheet_id:
            target_updates["sheet_id"] = sheet.sheet_id
        if target.sheet_name != sheet.title:
            target_updates["sheet_name"] = sheet.title
        if target.anchor_cell != normalized.anchor_cell:
            target_updates["anchor_cell"] = normalized.anchor_cell
        if target.named_range != normalized.named_range:
            target_updates["named_range"] = normalized.named_range

        logger.info(f"Wrote {rows} x {cols} to '{sheet.title}'!{region.a1}")
        return WriteResult(
            sheet_id=sheet.sheet_id,
            sheet_name=sheet.title,
            range_a1=region.a1,
            rows=rows,
            cols=cols,
            schema_hash=new_hash,
            schema_changed=schema_changed,
            target_updates=target_updates,
            warnings=warnings,
            cleared_range=cleared,
            named_range=normalized.named_range,
        )
