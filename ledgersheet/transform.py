"""
Table transforms - turn raw service payloads into rectangular tables.

Two payload shapes are supported:
- Report JSON: Columns/Column titles plus nested Rows (Section/Data/Summary)
- Entity lists from read-queries: flattened with dotted keys

Every table returned here is a list of rows of equal width, with the
header as the first row. An empty result becomes [["No data"]].
"""

import json
from typing import Any, Iterable, Optional

NO_DATA = [["No data"]]

Table = list[list[Any]]


def _cell_values(col_data: Optional[list[dict[str, Any]]]) -> list[Any]:
    return [cell.get("value") or "" for cell in (col_data or [])]


def _pad(rows: Table, width: int) -> Table:
    return [list(row) + [""] * (width - len(row)) for row in rows]


def report_to_table(report_json: Optional[dict[str, Any]]) -> Table:
    """
    Convert a standard report payload into a table.

    Section headers, data rows and section summaries are emitted in
    document order. Rows whose cells are all blank are skipped.
    """
    report = (report_json or {}).get("Report")
    if not report:
        return [row[:] for row in NO_DATA]

    columns = (report.get("Columns") or {}).get("Column") or []
    headers = [col.get("ColTitle") or col.get("ColType") or "" for col in columns]
    rows: Table = []

    def push(values: list[Any]) -> None:
        if any(v != "" for v in values):
            rows.append(values)

    def walk(node: Optional[dict[str, Any]]) -> None:
        for row in (node or {}).get("Row") or []:
            row_type = row.get("type")
            if row_type == "Section":
                push(_cell_values((row.get("Header") or {}).get("ColData")))
                walk(row.get("Rows"))
                summary = (row.get("Summary") or {}).get("ColData")
                if summary:
                    push(_cell_values(summary))
            elif row_type == "Data":
                push(_cell_values(row.get("ColData")))

    walk(report.get("Rows"))

    if not headers and not rows:
        return [row[:] for row in NO_DATA]

    width = max([len(headers)] + [len(r) for r in rows] + [1])
    header_row = _pad([headers], width)[0]
    if not rows:
        return [header_row] if any(v != "" for v in header_row) else [row[:] for row in NO_DATA]
    return [header_row] + _pad(rows, width)


def flatten_record(record: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """
    Flatten nested objects into dotted keys.

    {"CustomerRef": {"value": "1"}} -> {"CustomerRef.value": "1"}
    Lists are kept whole and serialized to JSON by entities_to_table().
    """
    flat: dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_record(value, prefix=f"{name}."))
        else:
            flat[name] = value
    return flat


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return value


def entities_to_table(records: Iterable[dict[str, Any]]) -> Table:
    """
    Convert query entities into a table.

    The header is the union of flattened keys in first-seen order, so a
    field that only appears on later records still gets a column.
    """
    flat_records = [flatten_record(r) for r in records]
    if not flat_records:
        return [row[:] for row in NO_DATA]

    header: list[str] = []
    seen: set[str] = set()
    for flat in flat_records:
        for key in flat:
            if key not in seen:
                seen.add(key)
                header.append(key)

    if not header:
        return [row[:] for row in NO_DATA]

    table: Table = [list(header)]
    for flat in flat_records:
        table.append([_cell(flat.get(key)) for key in header])
    return table


def count_to_table(entity: str, total_count: int) -> Table:
    """Table for a SELECT COUNT(*) query."""
    return [["entity", "totalCount"], [entity, total_count]]


def normalize_table(table: Optional[Table]) -> tuple[int, int, Table]:
    """
    Make a table rectangular.

    Returns:
        (rows, cols, values); an empty table gives (0, 0, [])
    """
    if not table:
        return 0, 0, []
    width = max(1, max((len(row) for row in table if isinstance(row, list)), default=0))
    values = []
    for row in table:
        safe = list(row[:width]) if isinstance(row, list) else []
        safe.extend([""] * (width - len(safe)))
        values.append(safe)
    return len(values), width, values
