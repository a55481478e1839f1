"""Tests for payload-to-table transforms."""

import json

from ledgersheet.transform import (
    NO_DATA,
    count_to_table,
    entities_to_table,
    flatten_record,
    normalize_table,
    report_to_table,
)


def col(*values):
    return [{"value": v} for v in values]


PROFIT_AND_LOSS = {
    "Report": {
        "Header": {"ReportName": "ProfitAndLoss"},
        "Columns": {"Column": [
            {"ColTitle": "", "ColType": "Account"},
            {"ColTitle": "Total", "ColType": "Money"},
        ]},
        "Rows": {"Row": [
            {
                "type": "Section",
                "Header": {"ColData": col("Income", "")},
                "Rows": {"Row": [
                    {"type": "Data", "ColData": col("Services", "1200.00")},
                    {"type": "Data", "ColData": col("", "")},
                    {"type": "Data", "ColData": col("Sales", "300.00")},
                ]},
                "Summary": {"ColData": col("Total Income", "1500.00")},
            },
            {
                "type": "Section",
                "Summary": {"ColData": col("Net Income", "1500.00")},
            },
        ]},
    }
}


class TestReportToTable:
    """Tests for report_to_table()."""

    def test_sections_in_document_order(self):
        table = report_to_table(PROFIT_AND_LOSS)
        assert table == [
            ["Account", "Total"],
            ["Income", ""],
            ["Services", "1200.00"],
            ["Sales", "300.00"],
            ["Total Income", "1500.00"],
            ["Net Income", "1500.00"],
        ]

    def test_ragged_rows_are_padded(self):
        report = {"Report": {
            "Columns": {"Column": [{"ColTitle": "Name"}]},
            "Rows": {"Row": [{"type": "Data", "ColData": col("a", "b", "c")}]},
        }}
        table = report_to_table(report)
        assert table == [["Name", "", ""], ["a", "b", "c"]]

    def test_header_only(self):
        report = {"Report": {"Columns": {"Column": [{"ColTitle": "Account"}]}, "Rows": {}}}
        assert report_to_table(report) == [["Account"]]

    def test_empty_payloads(self):
        assert report_to_table(None) == NO_DATA
        assert report_to_table({}) == NO_DATA
        assert report_to_table({"Report": {"Rows": {"Row": []}}}) == NO_DATA

    def test_result_is_a_fresh_copy(self):
        table = report_to_table(None)
        table[0][0] = "changed"
        assert NO_DATA == [["No data"]]


class TestEntitiesToTable:
    """Tests for entities_to_table()."""

    def test_flatten_nested(self):
        flat = flatten_record({"Id": "1", "CustomerRef": {"value": "7", "name": "Acme"}})
        assert flat == {"Id": "1", "CustomerRef.value": "7", "CustomerRef.name": "Acme"}

    def test_union_header_first_seen_order(self):
        table = entities_to_table([
            {"Id": "1", "DisplayName": "Acme"},
            {"Id": "2", "DisplayName": "Globex", "Balance": 10},
        ])
        assert table == [
            ["Id", "DisplayName", "Balance"],
            ["1", "Acme", ""],
            ["2", "Globex", 10],
        ]

    def test_lists_are_json_encoded(self):
        table = entities_to_table([{"Id": "1", "Line": [{"Amount": 5, "Id": "a"}], "Note": None}])
        assert table[1][1] == json.dumps([{"Amount": 5, "Id": "a"}], sort_keys=True)
        assert table[1][2] == ""

    def test_empty(self):
        assert entities_to_table([]) == NO_DATA
        assert entities_to_table([{}]) == NO_DATA


def test_count_to_table():
    assert count_to_table("Invoice", 42) == [["entity", "totalCount"], ["Invoice", 42]]


class TestNormalizeTable:
    """Tests for normalize_table()."""

    def test_pads_ragged_rows(self):
        rows, cols, values = normalize_table([["a", "b", "c"], ["d"]])
        assert (rows, cols) == (2, 3)
        assert values == [["a", "b", "c"], ["d", "", ""]]

    def test_empty(self):
        assert normalize_table([]) == (0, 0, [])
        assert normalize_table(None) == (0, 0, [])

    def test_non_list_rows_become_blank(self):
        rows, cols, values = normalize_table([["a", "b"], None])
        assert values == [["a", "b"], ["", ""]]
