"""Tests for DatasetRegistry."""

from datetime import datetime, timezone

import pytest

from ledgersheet.errors import NotFound, ValidationError
from ledgersheet.registry import INDEX_KEY, dataset_key
from ledgersheet.schemas import (
    DatasetType,
    Frequency,
    LastWrite,
    Pagination,
    Schedule,
    Target,
)


class TestCreate:
    """Tests for DatasetRegistry.create()."""

    def test_query_dataset(self, registry, store):
        dataset = registry.create("query", "Customers", {"query": "SELECT * FROM Customer"})

        assert dataset.id.startswith("ds_")
        assert dataset.type == DatasetType.QUERY
        assert dataset.version == 1
        assert store.get(INDEX_KEY) == [dataset.id]
        assert store.get(dataset_key(dataset.id))["name"] == "Customers"

    def test_pagination_seeded_from_query(self, registry):
        dataset = registry.create(
            DatasetType.QUERY, "Invoices", {"query": "SELECT * FROM Invoice STARTPOSITION 51 MAXRESULTS 50"}
        )
        assert dataset.pagination.start_position == 51
        assert dataset.pagination.max_results == 50

    def test_explicit_pagination_wins(self, registry):
        dataset = registry.create(
            "query",
            "Invoices",
            {"query": "SELECT * FROM Invoice MAXRESULTS 50"},
            pagination=Pagination(max_results=200, fetch_all=False),
        )
        assert dataset.pagination.max_results == 200
        assert not dataset.pagination.fetch_all

    def test_standard_dataset(self, registry):
        dataset = registry.create("standard", "P&L", {"report_name": "ProfitAndLoss", "filters": {"date_macro": "This Month"}})
        assert dataset.report_name == "ProfitAndLoss"
        assert dataset.default_sheet_name == "QBO_P&L"

    @pytest.mark.parametrize("type_,name,params,match", [
        ("query", "", {"query": "SELECT * FROM Customer"}, "name is required"),
        ("query", "Bad", {}, "params.query"),
        ("query", "Bad", {"query": "SELECT * FROM Widget"}, "Unsupported entity"),
        ("standard", "Bad", {}, "report_name"),
        ("pivot", "Bad", {}, "Unknown dataset type"),
    ])
    def test_invalid(self, registry, store, type_, name, params, match):
        with pytest.raises(ValidationError, match=match):
            registry.create(type_, name, params)
        assert store.get(INDEX_KEY) is None

    def test_enabled_schedule_is_validated(self, registry):
        with pytest.raises(ValidationError, match="time_of_day"):
            registry.create(
                "query", "Customers", {"query": "SELECT * FROM Customer"},
                schedule=Schedule(enabled=True, freq=Frequency.DAILY),
            )

    def test_disabled_schedule_is_not_validated(self, registry):
        registry.create(
            "query", "Customers", {"query": "SELECT * FROM Customer"},
            schedule=Schedule(enabled=False, freq=Frequency.DAILY),
        )


class TestReadUpdateDelete:
    """Tests for lookup, update and delete."""

    def test_list_in_creation_order(self, registry):
        ids = [registry.create("query", f"D{i}", {"query": "SELECT * FROM Item"}).id for i in range(3)]
        assert [d.id for d in registry.list()] == ids

    def test_list_skips_dangling_index_entries(self, registry, store):
        dataset = registry.create("query", "Items", {"query": "SELECT * FROM Item"})
        store.set(INDEX_KEY, ["ds_missing", dataset.id])
        assert [d.id for d in registry.list()] == [dataset.id]

    def test_get_missing(self, registry):
        assert registry.find("ds_nope") is None
        with pytest.raises(NotFound, match="Dataset not found: ds_nope"):
            registry.get("ds_nope")

    def test_update_bumps_version(self, registry):
        dataset = registry.create("query", "Items", {"query": "SELECT * FROM Item"})
        updated = registry.update(dataset.id, name=" Products ", params={"query": "SELECT Id FROM Item"})
        assert updated.name == "Products"
        assert updated.version == 2
        assert updated.updated_at >= dataset.updated_at
        assert registry.get(dataset.id).query == "SELECT Id FROM Item"

    def test_update_rejects_invalid(self, registry):
        dataset = registry.create("query", "Items", {"query": "SELECT * FROM Item"})
        with pytest.raises(ValidationError):
            registry.update(dataset.id, params={"query": "SELECT * FROM"})
        assert registry.get(dataset.id).version == 1

    def test_record_write_applies_target_updates(self, registry):
        dataset = registry.create("query", "Items", {"query": "SELECT * FROM Item"}, target=Target(sheet_name="Items"))
        last_write = LastWrite(
            rows=2, cols=3, wrote_at=datetime.now(timezone.utc),
            sheet_id=4, range_a1="A1:C2", schema_hash="abc",
        )
        updated = registry.record_write(dataset.id, last_write, {"sheet_id": 4})

        stored = registry.get(dataset.id)
        assert updated.version == 2
        assert stored.last_write == last_write
        assert stored.target.sheet_id == 4
        assert stored.target.sheet_name == "Items"

    def test_delete(self, registry, store):
        keep = registry.create("query", "Keep", {"query": "SELECT * FROM Item"})
        drop = registry.create("query", "Drop", {"query": "SELECT * FROM Item"})

        assert registry.delete(drop.id).name == "Drop"
        assert store.get(INDEX_KEY) == [keep.id]
        assert store.get(dataset_key(drop.id)) is None
        with pytest.raises(NotFound):
            registry.delete(drop.id)
