"""Tests for JobRunner and JobStore."""

import pytest

from ledgersheet.a1 import CellRange
from ledgersheet.errors import NotFound
from ledgersheet.job_runner import JobRunner, JobStore
from ledgersheet.output_writer import OutputWriter
from ledgersheet.schemas import Job, JobStatus, Target
from tests.conftest import FakeHttp, FakeResponse


CUSTOMERS = [
    {"Id": "1", "DisplayName": "Amy's Bird Sanctuary", "Active": True},
    {"Id": "2", "DisplayName": "Bill's Windsurf Shop", "Active": True},
    {"Id": "3", "DisplayName": "Cool Cars", "Active": False},
]


class RecordingJobStore(JobStore):
    """JobStore that remembers the progress of every save."""

    def __init__(self, store):
        super().__init__(store)
        self.progress = []

    def save(self, job):
        self.progress.append(job.progress)
        super().save(job)


def add_customers_dataset(registry, **target):
    return registry.create(
        "query",
        "Customers",
        {"query": "SELECT * FROM Customer"},
        target=Target(**target),
    )


class TestRunQuery:
    """Tests for running query datasets."""

    def test_customer_scenario(self, runner, registry, document, qbo):
        qbo.entities["Customer"] = [dict(c) for c in CUSTOMERS]
        dataset = add_customers_dataset(registry, sheet_name="Customers", anchor_cell="B2")

        job = runner.run(dataset.id)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.result["rows"] == 4
        assert job.result["cols"] == 3
        assert job.result["range_a1"] == "B2:D5"
        assert job.result["pages"] == 1
        assert job.result["has_more"] is False

        sheet = document.get_sheet_by_name("Customers")
        assert document.read_range(sheet.sheet_id, CellRange.parse("B2:D2")) == [["Id", "DisplayName", "Active"]]
        assert document.read_range(sheet.sheet_id, CellRange.parse("B5:D5")) == [["3", "Cool Cars", False]]

        stored = registry.get(dataset.id)
        assert stored.last_write.range_a1 == "B2:D5"
        assert stored.target.sheet_id == sheet.sheet_id
        first_hash = stored.last_write.schema_hash

        qbo.entities["Customer"] = [dict(c, PrimaryEmailAddr={"Address": "a@example.com"}) for c in CUSTOMERS[:2]]
        second = runner.run(dataset.id)

        assert second.status == JobStatus.COMPLETED
        assert second.result["schema_changed"] is True
        assert second.result["schema_hash"] != first_hash
        assert document.read_range(sheet.sheet_id, CellRange.parse("B2:E2")) == [
            ["Id", "DisplayName", "Active", "PrimaryEmailAddr.Address"]
        ]
        # The third customer row from the first run is gone.
        assert document.read_range(sheet.sheet_id, CellRange.parse("B5:D5")) == [["", "", ""]]

    def test_rerun_is_idempotent(self, runner, registry, document, qbo):
        qbo.entities["Customer"] = [dict(c) for c in CUSTOMERS]
        dataset = add_customers_dataset(registry, sheet_name="Customers")

        runner.run(dataset.id)
        sheet = document.get_sheet_by_name("Customers")
        before = document.non_empty_cells(sheet.sheet_id)
        job = runner.run(dataset.id)

        assert job.result["schema_changed"] is False
        assert document.non_empty_cells(sheet.sheet_id) == before
        assert len(document.list_sheets()) == 2

    def test_count_query(self, runner, registry, qbo):
        qbo.entities["Invoice"] = [{"Id": str(i)} for i in range(7)]
        dataset = registry.create("query", "Invoice count", {"query": "SELECT COUNT(*) FROM Invoice"})
        job = runner.run(dataset.id)
        assert job.result["rows"] == 2
        assert job.result["total_count"] == 7

    def test_empty_result_writes_no_data(self, runner, registry, document):
        dataset = add_customers_dataset(registry, sheet_name="Empty")
        job = runner.run(dataset.id)
        sheet = document.get_sheet_by_name("Empty")
        assert job.result["range_a1"] == "A1"
        assert document.non_empty_cells(sheet.sheet_id) == {(1, 1): "No data"}


class TestRunStandard:
    """Tests for running standard report datasets."""

    def test_report(self, runner, registry, document, qbo):
        qbo.report = {"Report": {
            "Columns": {"Column": [{"ColTitle": "Account"}, {"ColTitle": "Total"}]},
            "Rows": {"Row": [{"type": "Data", "ColData": [{"value": "Sales"}, {"value": "10.00"}]}]},
        }}
        dataset = registry.create(
            "standard", "P&L", {"report_name": "ProfitAndLoss", "filters": {"startDate": "2024-01-01"}}
        )

        job = runner.run(dataset.id)

        assert job.status == JobStatus.COMPLETED
        sheet = document.get_sheet_by_name("QBO_P&L")
        assert document.non_empty_cells(sheet.sheet_id) == {
            (1, 1): "Account", (1, 2): "Total", (2, 1): "Sales", (2, 2): "10.00",
        }
        call = runner.client._http.calls[-1]
        assert call["url"].endswith("/reports/ProfitAndLoss")
        assert call["params"]["start_date"] == "2024-01-01"


class TestFailures:
    """Tests for failure handling."""

    def test_missing_dataset_raises(self, runner):
        with pytest.raises(NotFound):
            runner.run("ds_missing")

    def test_disconnected_company_fails_job(self, runner, registry, tokens, document):
        tokens.realm_id = None
        dataset = add_customers_dataset(registry, sheet_name="Customers")

        job = runner.run(dataset.id)

        assert job.status == JobStatus.FAILED
        assert "Missing realm id" in job.error
        assert job.progress == 10
        assert document.get_sheet_by_name("Customers") is None
        assert runner.get_job(job.job_id).status == JobStatus.FAILED

    def test_service_fault_fails_job(self, registry, make_client, document, store, action_log):
        fault = {"Fault": {"Error": [{"Message": "Invalid query", "Detail": "bad field"}]}}
        runner = JobRunner(
            registry,
            make_client(FakeHttp([FakeResponse(400, fault)])),
            OutputWriter(document),
            JobStore(store),
            action_log=action_log,
        )
        dataset = add_customers_dataset(registry, sheet_name="Customers")

        job = runner.run(dataset.id)

        assert job.status == JobStatus.FAILED
        assert job.error == "Invalid query | bad field"
        assert registry.get(dataset.id).last_write is None
        actions = [e["action"] for e in action_log.pending]
        assert actions[0] == "run.start"
        assert actions[-1] == "run.failed"

    def test_record_write_retried_once(self, runner, registry, qbo, monkeypatch):
        qbo.entities["Customer"] = CUSTOMERS
        dataset = add_customers_dataset(registry, sheet_name="Customers")
        calls = []
        record_write = registry.record_write

        def flaky(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 1:
                raise OSError("store busy")
            return record_write(*args, **kwargs)

        monkeypatch.setattr(registry, "record_write", flaky)
        job = runner.run(dataset.id)

        assert job.status == JobStatus.COMPLETED
        assert calls == [dataset.id, dataset.id]
        assert registry.get(dataset.id).last_write.range_a1 == "A1:C4"

    def test_record_write_failure_names_written_range(self, runner, registry, qbo, document, monkeypatch):
        qbo.entities["Customer"] = CUSTOMERS
        dataset = add_customers_dataset(registry, sheet_name="Customers")

        def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(registry, "record_write", broken)
        job = runner.run(dataset.id)

        assert job.status == JobStatus.FAILED
        assert "'Customers'!A1:C4" in job.error
        assert "still describes the previous write" in job.error
        assert document.get_sheet_by_name("Customers") is not None

    def test_run_all_continues_after_failure(self, runner, registry, qbo):
        qbo.entities["Customer"] = [dict(c) for c in CUSTOMERS]
        ok = add_customers_dataset(registry, sheet_name="Customers")
        bad = registry.create("query", "Big", {"query": "SELECT * FROM Item"}, target=Target(sheet_name="Big", anchor_cell="Z1", allow_resize=False))
        qbo.entities["Item"] = [{"Id": "1", "Name": "Hours"}]

        jobs = runner.run_all()

        assert [j.dataset_id for j in jobs] == [ok.id, bad.id]
        assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.FAILED]


class TestCheckpoints:
    """Tests for progress reporting."""

    def test_progress_sequence(self, registry, make_client, document, store, qbo):
        jobs = RecordingJobStore(store)
        runner = JobRunner(registry, make_client(FakeHttp(handler=qbo)), OutputWriter(document), jobs)
        dataset = add_customers_dataset(registry, sheet_name="Customers")

        job = runner.run(dataset.id)

        assert jobs.progress == [0, 10, 30, 60, 80, 95, 100]
        assert job.message == "Completed"


class TestJobStore:
    """Tests for JobStore expiry."""

    def test_expired_jobs_are_not_found(self, store):
        now = [1000.0]
        jobs = JobStore(store, ttl_seconds=60, clock=lambda: now[0])
        jobs.save(Job(job_id="abc", dataset_id="ds_1"))
        assert jobs.get("abc").dataset_id == "ds_1"

        now[0] += 61
        with pytest.raises(NotFound):
            jobs.get("abc")
        assert store.get("job_abc") is None

    def test_purge_expired(self, store):
        now = [1000.0]
        jobs = JobStore(store, ttl_seconds=60, clock=lambda: now[0])
        jobs.save(Job(job_id="old", dataset_id="ds_1"))
        now[0] += 30
        jobs.save(Job(job_id="new", dataset_id="ds_1"))
        now[0] += 45
        assert jobs.purge_expired() == 1
        assert store.keys("job_") == ["job_new"]

    def test_run_purges_expired_jobs(self, registry, make_client, document, store, qbo):
        qbo.entities["Customer"] = CUSTOMERS
        now = [1000.0]
        runner = JobRunner(
            registry,
            make_client(FakeHttp(handler=qbo)),
            OutputWriter(document),
            JobStore(store, ttl_seconds=10, clock=lambda: now[0]),
        )
        dataset = add_customers_dataset(registry)

        jobs = []
        for _ in range(5):
            jobs.append(runner.run(dataset.id))
            now[0] += 100

        assert store.keys("job_") == [f"job_{jobs[-1].job_id}"]
