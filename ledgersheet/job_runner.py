"""JobRunner - Executes one dataset run as a single unit.

This module provides the run entry points used by the CLI and the scheduler:
1. Loads the Dataset from the registry
2. Creates a Job and persists it under job_<id> with a TTL
3. Fetches through QboClient (standard report or paginated query)
4. Transforms the payload into a table and hands it to the OutputWriter
5. Records LastWrite on the dataset and finishes the Job

Progress checkpoints: connecting 10, fetching 30, transforming 60,
writing 80, finalizing 95, completed 100.

Fetches are never retried here; retries live in QboClient. Recording the
write snapshot is retried once. Any exception raised after the Job is
created turns it into a failed Job and is not re-raised.

Usage:
    runner = JobRunner(registry, client, writer, JobStore(store))
    job = runner.run("ds_0123456789ab")
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ledgersheet.errors import NotFound, PermanentError
from ledgersheet.output_writer import OutputWriter, WriteResult
from ledgersheet.qbo_client import QboClient
from ledgersheet.query_parser import parse_query
from ledgersheet.registry import DatasetRegistry
from ledgersheet.schemas import Dataset, DatasetType, Job, JobStatus, LastWrite
from ledgersheet.store import KeyValueStore
from ledgersheet.transform import Table, report_to_table
from ledgersheet.utils import ActionLog, sanitize_error_message

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "job_"
DEFAULT_JOB_TTL_SECONDS = 21600

CHECKPOINTS = {
    "connecting": 10,
    "fetching": 30,
    "transforming": 60,
    "writing": 80,
    "finalizing": 95,
}

CHECKPOINT_MESSAGES = {
    "connecting": "Connecting",
    "fetching": "Fetching data",
    "transforming": "Transforming results",
    "writing": "Writing to sheet",
    "finalizing": "Finalizing",
}


def new_job_id() -> str:
    return uuid.uuid4().hex[:16]


class JobStore:
    """
    Short-lived Job records in the key-value store.

    Each record carries an expiry. Expired records are purged when read and
    before every run.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock

    def save(self, job: Job) -> None:
        self._store.set(
            f"{JOB_KEY_PREFIX}{job.job_id}",
            {"job": job.to_dict(), "expires_at": self._clock() + self._ttl},
        )

    def get(self, job_id: str) -> Job:
        """
        Return a live Job.

        Raises:
            NotFound: If the job never existed or has expired
        """
        key = f"{JOB_KEY_PREFIX}{job_id}"
        record = self._store.get(key)
        if record is None:
            raise NotFound(f"Job not found: {job_id}")
        if self._clock() >= record.get("expires_at", 0):
            self._store.delete(key)
            raise NotFound(f"Job not found: {job_id}")
        return Job.from_dict(record["job"])

    def purge_expired(self) -> int:
        """Delete every expired job record. Returns the number removed."""
        now = self._clock()
        removed = 0
        for key in self._store.keys(JOB_KEY_PREFIX):
            record = self._store.get(key) or {}
            if now >= record.get("expires_at", 0):
                self._store.delete(key)
                removed += 1
        return removed


@dataclass
class RunContext:
    """State for one run, passed explicitly through the run steps."""
    job: Job
    dataset: Dataset
    started: float = field(default_factory=time.monotonic)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class JobRunner:
    """
    Runs datasets end to end.

    Args:
        registry: DatasetRegistry holding the definitions
        client: QboClient used for fetching
        writer: OutputWriter used for the document write
        jobs: JobStore for progress records
        action_log: Optional ActionLog for run.* entries
    """

    def __init__(
        self,
        registry: DatasetRegistry,
        client: QboClient,
        writer: OutputWriter,
        jobs: JobStore,
        action_log: Optional[ActionLog] = None,
    ):
        self.registry = registry
        self.client = client
        self.writer = writer
        self.jobs = jobs
        self.action_log = action_log

    def _log(self, action: str, status: str = "info", **fields: Any) -> None:
        if self.action_log is not None:
            self.action_log.record(action, status=status, **fields)

    def _advance(self, ctx: RunContext, checkpoint: str) -> None:
        ctx.job.advance(CHECKPOINTS[checkpoint], CHECKPOINT_MESSAGES[checkpoint])
        self.jobs.save(ctx.job)
        logger.debug(f"Job {ctx.job.job_id}: {checkpoint} ({ctx.job.progress}%)")

    def run(self, dataset_id: str, trigger: str = "manual") -> Job:
        """
        Run one dataset.

        Returns:
            The terminal Job (completed or failed)

        Raises:
            NotFound: If the dataset does not exist (no Job is created)
        """
        dataset = self.registry.get(dataset_id)
        purged = self.jobs.purge_expired()
        if purged:
            logger.debug(f"Purged {purged} expired job record(s)")

        job = Job(job_id=new_job_id(), dataset_id=dataset.id, trigger=trigger)
        ctx = RunContext(job=job, dataset=dataset)
        self.jobs.save(job)

        logger.info(f"Starting run: {dataset.id} ({dataset.type.value}, job={job.job_id}, trigger={trigger})")
        self._log("run.start", dataset_id=dataset.id, job_id=job.job_id, trigger=trigger)

        try:
            self._advance(ctx, "connecting")
            # Resolving the base URL fails fast when no company is connected.
            _ = self.client.base_url

            table = self._fetch(ctx)

            self._advance(ctx, "writing")
            result = self.writer.write(
                dataset.target,
                table,
                previous=dataset.last_write,
                default_sheet_name=dataset.default_sheet_name,
            )

            self._advance(ctx, "finalizing")
            last_write = LastWrite(
                rows=result.rows,
                cols=result.cols,
                wrote_at=datetime.now(timezone.utc),
                sheet_id=result.sheet_id,
                range_a1=result.range_a1,
                schema_hash=result.schema_hash,
                named_range=result.named_range,
            )
            self._record_write(dataset.id, last_write, result)

            envelope = {
                "dataset_id": dataset.id,
                "rows": result.rows,
                "cols": result.cols,
                "sheet_id": result.sheet_id,
                "sheet_name": result.sheet_name,
                "range_a1": result.range_a1,
                "schema_hash": result.schema_hash,
                "schema_changed": result.schema_changed,
                "warnings": result.warnings,
                "duration_ms": ctx.elapsed_ms,
                **ctx.details,
            }
            job.complete(envelope)
            self.jobs.save(job)

            logger.info(
                f"Run completed: {dataset.id} -> '{result.sheet_name}'!{result.range_a1} "
                f"({result.rows} x {result.cols})"
            )
            self._log(
                "run.complete",
                status="ok",
                dataset_id=dataset.id,
                job_id=job.job_id,
                rows=result.rows,
                cols=result.cols,
                duration_ms=ctx.elapsed_ms,
            )

        except Exception as e:
            message = sanitize_error_message(e)
            job.fail(message)
            self.jobs.save(job)
            logger.error(f"Run failed: {dataset.id}: {message}")
            self._log(
                "run.failed",
                status="error",
                dataset_id=dataset.id,
                job_id=job.job_id,
                error=message,
                error_type=type(e).__name__,
                duration_ms=ctx.elapsed_ms,
            )

        return job

    def _record_write(self, dataset_id: str, last_write: LastWrite, result: WriteResult) -> None:
        """
        Persist the write snapshot, retrying once.

        The sheet already holds the new data at this point, so a lost
        snapshot would make the next run clear the wrong region.
        """
        try:
            self.registry.record_write(dataset_id, last_write, result.target_updates)
            return
        except Exception as e:
            logger.warning(f"Recording write for {dataset_id} failed, retrying once: {e}")

        try:
            self.registry.record_write(dataset_id, last_write, result.target_updates)
        except Exception as e:
            raise PermanentError(
                f"Data was written to '{result.sheet_name}'!{result.range_a1} but the dataset "
                f"record still describes the previous write: {e}"
            ) from e

    def _fetch(self, ctx: RunContext) -> Table:
        """Fetch and transform; advances through fetching and transforming."""
        dataset = ctx.dataset

        if dataset.type == DatasetType.STANDARD:
            self._advance(ctx, "fetching")
            payload = self.client.report(dataset.report_name, dataset.params.get("filters") or {})
            self._advance(ctx, "transforming")
            return report_to_table(payload)

        parsed = parse_query(dataset.query).require()
        self._advance(ctx, "fetching")
        pagination = dataset.pagination
        result = self.client.query(
            parsed,
            start_position=pagination.start_position,
            max_results=pagination.max_results,
            fetch_all=pagination.fetch_all,
            max_pages=pagination.max_pages,
        )
        ctx.details.update({
            "pages": result.pages,
            "total_count": result.total_count,
            "has_more": result.has_more,
            "next_start_position": result.next_start_position,
        })
        self._advance(ctx, "transforming")
        return result.to_table()

    def run_all(self, trigger: str = "manual", scheduled_only: bool = False) -> list[Job]:
        """
        Run datasets one after another in index order.

        Args:
            trigger: Recorded on each Job
            scheduled_only: Only run datasets whose schedule is enabled
        """
        jobs = []
        for dataset in self.registry.list():
            if scheduled_only and not dataset.schedule.enabled:
                continue
            jobs.append(self.run(dataset.id, trigger=trigger))
        completed = sum(1 for j in jobs if j.status == JobStatus.COMPLETED)
        logger.info(f"Run all finished: {completed}/{len(jobs)} completed")
        return jobs

    def get_job(self, job_id: str) -> Job:
        """
        Return a Job by id.

        Raises:
            NotFound: If missing or expired
        """
        return self.jobs.get(job_id)
