"""
Scheduler - Recurring triggers, trigger mapping and the account lock.

The Scheduler keeps three things consistent:
- The host's live recurring triggers (TriggerHost)
- The bidirectional dataset <-> trigger mapping (TriggerMap)
- Each dataset's schedule in the DatasetRegistry

Invariant repaired by reconcile(): every enabled scheduled dataset has
exactly one live trigger, and every live trigger resolves back to an
enabled dataset whose schedule it matches.

Scheduled runs are serialized per connected company with AccountLock.
Manual runs do not take the lock.

Trigger handling never raises to the host; failures are logged and
reported in the returned FireOutcome.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator, Optional, Protocol

from ledgersheet.errors import LockContention, TriggerLimitExceeded
from ledgersheet.job_runner import JobRunner
from ledgersheet.registry import DatasetRegistry
from ledgersheet.schemas import Dataset, Job, JobStatus, Schedule, TriggerInfo
from ledgersheet.store import KeyValueStore
from ledgersheet.utils import ActionLog, sanitize_error_message

logger = logging.getLogger(__name__)

HANDLER_NAME = "ledgersheet.scheduler:handle_trigger_fire"
HOST_TRIGGERS_KEY = "host_triggers"
TRIGGER_FOR_PREFIX = "trigger_for_"
DATASET_FOR_PREFIX = "dataset_for_trigger_"
LOCK_PREFIX = "lock_"
DEFAULT_TRIGGER_LIMIT = 20


class TriggerHost(Protocol):
    """The host's time-based recurring trigger subsystem."""

    @property
    def limit(self) -> int: ...

    def create(self, handler: str, schedule: Schedule) -> TriggerInfo: ...

    def delete(self, trigger_id: str) -> bool: ...

    def list(self) -> list[TriggerInfo]: ...


class KeyValueTriggerHost:
    """
    Trigger host persisted in the key-value store.

    Stands in for a platform trigger service: it records triggers and
    refuses to create more than `limit` of them. Firing is done by the
    caller (e.g. `ledgersheet schedule fire <trigger_id>` from cron).
    """

    def __init__(self, store: KeyValueStore, limit: int = DEFAULT_TRIGGER_LIMIT):
        self._store = store
        self._limit = limit

    @property
    def limit(self) -> int:
        return self._limit

    def _load(self) -> list[dict[str, Any]]:
        return list(self._store.get(HOST_TRIGGERS_KEY) or [])

    def create(self, handler: str, schedule: Schedule) -> TriggerInfo:
        triggers = self._load()
        if len(triggers) >= self._limit:
            raise TriggerLimitExceeded(
                f"Trigger limit reached ({len(triggers)}/{self._limit}); disable a schedule first"
            )
        info = TriggerInfo(trigger_id=f"trg_{uuid.uuid4().hex[:12]}", handler=handler, schedule=schedule)
        triggers.append(info.to_dict())
        self._store.set(HOST_TRIGGERS_KEY, triggers)
        return info

    def delete(self, trigger_id: str) -> bool:
        triggers = self._load()
        remaining = [t for t in triggers if t.get("trigger_id") != trigger_id]
        if len(remaining) == len(triggers):
            return False
        self._store.set(HOST_TRIGGERS_KEY, remaining)
        return True

    def list(self) -> list[TriggerInfo]:
        return [TriggerInfo.from_dict(t) for t in self._load()]


class TriggerMap:
    """
    Bidirectional dataset <-> trigger mapping.

    Stored as trigger_for_<datasetId> and dataset_for_trigger_<triggerId>.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    def trigger_for(self, dataset_id: str) -> Optional[str]:
        return self._store.get(f"{TRIGGER_FOR_PREFIX}{dataset_id}")

    def dataset_for(self, trigger_id: str) -> Optional[str]:
        return self._store.get(f"{DATASET_FOR_PREFIX}{trigger_id}")

    def link(self, dataset_id: str, trigger_id: str) -> None:
        self.unlink_dataset(dataset_id)
        self._store.set(f"{TRIGGER_FOR_PREFIX}{dataset_id}", trigger_id)
        self._store.set(f"{DATASET_FOR_PREFIX}{trigger_id}", dataset_id)

    def unlink_dataset(self, dataset_id: str) -> Optional[str]:
        """Remove a dataset's mapping in both directions. Returns the trigger id."""
        trigger_id = self.trigger_for(dataset_id)
        self._store.delete(f"{TRIGGER_FOR_PREFIX}{dataset_id}")
        if trigger_id is not None and self.dataset_for(trigger_id) == dataset_id:
            self._store.delete(f"{DATASET_FOR_PREFIX}{trigger_id}")
        return trigger_id

    def unlink_trigger(self, trigger_id: str) -> Optional[str]:
        """Remove a trigger's mapping in both directions. Returns the dataset id."""
        dataset_id = self.dataset_for(trigger_id)
        self._store.delete(f"{DATASET_FOR_PREFIX}{trigger_id}")
        if dataset_id is not None and self.trigger_for(dataset_id) == trigger_id:
            self._store.delete(f"{TRIGGER_FOR_PREFIX}{dataset_id}")
        return dataset_id

    def by_dataset(self) -> dict[str, str]:
        return {
            key[len(TRIGGER_FOR_PREFIX):]: self._store.get(key)
            for key in self._store.keys(TRIGGER_FOR_PREFIX)
        }

    def by_trigger(self) -> dict[str, str]:
        return {
            key[len(DATASET_FOR_PREFIX):]: self._store.get(key)
            for key in self._store.keys(DATASET_FOR_PREFIX)
        }


class AccountLock:
    """
    Lease lock scoped to one connected company.

    acquire() polls until the lease is free or expired, giving up after
    `timeout` seconds with LockContention. A lease that is never released
    expires after `lease` seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        realm_id: str,
        timeout: float = 10.0,
        lease: float = 360.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self.key = f"{LOCK_PREFIX}{realm_id}"
        self._timeout = timeout
        self._lease = lease
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def acquire(self) -> str:
        """Take the lease. Returns the owner token needed for release()."""
        token = uuid.uuid4().hex
        deadline = self._clock() + self._timeout
        while True:
            now = self._clock()

            def take(record: Optional[dict[str, Any]]) -> dict[str, Any]:
                if record is None or record.get("expires_at", 0) <= now:
                    return {"owner": token, "expires_at": now + self._lease}
                return record

            if (self._store.update(self.key, take) or {}).get("owner") == token:
                return token
            if now >= deadline:
                raise LockContention(f"Lock {self.key} is held by another run")
            self._sleep(self._poll_interval)

    def release(self, token: str) -> bool:
        """Release the lease if this token still owns it."""
        released = False

        def drop(record: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
            nonlocal released
            if record is not None and record.get("owner") == token:
                released = True
                return None
            return record

        self._store.update(self.key, drop)
        return released

    @contextmanager
    def held(self) -> Iterator[str]:
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)


@dataclass
class FireOutcome:
    """What happened when a trigger fired."""
    status: str  # ran | failed | skipped | orphan_removed
    trigger_id: str
    dataset_id: Optional[str] = None
    job: Optional[Job] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "trigger_id": self.trigger_id,
            "dataset_id": self.dataset_id,
            "job": self.job.to_dict() if self.job else None,
            "message": self.message,
        }


@dataclass
class ReconcileReport:
    """Triggers created and deleted by one reconcile pass."""
    created: list[tuple[str, str]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": [{"dataset_id": d, "trigger_id": t} for d, t in self.created],
            "deleted": self.deleted,
            "errors": self.errors,
        }


def _same_shape(a: Schedule, b: Schedule) -> bool:
    return (
        a.freq == b.freq
        and (a.time_of_day or "") == (b.time_of_day or "")
        and (a.day_of_week or "") == (b.day_of_week or "")
        and a.day_of_month == b.day_of_month
    )


class Scheduler:
    """
    Manages recurring runs.

    Args:
        registry: DatasetRegistry
        runner: JobRunner used for scheduled runs
        host: TriggerHost
        triggers: TriggerMap
        store: Key-value store holding the account lock
        realm_id: Returns the connected company id (lock scope)
        lock_timeout: Seconds to wait for the account lock
        lock_lease: Seconds before an unreleased lock expires
    """

    def __init__(
        self,
        registry: DatasetRegistry,
        runner: JobRunner,
        host: TriggerHost,
        triggers: TriggerMap,
        store: KeyValueStore,
        realm_id: Callable[[], Optional[str]],
        lock_timeout: float = 10.0,
        lock_lease: float = 360.0,
        action_log: Optional[ActionLog] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.runner = runner
        self.host = host
        self.triggers = triggers
        self._store = store
        self._realm_id = realm_id
        self._lock_timeout = lock_timeout
        self._lock_lease = lock_lease
        self._action_log = action_log
        self._clock = clock
        self._sleep = sleep

    def _log(self, action: str, status: str = "info", **fields: Any) -> None:
        if self._action_log is not None:
            self._action_log.record(action, status=status, **fields)

    def account_lock(self) -> AccountLock:
        return AccountLock(
            self._store,
            self._realm_id() or "default",
            timeout=self._lock_timeout,
            lease=self._lock_lease,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _remove_trigger(self, dataset_id: str) -> Optional[str]:
        trigger_id = self.triggers.unlink_dataset(dataset_id)
        if trigger_id is not None:
            self.host.delete(trigger_id)
        return trigger_id

    def enable(self, dataset_id: str, schedule: Schedule) -> Dataset:
        """
        Enable (or re-enable) a dataset's schedule.

        Any existing trigger is removed first, so calling this twice leaves
        exactly one live trigger.

        Raises:
            NotFound: Unknown dataset
            ValidationError: Malformed schedule
            TriggerLimitExceeded: Host refused the new trigger
        """
        dataset = self.registry.get(dataset_id)
        schedule = replace(schedule, enabled=True)
        schedule.validate()

        self._remove_trigger(dataset.id)
        try:
            info = self.host.create(HANDLER_NAME, schedule)
        except TriggerLimitExceeded:
            self.registry.update(dataset.id, schedule=replace(schedule, enabled=False))
            self._log("schedule.enable", status="error", dataset_id=dataset.id, error="trigger limit")
            raise
        self.triggers.link(dataset.id, info.trigger_id)
        dataset = self.registry.update(dataset.id, schedule=schedule)

        logger.info(f"Enabled schedule for {dataset.id}: {schedule.describe()} ({info.trigger_id})")
        self._log(
            "schedule.enable",
            dataset_id=dataset.id,
            trigger_id=info.trigger_id,
            schedule=schedule.describe(),
        )
        return dataset

    def disable(self, dataset_id: str) -> Dataset:
        """Remove a dataset's trigger and mark its schedule disabled."""
        dataset = self.registry.get(dataset_id)
        trigger_id = self._remove_trigger(dataset.id)
        dataset = self.registry.update(dataset.id, schedule=replace(dataset.schedule, enabled=False))
        logger.info(f"Disabled schedule for {dataset.id}")
        self._log("schedule.disable", dataset_id=dataset.id, trigger_id=trigger_id)
        return dataset

    def remove_dataset(self, dataset_id: str) -> Dataset:
        """Delete a dataset together with its trigger."""
        self.registry.get(dataset_id)
        self._remove_trigger(dataset_id)
        return self.registry.delete(dataset_id)

    def handle_trigger_fire(self, trigger_id: str) -> FireOutcome:
        """
        Entry point invoked by the host when a trigger fires.

        Never raises: errors are logged and returned as a failed outcome.
        """
        dataset_id = None
        try:
            dataset_id = self.triggers.dataset_for(trigger_id)
            dataset = self.registry.find(dataset_id) if dataset_id else None

            if (
                dataset is None
                or not dataset.schedule.enabled
                or self.triggers.trigger_for(dataset.id) != trigger_id
            ):
                self.host.delete(trigger_id)
                self.triggers.unlink_trigger(trigger_id)
                logger.info(f"Removed orphaned trigger {trigger_id} (dataset {dataset_id})")
                self._log("trigger.orphan_removed", trigger_id=trigger_id, dataset_id=dataset_id)
                return FireOutcome("orphan_removed", trigger_id, dataset_id, message="Trigger no longer maps to an enabled schedule")

            lock = self.account_lock()
            try:
                token = lock.acquire()
            except LockContention as e:
                logger.info(f"Skipping scheduled run of {dataset.id}: {e}")
                self._log("schedule.skip", dataset_id=dataset.id, trigger_id=trigger_id, reason=str(e))
                return FireOutcome("skipped", trigger_id, dataset.id, message=str(e))

            try:
                job = self.runner.run(dataset.id, trigger="schedule")
            finally:
                lock.release(token)

            status = "ran" if job.status == JobStatus.COMPLETED else "failed"
            return FireOutcome(status, trigger_id, dataset.id, job=job, message=job.error or job.message)

        except Exception as e:
            message = sanitize_error_message(e)
            logger.error(f"Trigger {trigger_id} failed: {message}")
            self._log("schedule.error", status="error", trigger_id=trigger_id, dataset_id=dataset_id, error=message)
            return FireOutcome("failed", trigger_id, dataset_id, message=message)

    def reconcile(self) -> ReconcileReport:
        """
        Repair the trigger set.

        Deletes live triggers that are unmapped, mapped to a missing or
        disabled dataset, or no longer match the dataset's schedule; drops
        mapping entries with no live trigger; creates triggers for enabled
        datasets that lack one. Does nothing when everything is consistent.
        """
        report = ReconcileReport()
        datasets = {d.id: d for d in self.registry.list()}
        enabled = [d for d in datasets.values() if d.schedule.enabled]
        enabled_ids = {d.id for d in enabled}
        live = {t.trigger_id: t for t in self.host.list()}

        for trigger_id, info in live.items():
            dataset_id = self.triggers.dataset_for(trigger_id)
            valid = (
                dataset_id in enabled_ids
                and self.triggers.trigger_for(dataset_id) == trigger_id
                and _same_shape(info.schedule, datasets[dataset_id].schedule)
            )
            if not valid:
                self.host.delete(trigger_id)
                self.triggers.unlink_trigger(trigger_id)
                report.deleted.append(trigger_id)

        remaining = set(live) - set(report.deleted)
        for dataset_id, trigger_id in self.triggers.by_dataset().items():
            if trigger_id not in remaining or dataset_id not in enabled_ids:
                self.triggers.unlink_dataset(dataset_id)
        for trigger_id, dataset_id in self.triggers.by_trigger().items():
            if trigger_id not in remaining:
                self.triggers.unlink_trigger(trigger_id)

        for dataset in enabled:
            if self.triggers.trigger_for(dataset.id) is not None:
                continue
            try:
                info = self.host.create(HANDLER_NAME, dataset.schedule)
            except TriggerLimitExceeded as e:
                report.errors.append(f"{dataset.id}: {e}")
                continue
            self.triggers.link(dataset.id, info.trigger_id)
            report.created.append((dataset.id, info.trigger_id))

        if report.changed or report.errors:
            logger.info(
                f"Reconcile: created {len(report.created)}, deleted {len(report.deleted)}, "
                f"errors {len(report.errors)}"
            )
            self._log("schedule.reconcile", **report.to_dict())
        return report

    def quota(self) -> dict[str, Any]:
        """Trigger headroom reported by the host."""
        used = len(self.host.list())
        limit = self.host.limit
        return {
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used),
            "limit_exceeded": used >= limit,
        }

    def status(self) -> list[dict[str, Any]]:
        """Per-dataset schedule state."""
        rows = []
        for dataset in self.registry.list():
            rows.append({
                "dataset_id": dataset.id,
                "name": dataset.name,
                "enabled": dataset.schedule.enabled,
                "schedule": dataset.schedule.describe() if dataset.schedule.enabled else "",
                "trigger_id": self.triggers.trigger_for(dataset.id),
            })
        return rows
