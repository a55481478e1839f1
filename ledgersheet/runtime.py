"""
Runtime - wires the engine together from a LedgersheetConfig.

One Runtime is built per invocation (CLI command, trigger fire). It owns
the ActionLog, so log batching state is never shared between invocations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from ledgersheet.config import LedgersheetConfig
from ledgersheet.document import Document
from ledgersheet.errors import ConfigError
from ledgersheet.job_runner import JobRunner, JobStore
from ledgersheet.output_writer import OutputWriter
from ledgersheet.qbo_client import QboClient
from ledgersheet.registry import DatasetRegistry
from ledgersheet.scheduler import KeyValueTriggerHost, Scheduler, TriggerMap
from ledgersheet.session import OAuthSession, SessionStore
from ledgersheet.store import FileKeyValueStore, KeyValueStore
from ledgersheet.utils import ActionLog

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """All collaborators for one invocation."""
    config: LedgersheetConfig
    store: KeyValueStore
    session: OAuthSession
    client: QboClient
    registry: DatasetRegistry
    writer: OutputWriter
    runner: JobRunner
    scheduler: Scheduler
    action_log: ActionLog

    def close(self) -> None:
        """Flush buffered action entries."""
        self.action_log.flush()


def build_document(config: LedgersheetConfig) -> Document:
    """Open the configured Google spreadsheet."""
    if not config.spreadsheet_id:
        raise ConfigError("spreadsheet_id is required to write output")
    if not config.service_account_path:
        raise ConfigError("service_account_path is required to write output")

    from ledgersheet.sheets_document import SheetsDocument, build_sheets_service

    service = build_sheets_service(config.service_account_path)
    return SheetsDocument(service, config.spreadsheet_id)


class _LazyDocument:
    """Defers opening the spreadsheet until the first document call."""

    def __init__(self, config: LedgersheetConfig):
        self._config = config
        self._document: Optional[Document] = None

    def __getattr__(self, name: str):
        if self._document is None:
            self._document = build_document(self._config)
        return getattr(self._document, name)


def build_runtime(
    config: LedgersheetConfig,
    store: Optional[KeyValueStore] = None,
    document: Optional[Document] = None,
    http: Optional[requests.Session] = None,
) -> Runtime:
    """
    Build a Runtime.

    Args:
        config: Loaded configuration
        store: Key-value store (defaults to a FileKeyValueStore at store_path)
        document: Document surface (defaults to the configured Google spreadsheet,
            opened on first use)
        http: requests.Session shared by the API client and token refresh
    """
    store = store or FileKeyValueStore(config.store_path)
    http = http or requests.Session()
    action_log = ActionLog()

    session = OAuthSession(SessionStore(store, default_environment=config.environment), http=http)
    client = QboClient(
        session,
        http=http,
        minor_version=config.minor_version,
        retry=config.retry,
        query_length_threshold=config.query_length_threshold,
        page_size=config.page_size,
        action_log=action_log,
    )
    registry = DatasetRegistry(store)
    writer = OutputWriter(
        document or _LazyDocument(config),
        soft_limit=config.cell_soft_limit,
        hard_limit=config.cell_hard_limit,
    )
    runner = JobRunner(
        registry,
        client,
        writer,
        JobStore(store, ttl_seconds=config.job_ttl_seconds),
        action_log=action_log,
    )
    scheduler = Scheduler(
        registry,
        runner,
        KeyValueTriggerHost(store, limit=config.trigger_limit),
        TriggerMap(store),
        store,
        realm_id=lambda: session.realm_id,
        lock_timeout=config.lock_timeout_seconds,
        lock_lease=config.lock_lease_seconds,
        action_log=action_log,
    )
    logger.debug(f"Runtime built (store={config.store_path}, environment={config.environment})")
    return Runtime(
        config=config,
        store=store,
        session=session,
        client=client,
        registry=registry,
        writer=writer,
        runner=runner,
        scheduler=scheduler,
        action_log=action_log,
    )
