"""Shared fixtures and fakes for ledgersheet tests."""

import json
from typing import Any, Callable, Optional

import pytest

from ledgersheet.config import LedgersheetConfig, RetryConfig
from ledgersheet.document import InMemoryDocument
from ledgersheet.job_runner import JobRunner, JobStore
from ledgersheet.output_writer import OutputWriter
from ledgersheet.qbo_client import QboClient
from ledgersheet.registry import DatasetRegistry
from ledgersheet.scheduler import KeyValueTriggerHost, Scheduler, TriggerMap
from ledgersheet.store import InMemoryKeyValueStore
from ledgersheet.utils import ActionLog


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        text: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = headers or {}

    def json(self) -> Any:
        return json.loads(self.text)


class FakeHttp:
    """
    Records requests and answers them.

    Responses come from a queue (FakeResponse or Exception instances) or,
    once the queue is empty, from an optional handler(method, url, params, data).
    """

    def __init__(
        self,
        responses: Optional[list[Any]] = None,
        handler: Optional[Callable[..., FakeResponse]] = None,
    ):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: list[dict[str, Any]] = []

    def request(self, method, url, params=None, data=None, headers=None, timeout=None):
        self.calls.append({
            "method": method,
            "url": url,
            "params": dict(params or {}),
            "data": data,
            "headers": dict(headers or {}),
        })
        if self.responses:
            response = self.responses.pop(0)
        elif self.handler is not None:
            response = self.handler(method, url, params or {}, data)
        else:
            raise AssertionError(f"Unexpected request: {method} {url}")
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, **kwargs):
        return self.request("POST", url, data=kwargs.get("data"), headers=kwargs.get("headers"))


class FakeTokens:
    """Token provider with counters instead of a real OAuth session."""

    def __init__(self, realm_id: Optional[str] = "9130", environment: str = "sandbox"):
        self.realm_id = realm_id
        self.environment = environment
        self.refreshes = 0
        self.resets = 0

    def access_token(self) -> str:
        return f"token-{self.refreshes}"

    def refresh(self) -> None:
        self.refreshes += 1

    def reset(self) -> None:
        self.resets += 1


class FakeQbo:
    """
    Handler emulating the query and report endpoints.

    entities maps an entity name to its full record list; pages are cut
    from it using STARTPOSITION / MAXRESULTS in the query text.
    """

    def __init__(self, entities: Optional[dict[str, list[dict]]] = None, report: Optional[dict] = None):
        self.entities = entities or {}
        self.report = report or {}

    def __call__(self, method, url, params, data):
        if "/reports/" in url:
            return FakeResponse(200, self.report)
        text = data if method == "POST" else params["query"]
        words = text.split()
        upper = [w.upper() for w in words]
        entity = words[upper.index("FROM") + 1]
        start = int(words[upper.index("STARTPOSITION") + 1]) if "STARTPOSITION" in upper else 1
        size = int(words[upper.index("MAXRESULTS") + 1]) if "MAXRESULTS" in upper else 1000
        records = self.entities.get(entity, [])
        if text.upper().startswith("SELECT COUNT(*)"):
            return FakeResponse(200, {"QueryResponse": {"totalCount": len(records)}})
        page = records[start - 1:start - 1 + size]
        body: dict[str, Any] = {"startPosition": start, "maxResults": len(page)}
        if page:
            body[entity] = page
        return FakeResponse(200, {"QueryResponse": body})


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(tokens, sleeps):
    """Factory building a QboClient over a FakeHttp."""
    def _make(http: FakeHttp, **kwargs) -> QboClient:
        kwargs.setdefault("retry", RetryConfig())
        return QboClient(tokens, http=http, sleep=sleeps.append, **kwargs)
    return _make


@pytest.fixture
def document():
    return InMemoryDocument()


@pytest.fixture
def registry(store):
    return DatasetRegistry(store)


@pytest.fixture
def action_log():
    return ActionLog()


@pytest.fixture
def qbo():
    return FakeQbo()


@pytest.fixture
def runner(store, registry, document, make_client, qbo, action_log):
    client = make_client(FakeHttp(handler=qbo))
    return JobRunner(
        registry,
        client,
        OutputWriter(document),
        JobStore(store),
        action_log=action_log,
    )


@pytest.fixture
def scheduler(store, registry, runner, tokens, action_log):
    return Scheduler(
        registry,
        runner,
        KeyValueTriggerHost(store, limit=5),
        TriggerMap(store),
        store,
        realm_id=lambda: tokens.realm_id,
        lock_timeout=0,
        action_log=action_log,
        sleep=lambda _: None,
    )


@pytest.fixture
def test_config(tmp_path):
    return LedgersheetConfig(store_path=str(tmp_path / "store.json"))
