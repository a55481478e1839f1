"""
QboClient - Resilient client for the accounting service REST API.

Every request:
- targets {base_host}/v3/company/{realm}{path}
- carries minorversion and Accept: application/json
- attaches a bearer token from the session

Failure handling (by ErrorKind, see ledgersheet.errors):
- AUTH_EXPIRED: refresh the token once and retry; a second 401 resets
  the session and raises AuthExpired
- RATE_LIMITED / SERVER_TRANSIENT: exponential backoff with jitter,
  honoring Retry-After, up to retry.max_attempts; then TransportExhausted
- anything else: ServiceFault with the service's own message and detail

Read-queries are paginated on the caller's behalf. Queries whose encoded
form exceeds the length threshold are sent as a POST body.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol
from urllib.parse import quote, urlencode

import requests

from ledgersheet.config import RetryConfig
from ledgersheet.errors import (
    AuthExpired,
    ErrorKind,
    LedgersheetError,
    RateLimited,
    ServerTransient,
    ServiceFault,
    TransportExhausted,
    classify_status,
)
from ledgersheet.query_parser import ParsedQuery
from ledgersheet.transform import Table, count_to_table, entities_to_table
from ledgersheet.utils import ActionLog

logger = logging.getLogger(__name__)

BASE_HOSTS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com",
    "production": "https://quickbooks.api.intuit.com",
}

REPORT_PARAM_NAMES = {
    "start_date": "start_date",
    "end_date": "end_date",
    "date_macro": "date_macro",
    "accounting_method": "accounting_method",
    "summarize_column_by": "summarize_column_by",
    "startDate": "start_date",
    "endDate": "end_date",
    "dateMacro": "date_macro",
    "accountingMethod": "accounting_method",
    "summarizeColumnBy": "summarize_column_by",
}


class TokenProvider(Protocol):
    """What the client needs from the session store."""

    @property
    def realm_id(self) -> Optional[str]: ...

    @property
    def environment(self) -> str: ...

    def access_token(self) -> str: ...

    def refresh(self) -> None: ...

    def reset(self) -> None: ...


@dataclass
class QueryResult:
    """
    Aggregated result of a (possibly paginated) read-query.

    Attributes:
        entity: Entity named in FROM
        rows: All entity records fetched, in page order
        total_count: Server-reported total, if any
        pages: Number of page requests issued
        has_more: True when paging stopped before the data was exhausted
        next_start_position: Where the next page would start if has_more
        count_only: True for SELECT COUNT(*) queries
    """
    entity: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    total_count: Optional[int] = None
    pages: int = 0
    has_more: bool = False
    next_start_position: Optional[int] = None
    count_only: bool = False

    def to_table(self) -> Table:
        if self.count_only:
            return count_to_table(self.entity, self.total_count or 0)
        return entities_to_table(self.rows)


def _fault_from_response(status: int, response: requests.Response) -> ServiceFault:
    """Extract the service's fault message/detail/code from an error body."""
    generic = f"request failed ({status})"
    try:
        payload = response.json()
    except ValueError:
        return ServiceFault(status, generic)
    if not isinstance(payload, dict):
        return ServiceFault(status, generic)

    fault = payload.get("Fault") or payload.get("fault")
    if isinstance(fault, dict):
        errors = fault.get("Error") or fault.get("error") or []
        if errors:
            err = errors[0]
            return ServiceFault(
                status,
                err.get("Message") or err.get("message") or generic,
                code=err.get("code"),
                detail=err.get("Detail") or err.get("detail"),
            )
    if payload.get("error"):
        return ServiceFault(
            status,
            str(payload["error"]),
            detail=payload.get("error_description"),
        )
    return ServiceFault(status, generic)


def _retry_after_seconds(response: requests.Response) -> Optional[float]:
    value = (response.headers or {}).get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


class QboClient:
    """
    Authenticated, retrying client for one connected company.

    Args:
        session: Token provider (see TokenProvider)
        http: requests.Session used for API calls
        minor_version: minorversion query parameter sent on every request
        retry: Backoff settings
        query_length_threshold: Encoded query length above which POST is used
        page_size: Default page size for read-queries
        sleep: Blocking sleep used between retry attempts
        rng: Random source for jitter
        action_log: Optional ActionLog receiving one entry per request
    """

    def __init__(
        self,
        session: TokenProvider,
        http: Optional[requests.Session] = None,
        minor_version: str = "75",
        retry: Optional[RetryConfig] = None,
        query_length_threshold: int = 2000,
        page_size: int = 1000,
        timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        action_log: Optional[ActionLog] = None,
    ):
        self.session = session
        self._http = http or requests.Session()
        self.minor_version = (minor_version or "75").strip()
        self.retry = retry or RetryConfig()
        self.query_length_threshold = query_length_threshold
        self.page_size = page_size
        self.timeout = timeout
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._action_log = action_log

    @property
    def base_url(self) -> str:
        realm_id = self.session.realm_id
        if not realm_id:
            raise AuthExpired("Missing realm id. Authorize first.")
        host = BASE_HOSTS.get(self.session.environment, BASE_HOSTS["sandbox"])
        return f"{host}/v3/company/{quote(str(realm_id), safe='')}"

    def url(self, path: str) -> str:
        return self.base_url + (path if path.startswith("/") else "/" + path)

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Seconds to wait after a failed attempt (1-based).

        A server Retry-After hint replaces the computed delay. Both are
        capped at retry.max_delay_ms.
        """
        cap = self.retry.max_delay_ms / 1000.0
        if retry_after is not None:
            return min(cap, retry_after)
        base = min(self.retry.max_delay_ms, self.retry.base_delay_ms * (2 ** attempt)) / 1000.0
        jitter = self._rng.uniform(0, self.retry.jitter_ms) / 1000.0
        return base + jitter

    def fetch(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Issue one logical request, resolving retryable failures locally.

        Returns:
            Parsed JSON response body ({} for an empty body)

        Raises:
            AuthExpired: 401 after one refresh, or no realm connected
            TransportExhausted: Retry ceiling reached
            ServiceFault: Any other non-success response
        """
        url = self.url(path)
        query = {k: v for k, v in (params or {}).items() if v is not None and v != ""}
        query["minorversion"] = self.minor_version

        refreshed = False
        attempt = 0
        started = time.monotonic()

        while True:
            attempt += 1
            headers = {
                "Authorization": f"Bearer {self.session.access_token()}",
                "Accept": "application/json",
            }
            if content_type:
                headers["Content-Type"] = content_type

            try:
                response = self._http.request(
                    method, url, params=query, data=body, headers=headers, timeout=self.timeout
                )
            except requests.RequestException as e:
                error: LedgersheetError = ServerTransient(f"Network error: {e}")
            else:
                status = response.status_code
                kind = classify_status(status)

                if kind is None:
                    self._record(method, path, status, attempt, started)
                    return response.json() if response.content else {}

                if kind == ErrorKind.AUTH_EXPIRED:
                    if refreshed:
                        self._record(method, path, status, attempt, started, "error")
                        self.session.reset()
                        fault = _fault_from_response(status, response)
                        raise AuthExpired(f"{fault} | Authorization expired. Re-authorize.")
                    refreshed = True
                    logger.info(f"401 from {path}, refreshing token and retrying")
                    try:
                        self.session.refresh()
                    except (LedgersheetError, requests.RequestException) as e:
                        logger.error(f"Token refresh failed: {e}")
                    error = AuthExpired(f"Unauthorized ({status})")
                    # The retry after a refresh is immediate but still counts.
                    if attempt < self.retry.max_attempts:
                        continue
                elif kind == ErrorKind.RATE_LIMITED:
                    error = RateLimited(
                        f"Rate limited ({status})", retry_after=_retry_after_seconds(response)
                    )
                elif kind == ErrorKind.SERVER_TRANSIENT:
                    error = ServerTransient(
                        f"Server error ({status})",
                        status=status,
                        retry_after=_retry_after_seconds(response),
                    )
                else:
                    self._record(method, path, status, attempt, started, "error")
                    raise _fault_from_response(status, response)

            if attempt >= self.retry.max_attempts:
                logger.error(f"All {attempt} attempts failed for {method} {path}: {error}")
                self._record(method, path, getattr(error, "status", None), attempt, started, "error")
                raise TransportExhausted(attempt, error)

            delay = self.backoff_delay(attempt, getattr(error, "retry_after", None))
            logger.warning(
                f"Attempt {attempt} failed: {error}. Retrying in {delay:.2f}s..."
            )
            self._sleep(delay)

    def _record(
        self,
        method: str,
        path: str,
        status: Optional[int],
        attempts: int,
        started: float,
        outcome: str = "ok",
    ) -> None:
        if self._action_log is None:
            return
        self._action_log.record(
            "api.request",
            status=outcome,
            method=method,
            path=path,
            http_status=status,
            attempts=attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def report(self, report_name: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Fetch a standard report.

        Friendly filter names (start_date, accounting_method, ...) are mapped
        onto the service's parameter names; unknown keys pass through.
        """
        if not report_name:
            raise ServiceFault(400, "Missing report name.")
        remote: dict[str, Any] = {}
        for key, value in (params or {}).items():
            remote[REPORT_PARAM_NAMES.get(key, key)] = value
        return self.fetch("GET", f"/reports/{quote(report_name, safe='')}", params=remote)

    def run_query(self, text: str) -> dict[str, Any]:
        """Send one query, choosing inline GET or POST body by encoded length."""
        if len(urlencode({"query": text})) > self.query_length_threshold:
            return self.fetch("POST", "/query", body=text, content_type="application/text")
        return self.fetch("GET", "/query", params={"query": text})

    def query(
        self,
        parsed: ParsedQuery,
        start_position: Optional[int] = None,
        max_results: Optional[int] = None,
        fetch_all: bool = True,
        max_pages: Optional[int] = None,
    ) -> QueryResult:
        """
        Run a parsed read-query, following pages.

        Paging stops when a page returns fewer rows than requested, when the
        server-reported total is reached, or after max_pages pages. With
        fetch_all=False exactly one page is fetched and has_more /
        next_start_position describe the continuation.
        """
        parsed.require()

        if parsed.is_count:
            payload = self.run_query(parsed.to_query())
            response = payload.get("QueryResponse") or {}
            return QueryResult(
                entity=parsed.entity,
                total_count=int(response.get("totalCount", 0)),
                pages=1,
                count_only=True,
            )

        position = start_position or parsed.start_position or 1
        page_size = max_results or parsed.max_results or self.page_size
        result = QueryResult(entity=parsed.entity)

        while True:
            payload = self.run_query(parsed.to_query(position, page_size))
            result.pages += 1
            response = payload.get("QueryResponse") or {}
            page_rows = _entity_rows(response, parsed.entity)
            if "totalCount" in response:
                result.total_count = int(response["totalCount"])

            result.rows.extend(page_rows)
            position += len(page_rows)
            logger.debug(
                f"{parsed.entity} page {result.pages}: {len(page_rows)} rows "
                f"(total so far {len(result.rows)})"
            )

            exhausted = len(page_rows) < page_size or (
                result.total_count is not None and len(result.rows) >= result.total_count
            )
            if exhausted:
                break
            if not fetch_all or (max_pages is not None and result.pages >= max_pages):
                result.has_more = True
                result.next_start_position = position
                break

        if result.total_count is not None and len(result.rows) > result.total_count:
            result.rows = result.rows[:result.total_count]
        return result


def _entity_rows(response: dict[str, Any], entity: str) -> list[dict[str, Any]]:
    """Pick the entity list out of a QueryResponse, matching the key case-insensitively."""
    wanted = entity.lower()
    for key, value in response.items():
        if key.lower() == wanted and isinstance(value, list):
            return value
    return []
