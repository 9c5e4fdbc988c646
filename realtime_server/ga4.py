"""Thin async client for the GA4 Data API (v1beta REST surface).

One call per ``Ga4Client.run``: no retries, no caching. Failures are raised as
``UpstreamError`` subclasses so the caller can tell a rate limit apart from a
genuine fault.
"""
import asyncio
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import httpx
import requests
from google.auth import exceptions as google_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

API_BASE = "https://analyticsdata.googleapis.com/v1beta"
TOKEN_URI = "https://oauth2.googleapis.com/token"
SCOPES = ("https://www.googleapis.com/auth/analytics.readonly",)
PROPERTY_PREFIX = "properties/"
MAX_REALTIME_MINUTES = 59

_PROPERTY_RE = re.compile(r"[0-9]+")
_NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9_:]*")
_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}|today|yesterday|[0-9]+daysAgo")

# Errors

class UpstreamError(Exception):
    """Any failed upstream call. Subclasses narrow down the cause."""
    kind = "upstream"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

class NetworkError(UpstreamError):
    kind = "network"

class AuthError(UpstreamError):
    kind = "auth"

class RateLimitedError(UpstreamError):
    """Quota or rate limit exhausted; expected to clear on its own."""
    kind = "rate_limited"

# Query parameters

def normalize_property_id(value: str | int) -> str:
    """Return the canonical ``properties/<id>`` form. Idempotent."""
    raw = str(value).strip()
    if raw.startswith(PROPERTY_PREFIX):
        raw = raw[len(PROPERTY_PREFIX):]
    if not _PROPERTY_RE.fullmatch(raw):
        raise ValueError(f"invalid GA4 property id {value!r}")
    return PROPERTY_PREFIX + raw

@dataclass(frozen=True)
class MinuteRange:
    start_minutes_ago: int
    end_minutes_ago: int = 0
    name: str | None = None

    def __post_init__(self):
        if not 0 <= self.end_minutes_ago <= self.start_minutes_ago <= MAX_REALTIME_MINUTES:
            raise ValueError(
                f"minute range must satisfy 0 <= end ({self.end_minutes_ago}) <= "
                f"start ({self.start_minutes_ago}) <= {MAX_REALTIME_MINUTES}"
            )

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "startMinutesAgo": self.start_minutes_ago,
            "endMinutesAgo": self.end_minutes_ago,
        }
        if self.name:
            body["name"] = self.name
        return body

@dataclass(frozen=True)
class DateRange:
    start_date: str
    end_date: str = "today"

    def __post_init__(self):
        for d in (self.start_date, self.end_date):
            if not _DATE_RE.fullmatch(d):
                raise ValueError(f"invalid date {d!r}; use YYYY-MM-DD, today, yesterday or NdaysAgo")

    def to_api(self) -> dict[str, Any]:
        return {"startDate": self.start_date, "endDate": self.end_date}

@dataclass(frozen=True)
class QueryParams:
    property_id: str
    metrics: tuple[str, ...]
    window: MinuteRange | DateRange
    dimensions: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "property_id", normalize_property_id(self.property_id))
        object.__setattr__(self, "metrics", tuple(self.metrics))
        object.__setattr__(self, "dimensions", tuple(self.dimensions))
        if not self.metrics:
            raise ValueError("at least one metric is required")
        for name in self.metrics + self.dimensions:
            if not _NAME_RE.fullmatch(name):
                raise ValueError(f"invalid metric/dimension name {name!r}")

    @property
    def realtime(self) -> bool:
        return isinstance(self.window, MinuteRange)

    @property
    def method(self) -> str:
        return "runRealtimeReport" if self.realtime else "runReport"

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "metrics": [{"name": m} for m in self.metrics],
            "returnPropertyQuota": True,
            # row sums double-count non-additive metrics such as activeUsers
            "metricAggregations": ["TOTAL"],
        }
        if self.dimensions:
            body["dimensions"] = [{"name": d} for d in self.dimensions]
        if self.realtime:
            body["minuteRanges"] = [self.window.to_api()]
        else:
            body["dateRanges"] = [self.window.to_api()]
        return body

# Report

Number = int | float

@dataclass(frozen=True)
class ReportRow:
    dimensions: Mapping[str, str]
    metrics: Mapping[str, Number]

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {"dimensions": dict(self.dimensions), "metrics": dict(self.metrics)}

@dataclass(frozen=True)
class Report:
    dimension_headers: tuple[str, ...]
    metric_headers: tuple[str, ...]
    rows: tuple[ReportRow, ...]
    row_count: int
    # metric -> value from the provider's TOTAL aggregation row
    totals: Mapping[str, Number] = field(default_factory=lambda: MappingProxyType({}))
    # raw provider-side aggregates (totals, maximums, minimums, propertyQuota)
    aggregates: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def metric_totals(self) -> dict[str, Number]:
        """Provider totals per metric; zeros for an empty report."""
        if self.totals:
            return dict(self.totals)
        if not self.rows:
            return {name: 0 for name in self.metric_headers}
        return {}

    def first_value(self, metric: str) -> Number | None:
        if not self.rows:
            return None
        return self.rows[0].metrics.get(metric)

def _number(raw: Any) -> Number:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return float(raw)

def parse_report(payload: Mapping[str, Any]) -> Report:
    """Turn a runReport/runRealtimeReport JSON body into a ``Report``."""
    try:
        dims = tuple(h["name"] for h in payload.get("dimensionHeaders", []))
        mets = tuple(h["name"] for h in payload.get("metricHeaders", []))
        rows: list[ReportRow] = []
        for row in payload.get("rows", []):
            dvals = [v.get("value", "") for v in row.get("dimensionValues", [])]
            mvals = [_number(v.get("value", "0")) for v in row.get("metricValues", [])]
            rows.append(ReportRow(
                dimensions=MappingProxyType(dict(zip(dims, dvals))),
                metrics=MappingProxyType(dict(zip(mets, mvals))),
            ))
        row_count = int(payload.get("rowCount", len(rows)))
        totals: dict[str, Number] = {}
        for total_row in payload.get("totals", [])[:1]:
            tvals = [_number(v.get("value", "0")) for v in total_row.get("metricValues", [])]
            totals = dict(zip(mets, tvals))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise UpstreamError(f"malformed report: {e!r}") from e

    aggregates = {
        key: payload[key]
        for key in ("totals", "maximums", "minimums", "propertyQuota")
        if key in payload
    }
    return Report(
        dimension_headers=dims,
        metric_headers=mets,
        rows=tuple(rows),
        row_count=row_count,
        totals=MappingProxyType(totals),
        aggregates=MappingProxyType(aggregates),
    )

# Auth + transport

class ServiceAccountTokens:
    """OAuth2 access tokens for a service account, refreshed on expiry.

    The refresh itself is a blocking ``google-auth`` call run in a worker
    thread. A refresh that outlives ``timeout_s`` keeps running; later callers
    wait on that same refresh instead of starting a second one against the
    same credentials.
    """

    def __init__(self, credentials: Any, timeout_s: float = 10.0):
        self._credentials = credentials
        self._timeout_s = timeout_s
        self._lock = asyncio.Lock()
        self._session = requests.Session()
        self._request = GoogleAuthRequest(self._session)
        self._refresh: asyncio.Future | None = None

    @classmethod
    def from_key(cls, client_email: str, private_key: str, timeout_s: float = 10.0) -> "ServiceAccountTokens":
        info = {
            "type": "service_account",
            "client_email": client_email,
            "private_key": private_key,
            "token_uri": TOKEN_URI,
        }
        # raises ValueError on a malformed key
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=list(SCOPES)
        )
        return cls(credentials, timeout_s=timeout_s)

    async def token(self) -> str:
        async with self._lock:
            if not self._credentials.valid:
                if self._refresh is None or self._refresh.done():
                    self._refresh = asyncio.ensure_future(
                        asyncio.to_thread(self._credentials.refresh, self._request)
                    )
                    # a timed-out refresh may fail later with nobody awaiting it
                    self._refresh.add_done_callback(lambda f: f.cancelled() or f.exception())
                try:
                    await asyncio.wait_for(asyncio.shield(self._refresh), self._timeout_s)
                except asyncio.TimeoutError as e:
                    raise NetworkError(f"token refresh timed out after {self._timeout_s}s") from e
                except google_exceptions.RefreshError as e:
                    raise AuthError(f"token refresh rejected: {e}") from e
                except google_exceptions.TransportError as e:
                    raise NetworkError(f"token endpoint unreachable: {e}") from e
            return self._credentials.token

    def close(self):
        self._session.close()


def _error_from_response(r: httpx.Response) -> UpstreamError:
    status_name = ""
    message = r.text[:500]
    try:
        err = r.json().get("error", {})
        status_name = err.get("status", "")
        message = err.get("message", message)
    except (ValueError, AttributeError):
        pass  # non-JSON error body; keep the raw text

    if r.status_code == 429 or status_name == "RESOURCE_EXHAUSTED":
        return RateLimitedError(message, r.status_code)
    if r.status_code in (401, 403):
        return AuthError(f"HTTP {r.status_code}: {message}", r.status_code)
    return UpstreamError(f"HTTP {r.status_code}: {message}", r.status_code)


class Ga4Client:
    def __init__(
        self,
        tokens: ServiceAccountTokens,
        timeout_s: float = 10.0,
        base_url: str = API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._tokens = tokens
        self._timeout_s = timeout_s
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def run(self, query: QueryParams) -> Report:
        prop = normalize_property_id(query.property_id)
        token = await self._tokens.token()
        url = f"{self._base_url}/{prop}:{query.method}"
        # httpx timeouts cover each connect/read/write step; this caps the whole call
        try:
            r = await asyncio.wait_for(
                self._client.post(
                    url, json=query.to_body(), headers={"Authorization": f"Bearer {token}"}
                ),
                self._timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise NetworkError(f"{query.method} timed out after {self._timeout_s}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{query.method} failed: {e!r}") from e

        if r.status_code != 200:
            raise _error_from_response(r)
        try:
            payload = r.json()
        except ValueError as e:
            raise UpstreamError("response body is not JSON", r.status_code) from e
        return parse_report(payload)

    async def aclose(self):
        await self._client.aclose()
        self._tokens.close()
