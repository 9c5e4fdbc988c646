import os
from dataclasses import dataclass, field
from typing import Mapping

from .ga4 import DateRange, MinuteRange, QueryParams, normalize_property_id

DEFAULT_REALTIME_METRICS = ("activeUsers", "screenPageViews", "eventCount")
DEFAULT_REALTIME_DIMENSIONS = ("unifiedScreenName", "deviceCategory", "country", "city")
TOTALS_METRIC = "totalUsers"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

class ConfigError(Exception):
    def __init__(self, problems: list[str]):
        super().__init__("; ".join(problems))
        self.problems = problems

@dataclass(frozen=True)
class Settings:
    client_email: str
    private_key: str = field(repr=False)
    property_id: str

    port: int = 3001
    bind_host: str = "0.0.0.0"
    cors_origin: str | None = None
    log_level: str = "INFO"

    poll_ms: int = 10_000
    realtime_metrics: tuple[str, ...] = DEFAULT_REALTIME_METRICS
    realtime_dimensions: tuple[str, ...] = DEFAULT_REALTIME_DIMENSIONS
    realtime_window_minutes: int = 5

    totals_enabled: bool = True
    totals_poll_ms: int = 60_000
    totals_start_date: str = "2020-01-01"

    upstream_timeout_s: float = 10.0

    def realtime_query(self) -> QueryParams:
        n = self.realtime_window_minutes
        return QueryParams(
            property_id=self.property_id,
            metrics=self.realtime_metrics,
            dimensions=self.realtime_dimensions,
            window=MinuteRange(start_minutes_ago=n, end_minutes_ago=0, name=f"last_{n}_min"),
        )

    def totals_query(self) -> QueryParams:
        return QueryParams(
            property_id=self.property_id,
            metrics=(TOTALS_METRIC,),
            window=DateRange(start_date=self.totals_start_date, end_date="today"),
        )

def unescape_private_key(raw: str) -> str:
    """Keys pasted into env files usually carry literal ``\\n`` sequences."""
    return raw.strip().replace("\\n", "\n")

def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Read every setting once, validate, and return a frozen ``Settings``.
    Raises ``ConfigError`` listing all missing or invalid values.
    """
    env = os.environ if environ is None else environ
    problems: list[str] = []

    def required(name: str) -> str:
        value = (env.get(name) or "").strip()
        if not value:
            problems.append(f"{name} is required")
        return value

    def int_env(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
        raw = (env.get(name) or "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            problems.append(f"{name} must be an integer, got {raw!r}")
            return default
        if (min_value is not None and value < min_value) or (max_value is not None and value > max_value):
            problems.append(f"{name}={value} is out of range [{min_value}, {max_value}]")
        return value

    def bool_env(name: str, default: bool) -> bool:
        raw = (env.get(name) or "").strip().lower()
        if not raw:
            return default
        if raw in _TRUE:
            return True
        if raw in _FALSE:
            return False
        problems.append(f"{name} must be a boolean, got {raw!r}")
        return default

    def list_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
        raw = env.get(name)
        if raw is None or not raw.strip():
            return default
        return tuple(part.strip() for part in raw.split(",") if part.strip())

    client_email = required("GOOGLE_SERVICE_ACCOUNT_CLIENT_EMAIL")
    private_key = unescape_private_key(required("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY"))
    if private_key and "PRIVATE KEY" not in private_key:
        problems.append("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY is not a PEM private key")

    property_id = required("GA4_PROPERTY_ID")
    if property_id:
        try:
            property_id = normalize_property_id(property_id)
        except ValueError as e:
            problems.append(f"GA4_PROPERTY_ID: {e}")

    try:
        timeout_s = float(env.get("UPSTREAM_TIMEOUT_S") or 10.0)
    except ValueError:
        problems.append("UPSTREAM_TIMEOUT_S must be a number")
        timeout_s = 10.0
    if timeout_s <= 0:
        problems.append("UPSTREAM_TIMEOUT_S must be positive")

    settings = Settings(
        client_email=client_email,
        private_key=private_key,
        property_id=property_id,
        port=int_env("PORT", 3001, min_value=1, max_value=65535),
        bind_host=(env.get("BIND_HOST") or "0.0.0.0").strip(),
        cors_origin=(env.get("CORS_ORIGIN") or "").strip() or None,
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        poll_ms=int_env("POLL_MS", 10_000, min_value=1000),
        realtime_metrics=list_env("REALTIME_METRICS", DEFAULT_REALTIME_METRICS),
        realtime_dimensions=list_env("REALTIME_DIMENSIONS", DEFAULT_REALTIME_DIMENSIONS),
        realtime_window_minutes=int_env("REALTIME_WINDOW_MINUTES", 5, min_value=1),
        totals_enabled=bool_env("TOTALS_ENABLED", True),
        totals_poll_ms=int_env("TOTALS_POLL_MS", 60_000, min_value=1000),
        totals_start_date=(env.get("TOTALS_START_DATE") or "2020-01-01").strip(),
        upstream_timeout_s=timeout_s,
    )
    if problems:
        raise ConfigError(problems)

    # query shapes are validated once here and reused for every poll
    try:
        settings.realtime_query()
        if settings.totals_enabled:
            settings.totals_query()
    except ValueError as e:
        raise ConfigError([str(e)]) from e
    return settings
