import logging
import os
import sys
import time
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import ConfigError, Settings, load_settings
from .ga4 import Ga4Client, ServiceAccountTokens
from .logging import event_fields, setup_logging
from .poller import Poller, build_realtime_poller, build_totals_poller
from .stats import EndpointStats
from .store import SnapshotStore

SERVICE_NAME = "ga4-realtime"
REALTIME_PATH = "/api/realtime"

log = logging.getLogger(__name__)

def build_client(settings: Settings) -> Ga4Client:
    try:
        tokens = ServiceAccountTokens.from_key(
            settings.client_email, settings.private_key, timeout_s=settings.upstream_timeout_s
        )
    except ValueError as e:
        raise ConfigError([f"service account credentials rejected: {e}"]) from e
    return Ga4Client(tokens, timeout_s=settings.upstream_timeout_s)

def _staleness(ts_ms: int) -> int:
    return int(time.time() * 1000) - ts_ms

def create_app(
    settings: Settings,
    client: Ga4Client | None = None,
    store: SnapshotStore | None = None,
) -> FastAPI:
    client = client or build_client(settings)
    store = store or SnapshotStore()
    pollers: list[Poller] = [
        build_realtime_poller(client, settings.realtime_query(), store, settings.poll_ms)
    ]
    if settings.totals_enabled:
        pollers.append(
            build_totals_poller(client, settings.totals_query(), store, settings.totals_poll_ms)
        )
    stats = EndpointStats(capacity=1000)
    started_at = time.time()

    # Startup/Shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(
            "starting pollers",
            extra=event_fields(
                "startup",
                property=settings.property_id,
                pollers={p.name: p.interval_ms for p in pollers},
            ),
        )
        for p in pollers:
            await p.start()
        try:
            yield
        finally:
            log.info("stopping pollers", extra=event_fields("shutdown"))
            for p in pollers:
                await p.stop()
            await client.aclose()

    app = FastAPI(title="GA4 realtime snapshot service", lifespan=lifespan)

    app.state.settings = settings
    app.state.store = store
    app.state.pollers = pollers
    app.state.client = client

    if settings.cors_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[settings.cors_origin],
            allow_methods=["GET"],
        )

    # Access log + latency
    @app.middleware("http")
    async def access_logger(request: Request, call_next):
        t0 = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - t0) * 1000)
            path = request.url.path
            stats.record(path, status, latency_ms)
            age_ms = store.age_ms()
            log.info(
                "access",
                extra=event_fields(
                    "http.access",
                    path=path,
                    method=request.method,
                    status=status,
                    latency_ms=latency_ms,
                    age_ms=age_ms if age_ms is not None else -1,
                ),
            )

    # Endpoints
    @app.get(REALTIME_PATH)
    async def realtime():
        view = store.read()
        s = view.snapshot
        if s is None:
            return JSONResponse(
                {"error": "Data not yet available"},
                status_code=503,
                headers={"Retry-After": str(max(1, settings.poll_ms // 1000))},
            )
        body = s.to_dict()
        if settings.totals_enabled:
            total = view.total
            body["totalVisitors"] = total.value if total else None
            body["totalVisitorsLastUpdated"] = total.updated_at.isoformat() if total else None
        age_ms = _staleness(s.ts_ms)
        return JSONResponse(
            body,
            headers={
                "X-Data-Age-Ms": str(age_ms),
                "ETag": s.snapshot_id,
                "Cache-Control": "no-store",
            },
        )

    @app.get("/stats")
    async def stats_endpoint():
        return {
            "uptime_s": int(time.time() - started_at),
            "snapshot_age_ms": store.age_ms(),
            "pollers": {p.name: p.stats() for p in pollers},
            "endpoints": {"realtime": stats.summary(REALTIME_PATH)},
        }

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app

def main():
    load_dotenv()
    setup_logging(SERVICE_NAME, os.getenv("LOG_LEVEL", "INFO"))
    try:
        settings = load_settings()
        client = build_client(settings)
    except ConfigError as e:
        log.error(
            "invalid configuration",
            extra=event_fields("config.error", problems=e.problems),
        )
        sys.exit(1)

    setup_logging(SERVICE_NAME, settings.log_level)
    log.info(
        "initializing",
        extra=event_fields(
            "startup",
            client_email=settings.client_email,
            property=settings.property_id,
            has_private_key=bool(settings.private_key),
            cors_origin=settings.cors_origin,
        ),
    )
    uvicorn.run(
        create_app(settings, client=client),
        host=settings.bind_host,
        port=settings.port,
        log_config=None,
    )

if __name__ == "__main__":
    main()
