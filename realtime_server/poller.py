import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable

from .ga4 import Ga4Client, QueryParams, RateLimitedError, UpstreamError
from .logging import event_fields
from .store import Snapshot, SnapshotStore, utcnow

class Poller:
    """Run ``fetch`` on a fixed wall-clock cadence and hand results to ``publish``.

    The first tick fires as soon as the poller starts. Each tick runs in its
    own task, so a slow upstream call never pushes back the next tick. A failed
    tick is logged and leaves whatever was published before in place.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[], Awaitable[Any]],
        publish: Callable[[Any], None],
        interval_ms: int,
    ):
        self.name = name
        self.fetch = fetch
        self.publish = publish
        self.interval_ms = interval_ms
        self._log = logging.getLogger(__name__)
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._inflight: set[asyncio.Task] = set()
        self._seq = 0
        self._published_seq = 0
        self.last_cycle_ms: int | None = None
        self.last_success_at: datetime | None = None
        self.last_error: str | None = None
        self.fail_count: int = 0  # consecutive
        self.tick_count = 0
        self.ok_count = 0
        self.error_count = 0
        self.rate_limited_count = 0

    async def start(self):
        self._task = asyncio.create_task(self._run(), name=f"poller:{self.name}")

    async def stop(self):
        self._stopping.set()
        if self._task:
            await self._task
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _run(self):
        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000.0
        next_at = loop.time()
        while not self._stopping.is_set():
            self._spawn_tick()
            next_at += interval
            delay = next_at - loop.time()
            if delay < 0:
                # loop stalled past a whole interval; restart the grid from now
                next_at = loop.time()
                delay = 0
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _spawn_tick(self):
        self._seq += 1
        t = asyncio.create_task(self.tick(self._seq))
        self._inflight.add(t)
        t.add_done_callback(self._inflight.discard)

    async def tick(self, seq: int | None = None) -> bool:
        """One fetch/publish cycle. Returns True when something was published."""
        if seq is None:
            self._seq += 1
            seq = self._seq
        t0 = time.time()
        self.tick_count += 1
        outcome = "ok"
        try:
            result = await self.fetch()
            if seq < self._published_seq:
                # an overlapping later tick already published
                outcome = "stale"
                self._log.warning(
                    "discarding out-of-order result",
                    extra=event_fields(
                        "poll.stale", poller=self.name, seq=seq, published_seq=self._published_seq
                    ),
                )
                return False
            self.publish(result)
            self._published_seq = seq
            self.ok_count += 1
            self.fail_count = 0
            self.last_success_at = utcnow()
            self.last_error = None
            return True
        except RateLimitedError as e:
            outcome = "rate_limited"
            self.rate_limited_count += 1
            self.fail_count += 1
            self.last_error = f"{e.kind}: {e}"
            self._log.warning(
                "upstream rate limited",
                extra=event_fields(
                    "poll.rate_limited", poller=self.name, kind=e.kind, status=e.status_code, error=str(e)
                ),
            )
            return False
        except Exception as e:
            outcome = "error"
            self.error_count += 1
            self.fail_count += 1
            kind = e.kind if isinstance(e, UpstreamError) else type(e).__name__
            self.last_error = f"{kind}: {e}"
            self._log.error(
                "poll error",
                extra=event_fields("poll.error", poller=self.name, kind=kind, error=repr(e)),
            )
            return False
        finally:
            self.last_cycle_ms = int((time.time() - t0) * 1000)
            self._log.info(
                "poll",
                extra=event_fields(
                    "poll.run",
                    poller=self.name,
                    seq=seq,
                    outcome=outcome,
                    cycle_ms=self.last_cycle_ms,
                    retry=self.fail_count,
                ),
            )

    def stats(self) -> dict[str, Any]:
        return {
            "interval_ms": self.interval_ms,
            "ticks": self.tick_count,
            "ok": self.ok_count,
            "errors": self.error_count,
            "rate_limited": self.rate_limited_count,
            "consecutive_failures": self.fail_count,
            "last_cycle_ms": self.last_cycle_ms,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
        }

def build_realtime_poller(
    client: Ga4Client, query: QueryParams, store: SnapshotStore, interval_ms: int
) -> Poller:
    async def fetch() -> Snapshot:
        report = await client.run(query)
        return Snapshot.from_report(store.next_snapshot_id(), report)

    return Poller("realtime", fetch, store.publish, interval_ms)

def build_totals_poller(
    client: Ga4Client,
    query: QueryParams,
    store: SnapshotStore,
    interval_ms: int,
    metric: str | None = None,
) -> Poller:
    metric = metric or query.metrics[0]

    async def fetch() -> int:
        report = await client.run(query)
        value = report.first_value(metric)
        if value is None:
            raise UpstreamError(f"report has no value for {metric!r}")
        return int(value)

    return Poller("totals", fetch, store.publish_total, interval_ms)
