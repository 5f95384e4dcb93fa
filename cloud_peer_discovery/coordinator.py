"""Discovery coordinator: scheduled and on-demand refresh cycles with request coalescing.

A cycle runs fetch -> parse -> filter -> select on a worker thread and publishes an
immutable DiscoverySnapshot. At most one cycle is in flight per coordinator; callers
that ask for a refresh while one is running share its future. A failed, timed-out or
cancelled cycle never replaces the current snapshot, and no new cycle starts until
the abandoned worker has returned.
"""

from __future__ import annotations

import enum
import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from datetime import datetime, timezone

from .config import AppConfig, DiscoveryFilterConfig, EndpointSelectionPolicy, RefreshConfig
from .discovery import InventoryFetcher, ResponseFormat
from .discovery.change_detector import ChangeDetector
from .discovery.fetcher import InventoryQuery, build_fetcher
from .discovery.instance_filter import InstanceFilter
from .discovery.models import DiscoverySnapshot, InstanceRecord, PeerEndpoint, RawPage
from .discovery.selector import select_endpoints
from .exceptions import ConfigError, DiscoveryError, RefreshCancelled, RefreshTimeout

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[DiscoverySnapshot], None]


class CycleState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    FILTERING = "filtering"
    SELECTING = "selecting"
    PUBLISHED = "published"
    FAILED = "failed"


class _Cycle:
    """One in-flight pipeline run, shared by every caller coalesced onto it."""

    def __init__(self, number: int, deadline_seconds: float):
        self.number = number
        self.deadline_seconds = deadline_seconds
        self.deadline = time.monotonic() + deadline_seconds
        self.future: Future[DiscoverySnapshot] = Future()
        # Running futures cannot be cancelled by callers
        self.future.set_running_or_notify_cancel()
        self.timer: threading.Timer | None = None
        self._abandoned: DiscoveryError | None = None

    def abandon(self, error: DiscoveryError) -> None:
        if self._abandoned is None:
            self._abandoned = error

    def is_abandoned(self) -> bool:
        return self._abandoned is not None

    def check(self) -> None:
        """Stop the worker at a stage boundary once the cycle was abandoned or overran."""
        if self._abandoned is not None:
            raise type(self._abandoned)(str(self._abandoned))
        if time.monotonic() >= self.deadline:
            raise RefreshTimeout(
                f"Discovery cycle {self.number} exceeded its {self.deadline_seconds}s deadline"
            )


class DiscoveryCoordinator:
    """Owns the current snapshot and drives discovery cycles."""

    def __init__(
        self,
        fetcher: InventoryFetcher,
        filter_config: DiscoveryFilterConfig | None = None,
        policy: EndpointSelectionPolicy | None = None,
        refresh_config: RefreshConfig | None = None,
        response_format: ResponseFormat | None = None,
        query: InventoryQuery | None = None,
    ):
        self._fetcher = fetcher
        self._format: ResponseFormat = response_format or getattr(fetcher, "response_format", None)
        if self._format is None:
            raise ConfigError(
                f"{type(fetcher).__name__} has no response_format; pass response_format= explicitly"
            )
        self._filter_config = filter_config or DiscoveryFilterConfig()
        self._instance_filter = InstanceFilter(self._filter_config)
        self._policy = policy or EndpointSelectionPolicy()
        self._refresh = refresh_config or RefreshConfig()
        self._query = query or InventoryQuery.describe_instances(self._filter_config)

        self._lock = threading.Lock()
        self._inflight: _Cycle | None = None
        # Abandoned cycle whose worker thread has not returned yet
        self._draining: _Cycle | None = None
        self._cycles_started = 0
        self._last_cycle_id = 0
        self._snapshot = DiscoverySnapshot.empty()
        self._state = CycleState.IDLE
        self._listeners: list[SnapshotListener] = []
        self._change_detector = ChangeDetector()

        self._stopping = threading.Event()
        self._scheduler: threading.Thread | None = None
        self._consecutive_failures = 0

    @classmethod
    def from_config(cls, config: AppConfig) -> DiscoveryCoordinator:
        """Wire a coordinator from configuration; the wire format is chosen here, once."""
        fetcher = build_fetcher(config.ec2, config.retry)
        return cls(
            fetcher,
            filter_config=config.filters,
            policy=config.endpoint,
            refresh_config=config.refresh,
            query=InventoryQuery.describe_instances(config.filters, config.ec2.page_size),
        )

    # ── Public API ──────────────────────────────────────────────────

    @property
    def state(self) -> CycleState:
        return self._state

    def current_snapshot(self) -> DiscoverySnapshot:
        """The last published snapshot. Never blocks."""
        return self._snapshot

    def add_listener(self, listener: SnapshotListener) -> None:
        """Register a callback fired with every newly published snapshot."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        with self._lock:
            self._listeners.remove(listener)

    def refresh(self, force: bool = False) -> DiscoverySnapshot:
        """Run (or join) a discovery cycle and wait for it; raises the cycle's error."""
        return self.refresh_async(force=force).result()

    def refresh_async(self, force: bool = False) -> Future[DiscoverySnapshot]:
        """Return a handle to the in-flight cycle, starting one if none is running.

        Unless force is set, a snapshot younger than refresh.cache_seconds is returned
        without a fetch. While an abandoned cycle is still winding down the returned
        future fails with RefreshTimeout instead of starting a second pipeline.
        """
        with self._lock:
            if self._stopping.is_set():
                raise RefreshCancelled("Discovery coordinator is stopped")

            if self._inflight is not None:
                logger.debug("Joining in-flight discovery cycle %d", self._inflight.number)
                return self._inflight.future

            if not force and self._is_fresh(self._snapshot):
                cached: Future[DiscoverySnapshot] = Future()
                cached.set_result(self._snapshot)
                return cached

            if self._draining is not None:
                draining = self._draining.number
                logger.warning(
                    "Refusing to start a discovery cycle: abandoned cycle %d is still running", draining,
                )
                blocked: Future[DiscoverySnapshot] = Future()
                blocked.set_exception(RefreshTimeout(
                    f"Discovery cycle {draining} was abandoned and has not finished yet"
                ))
                return blocked

            self._cycles_started += 1
            cycle = _Cycle(self._cycles_started, self._refresh.cycle_deadline_seconds)
            self._inflight = cycle
            self._state = CycleState.IDLE

        cycle.timer = threading.Timer(cycle.deadline_seconds, self._expire, args=(cycle,))
        cycle.timer.daemon = True
        cycle.timer.start()
        worker = threading.Thread(
            target=self._run_cycle, args=(cycle,), name=f"discovery-cycle-{cycle.number}", daemon=True,
        )
        worker.start()
        return cycle.future

    def start(self) -> None:
        """Start the periodic refresh driver."""
        with self._lock:
            if self._scheduler is not None and self._scheduler.is_alive():
                return
            self._stopping.clear()
            self._scheduler = threading.Thread(
                target=self._run_scheduler, name="discovery-scheduler", daemon=True,
            )
            self._scheduler.start()
        logger.info("Discovery scheduler started, refreshing every %ss", self._refresh.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the periodic driver and cancel any in-flight cycle. The current snapshot is kept."""
        self._stopping.set()
        self._abandon_inflight(RefreshCancelled("Discovery coordinator is stopping"))
        scheduler = self._scheduler
        if scheduler is not None and scheduler is not threading.current_thread():
            scheduler.join(timeout)
        self._scheduler = None
        logger.info("Discovery scheduler stopped")

    def __enter__(self) -> DiscoveryCoordinator:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False

    # ── Cycle execution ─────────────────────────────────────────────

    def _run_cycle(self, cycle: _Cycle) -> None:
        start = time.monotonic()
        try:
            endpoints, total, pages = self._execute(cycle)
        except Exception as exc:  # delivered to every coalesced caller through the future
            self._fail(cycle, exc)
        else:
            self._publish(cycle, endpoints, total, pages, time.monotonic() - start)
        finally:
            if cycle.timer is not None:
                cycle.timer.cancel()
            self._release(cycle)

    def _release(self, cycle: _Cycle) -> None:
        """Called once the worker returns, however it returns."""
        with self._lock:
            stranded = self._inflight is cycle
            if stranded:
                self._inflight = None
                self._state = CycleState.FAILED
            if self._draining is cycle:
                self._draining = None

        if stranded:
            # The worker died on something other than an Exception
            logger.error("Discovery cycle %d worker exited without a result", cycle.number)
            cycle.future.set_exception(
                RefreshCancelled(f"Discovery cycle {cycle.number} worker exited without a result")
            )

    def _execute(self, cycle: _Cycle) -> tuple[frozenset[PeerEndpoint], int, int]:
        self._enter(cycle, CycleState.FETCHING)
        pages: list[RawPage] = []
        for page in self._fetcher.fetch_all(self._query, should_stop=cycle.is_abandoned):
            cycle.check()
            pages.append(page)

        self._enter(cycle, CycleState.PARSING)
        records: list[InstanceRecord] = []
        for page in pages:
            records.extend(self._format.parse_response(page))
        cycle.check()

        self._enter(cycle, CycleState.FILTERING)
        kept = self._instance_filter.apply(records)

        self._enter(cycle, CycleState.SELECTING)
        endpoints = select_endpoints(kept, self._policy)
        cycle.check()
        return endpoints, len(records), len(pages)

    def _enter(self, cycle: _Cycle, state: CycleState) -> None:
        with self._lock:
            if self._inflight is cycle:
                self._state = state

    def _publish(
        self, cycle: _Cycle, endpoints: frozenset[PeerEndpoint], total: int, pages: int, elapsed: float,
    ) -> None:
        with self._lock:
            if self._inflight is not cycle:
                logger.info("Discarding result of abandoned discovery cycle %d", cycle.number)
                return
            self._last_cycle_id += 1
            snapshot = DiscoverySnapshot(cycle_id=self._last_cycle_id, endpoints=endpoints, instance_count=total)
            self._snapshot = snapshot
            self._state = CycleState.PUBLISHED
            self._inflight = None
            listeners = list(self._listeners)

        logger.info(
            "Discovery cycle complete",
            extra={
                "cycle_id": snapshot.cycle_id,
                "endpoints": len(snapshot),
                "total_instances": total,
                "pages": pages,
                "elapsed_seconds": round(elapsed, 3),
            },
        )
        self._change_detector.detect(snapshot)

        # Listeners see the snapshot before any waiting caller is released
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener %r failed", listener)
        cycle.future.set_result(snapshot)

    def _fail(self, cycle: _Cycle, exc: Exception) -> None:
        with self._lock:
            if self._inflight is not cycle:
                logger.debug("Abandoned discovery cycle %d ended with %s", cycle.number, exc)
                return
            self._inflight = None
            self._state = CycleState.FAILED

        if isinstance(exc, DiscoveryError):
            logger.warning("Discovery cycle %d failed: %s", cycle.number, exc)
        else:
            logger.error("Discovery cycle %d crashed", cycle.number, exc_info=exc)
        cycle.future.set_exception(exc)

    def _expire(self, cycle: _Cycle) -> None:
        self._abandon(cycle, RefreshTimeout(
            f"Discovery cycle {cycle.number} exceeded its {cycle.deadline_seconds}s deadline"
        ))

    def _abandon_inflight(self, error: DiscoveryError) -> None:
        cycle = self._inflight
        if cycle is not None:
            self._abandon(cycle, error)

    def _abandon(self, cycle: _Cycle, error: DiscoveryError) -> None:
        with self._lock:
            if self._inflight is not cycle:
                return
            self._inflight = None
            self._draining = cycle
            self._state = CycleState.FAILED
        cycle.abandon(error)
        logger.warning("Discovery cycle %d abandoned: %s", cycle.number, error)
        cycle.future.set_exception(error)

    def _is_fresh(self, snapshot: DiscoverySnapshot) -> bool:
        cache_seconds = self._refresh.cache_seconds
        if cache_seconds <= 0 or snapshot.cycle_id == 0:
            return False
        return snapshot.age_seconds(datetime.now(timezone.utc)) < cache_seconds

    # ── Periodic driver ─────────────────────────────────────────────

    def _run_scheduler(self) -> None:
        while not self._stopping.is_set():
            cycle_start = time.monotonic()

            try:
                self.refresh(force=True)
                self._consecutive_failures = 0
            except RefreshCancelled:
                break
            except Exception:
                self._consecutive_failures += 1
                logger.exception(
                    "Scheduled refresh failed (consecutive failures: %d)",
                    self._consecutive_failures,
                )

            elapsed = time.monotonic() - cycle_start
            sleep_time = self._calculate_sleep(elapsed)
            logger.debug("Sleeping %.1fs before next refresh", sleep_time)
            self._stopping.wait(sleep_time)

    def _calculate_sleep(self, elapsed: float) -> float:
        """Determine how long to sleep, applying backoff and jitter."""
        base = self._refresh.interval_seconds

        if self._consecutive_failures > 0:
            base = min(
                self._refresh.backoff_base_seconds * (2 ** (self._consecutive_failures - 1)),
                self._refresh.max_backoff_seconds,
            )

        jitter = random.uniform(0, self._refresh.jitter_seconds)
        return max(0.0, base - elapsed + jitter)

    def __repr__(self) -> str:
        snapshot = self._snapshot
        return f"<DiscoveryCoordinator state={self._state.value} cycle_id={snapshot.cycle_id} peers={len(snapshot)}>"
