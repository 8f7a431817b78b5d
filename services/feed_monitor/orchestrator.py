"""
Update orchestration

Runs one polling cycle: fetch the feed list, update every feed's statistics
and historical baseline inside a single transaction, select the feeds worth
surfacing and hand them to the notifier.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from shared.models import FeedSnapshot, SurfacedFeed

from . import metrics
from .config import MonitorConfig, SharedConfig, SortBy, SortOrder
from .errors import FeedSourceError, HistoryStoreError
from .history_store import HistoricalStore
from .listener_stats import ListenerStats
from .notifier import Notifier
from .scraper import FeedSource


logger = structlog.get_logger(__name__)

Candidate = Tuple[FeedSnapshot, ListenerStats]


@dataclass
class CycleReport:
    """Summary of one update cycle."""

    feeds_seen: int = 0
    spiking: int = 0
    surfaced: List[SurfacedFeed] = field(default_factory=list)
    persisted: bool = False
    failed_feeds: List[int] = field(default_factory=list)
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sort_candidates(candidates: List[Candidate], sort_by: SortBy, sort_order: SortOrder) -> List[Candidate]:
    if sort_by is SortBy.JUMP:
        key = lambda item: item[1].jump
    else:
        key = lambda item: item[0].listeners

    return sorted(candidates, key=key, reverse=sort_order is SortOrder.DESCENDING)


def select_feeds(candidates: List[Candidate], config: MonitorConfig) -> List[SurfacedFeed]:
    """
    Choose, order and rank the feeds to surface for a cycle.

    Args:
        candidates: Feeds updated this cycle with their statistics
        config: Active configuration

    Returns:
        At most ``max_feeds`` surfaced feeds, ranked from 1
    """
    misc = config.misc
    shown = [
        (feed, stats)
        for feed, stats in candidates
        if stats.should_display(
            has_alert=feed.alert is not None,
            show_alert_feeds=misc.show_alert_feeds,
            max_times_to_show=misc.max_times_to_show_feed,
        )
    ]

    ordered = sort_candidates(shown, config.sorting.sort_by, config.sorting.sort_order)
    ordered = ordered[:misc.max_feeds]

    total = len(ordered)
    return [
        SurfacedFeed(
            feed_id=feed.id,
            name=feed.name,
            listeners=feed.listeners,
            jump=int(round(stats.jump)),
            alert=feed.alert,
            rank=rank,
            total=total,
        )
        for rank, (feed, stats) in enumerate(ordered, 1)
    ]


class UpdateOrchestrator:
    """
    Drives the per-cycle update of all feed statistics.

    The statistics map is only touched from the update loop, one cycle at a
    time, so it needs no locking.

    Attributes:
        stats: Listener statistics keyed by feed id
        cycles: Number of cycles started
        last_prune: When stale history was last pruned, None before the first prune
        local_tz: Zone used to pick weekday thresholds, None for the system zone
    """

    def __init__(
        self,
        source: FeedSource,
        store: HistoricalStore,
        notifier: Notifier,
        shared_config: SharedConfig,
        clock: Callable[[], datetime] = _utcnow,
        local_tz: Optional[tzinfo] = None,
    ) -> None:
        self.source = source
        self.store = store
        self.notifier = notifier
        self.shared_config = shared_config
        self.clock = clock
        self.local_tz = local_tz
        self.stats: Dict[int, ListenerStats] = {}
        self.cycles = 0
        self.last_prune: Optional[datetime] = None

    def _stats_for(self, session, feed: FeedSnapshot, hour: int, config: MonitorConfig) -> ListenerStats:
        stats = self.stats.get(feed.id)
        if stats is None:
            try:
                seed = self.store.seed(session, hour, feed.id, feed.listeners)
            except SQLAlchemyError as e:
                logger.warning("Failed to read listener average, starting cold", feed_id=feed.id, error=str(e))
                seed = feed.listeners
            stats = ListenerStats.seeded(seed, config.unskewed_average)
            self.stats[feed.id] = stats
            logger.debug("Tracking new feed", feed_id=feed.id, seed=seed)
        return stats

    def _update_feeds(
        self,
        feeds: List[FeedSnapshot],
        config: MonitorConfig,
        now: datetime,
        report: CycleReport,
        updated: List[Candidate],
    ) -> None:
        """
        Update every feed's statistics, then write all baselines in one transaction.

        Statistics are updated before any row is written, so a failed write
        cannot hide a feed whose in-memory state already changed.
        """
        hour = now.astimezone(timezone.utc).hour
        # Buckets are UTC, weekday overrides follow the local calendar
        weekday = now.astimezone(self.local_tz).weekday()

        with self.store.transaction() as session:
            for feed in feeds:
                log = logger.bind(feed_id=feed.id, cycle=self.cycles)
                try:
                    stats = self._stats_for(session, feed, hour, config)
                    stats.update(
                        feed.listeners,
                        config.thresholds_for(feed, weekday),
                        config.unskewed_average,
                    )
                except Exception as e:
                    log.error("Failed to update feed", error=str(e), exc_info=True)
                    metrics.FEED_ERRORS.inc()
                    report.failed_feeds.append(feed.id)
                    continue

                if stats.has_spiked:
                    report.spiking += 1
                    log.info(
                        "Feed spiked",
                        listeners=feed.listeners,
                        jump=stats.jump,
                        spike_count=stats.spike_count,
                        unskewed=stats.unskewed_average,
                    )
                updated.append((feed, stats))

            for feed, stats in updated:
                # Rounded rather than truncated so 99.6 is stored as 100
                baseline = int(round(stats.current_listener_average()))
                self.store.record_baseline(session, feed.id, hour, baseline, now)

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Run one complete update cycle.

        A feed source failure aborts the cycle before any statistics change.
        A persistence failure rolls back the cycle's writes; the in-memory
        statistics keep this cycle's update and feeds are still surfaced.

        Args:
            now: Cycle time, defaults to the orchestrator clock

        Returns:
            Report describing the cycle
        """
        self.cycles += 1
        now = now or self.clock()
        config = self.shared_config.get()
        report = CycleReport()
        log = logger.bind(cycle=self.cycles)

        metrics.CYCLES.inc()
        with metrics.CYCLE_DURATION.time():
            try:
                feeds = self.source.fetch(config)
            except FeedSourceError as e:
                log.error("Failed to fetch feeds", error=str(e))
                metrics.CYCLE_FAILURES.labels(reason="fetch").inc()
                report.error = str(e)
                self.notifier.notify_error(str(e))
                return report

            feeds = [f for f in feeds if f.listeners >= config.misc.minimum_listeners]
            report.feeds_seen = len(feeds)

            updated: List[Candidate] = []
            try:
                self._update_feeds(feeds, config, now, report, updated)
                report.persisted = True
            except HistoryStoreError as e:
                log.error("Failed to persist listener averages", error=str(e))
                metrics.CYCLE_FAILURES.labels(reason="persist").inc()
                report.error = str(e)

            report.surfaced = select_feeds(updated, config)
            for surfaced in report.surfaced:
                self.notifier.notify(surfaced)

        metrics.SPIKES_DETECTED.inc(report.spiking)
        metrics.FEEDS_SURFACED.inc(len(report.surfaced))
        metrics.BASELINES_FROZEN.set(self.frozen_baselines())
        metrics.TRACKED_FEEDS.set(len(self.stats))

        log.info(
            "Update cycle complete",
            feeds=report.feeds_seen,
            spiking=report.spiking,
            surfaced=len(report.surfaced),
            failed=len(report.failed_feeds),
            persisted=report.persisted,
        )
        return report

    def maybe_prune(self, now: Optional[datetime] = None) -> Optional[int]:
        """
        Prune stale history if the prune interval has elapsed.

        Returns:
            Rows deleted, or None if no prune was due
        """
        now = now or self.clock()
        misc = self.shared_config.get().misc

        if self.last_prune is not None and now - self.last_prune < timedelta(hours=misc.prune_interval_hours):
            return None

        try:
            deleted = self.store.prune(timedelta(days=misc.retention_days), now)
        except HistoryStoreError as e:
            logger.error("Failed to prune listener averages", error=str(e))
            metrics.CYCLE_FAILURES.labels(reason="prune").inc()
            return None

        self.last_prune = now
        metrics.ROWS_PRUNED.inc(deleted)
        return deleted

    def frozen_baselines(self) -> int:
        return sum(1 for stats in self.stats.values() if stats.baseline.is_frozen)
