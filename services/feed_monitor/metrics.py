"""Prometheus metrics for the feed monitor."""

from prometheus_client import Counter, Gauge, Histogram


CYCLES = Counter('feed_monitor_cycles_total', 'Total update cycles run')
CYCLE_FAILURES = Counter(
    'feed_monitor_cycle_failures_total',
    'Update cycles that failed or could not be persisted',
    ['reason'],
)
SPIKES_DETECTED = Counter('feed_monitor_spikes_detected_total', 'Total feed spikes detected')
FEEDS_SURFACED = Counter('feed_monitor_feeds_surfaced_total', 'Total feeds handed to the notifier')
FEED_ERRORS = Counter('feed_monitor_feed_errors_total', 'Feeds that failed to update within a cycle')
CYCLE_DURATION = Histogram('feed_monitor_cycle_duration_seconds', 'Time spent running an update cycle')
BASELINES_FROZEN = Gauge('feed_monitor_baselines_frozen', 'Feeds whose unskewed baseline is frozen')
TRACKED_FEEDS = Gauge('feed_monitor_tracked_feeds', 'Feeds with in-memory listener statistics')
ROWS_PRUNED = Counter('feed_monitor_rows_pruned_total', 'Stale listener average rows deleted')
