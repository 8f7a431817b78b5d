"""Per-feed listener statistics updated once per polling cycle."""

from typing import Optional

from .average import BoundedAverage
from .baseline import BaselineTracker, UnskewedAverageConfig
from .spike import SpikeThresholds, is_spiking


class ListenerStats:
    """
    Moving average, unskewed baseline and spike state for a single feed.

    Attributes:
        average: Moving average of recent listener samples
        baseline: Tracker holding the unskewed average
        jump: Listeners above the effective baseline for the last update
        has_spiked: Whether the last update was classified as a spike
        spike_count: Number of consecutive spiking updates
    """

    def __init__(
        self,
        average: Optional[BoundedAverage] = None,
        unskewed_config: Optional[UnskewedAverageConfig] = None,
    ) -> None:
        self.average = average or BoundedAverage()
        self.baseline = BaselineTracker(unskewed_config)
        self.jump = 0.0
        self.has_spiked = False
        self.spike_count = 0

    @classmethod
    def seeded(
        cls,
        listeners: float,
        unskewed_config: Optional[UnskewedAverageConfig] = None,
    ) -> "ListenerStats":
        """Create stats whose average starts at a known listener count."""
        return cls(BoundedAverage.with_seed(listeners), unskewed_config)

    @property
    def unskewed_average(self) -> Optional[float]:
        return self.baseline.unskewed_average

    def current_listener_average(self) -> float:
        """Return a listener average that is resistant to sudden large jumps."""
        return self.baseline.effective(self.average)

    def update(
        self,
        listeners: int,
        thresholds: SpikeThresholds,
        unskewed_config: Optional[UnskewedAverageConfig] = None,
    ) -> bool:
        """
        Admit one listener sample and re-evaluate the spike state.

        The spike is classified against the baseline as it stood before the
        sample, then the sample is added and the baseline transitions run.

        Args:
            listeners: Listener count for this cycle
            thresholds: Spike thresholds selected for the feed
            unskewed_config: Replaces the baseline parameters when given,
                so reloaded configuration takes effect

        Returns:
            True if the feed spiked this cycle
        """
        if unskewed_config is not None:
            self.baseline.config = unskewed_config

        self.jump = self.baseline.jump(listeners, self.average)
        self.has_spiked = is_spiking(listeners, self.average.current, self.jump, thresholds)
        self.spike_count = self.spike_count + 1 if self.has_spiked else 0

        self.average.add_sample(listeners)
        self.baseline.update(listeners, self.average, self.has_spiked, self.spike_count)

        return self.has_spiked

    def should_display(
        self,
        has_alert: bool,
        show_alert_feeds: bool = True,
        max_times_to_show: Optional[int] = None,
    ) -> bool:
        """
        Decide whether the feed should be surfaced after the last update.

        Args:
            has_alert: Whether the feed source attached an alert to the feed
            show_alert_feeds: Whether alerts alone are enough to surface a feed
            max_times_to_show: Stop surfacing after this many consecutive spikes
        """
        if max_times_to_show is not None and self.spike_count > max_times_to_show:
            return False

        return self.has_spiked or (has_alert and show_alert_feeds)

    def __repr__(self) -> str:
        return (
            f"ListenerStats(average={self.average!r}, unskewed={self.unskewed_average}, "
            f"jump={self.jump:.1f}, has_spiked={self.has_spiked}, spike_count={self.spike_count})"
        )
