"""
Spike classification

Decides whether a feed's listener count has jumped far enough above its
moving average to count as a spike. The required jump is a fraction of the
current listener count that grows for low-traffic feeds and shrinks for
feeds that are already rising quickly.
"""

from dataclasses import dataclass

import structlog


logger = structlog.get_logger(__name__)

LOW_LISTENER_CUTOFF = 50.0
MIN_THRESHOLD = 0.01


@dataclass(frozen=True)
class SpikeThresholds:
    """Threshold parameters for spike classification.

    Attributes:
        jump_required: Base fraction of the listener count the jump must reach
        low_listener_increase: Added to the threshold per listener below 50
        high_listener_dec: Subtracted from the threshold per
            ``high_listener_dec_every`` listeners of existing jump
        high_listener_dec_every: Listener step used with ``high_listener_dec``
    """

    jump_required: float = 0.4
    low_listener_increase: float = 0.005
    high_listener_dec: float = 0.02
    high_listener_dec_every: float = 100.0

    def __post_init__(self) -> None:
        """Validate threshold parameters."""
        if self.jump_required < MIN_THRESHOLD:
            raise ValueError(f"Jump required must be at least {MIN_THRESHOLD}")
        if self.low_listener_increase < 0:
            raise ValueError("Low listener increase must be non-negative")
        if self.high_listener_dec < 0:
            raise ValueError("High listener decrease must be non-negative")
        if self.high_listener_dec_every < 1.0:
            raise ValueError("High listener decrease step must be at least 1")


def spike_threshold(listeners: float, jump: float, thresholds: SpikeThresholds) -> float:
    """
    Compute the fraction of ``listeners`` the rise must reach to be a spike.

    Args:
        listeners: Current listener count
        jump: Listeners above the effective baseline, before this sample
        thresholds: Threshold parameters for the feed

    Returns:
        Threshold fraction, never lower than 0.01
    """
    if listeners < LOW_LISTENER_CUTOFF:
        return (
            thresholds.jump_required
            + (LOW_LISTENER_CUTOFF - listeners) * thresholds.low_listener_increase
        )

    rise = jump / thresholds.high_listener_dec_every * thresholds.high_listener_dec
    return thresholds.jump_required - min(rise, thresholds.jump_required - MIN_THRESHOLD)


def is_spiking(
    listeners: float,
    average_current: float,
    jump: float,
    thresholds: SpikeThresholds,
) -> bool:
    """
    Classify one cycle of a feed as spiking or not.

    Args:
        listeners: Current listener count
        average_current: Moving average before this cycle's sample
        jump: Listeners above the effective baseline, before this sample
        thresholds: Threshold parameters for the feed

    Returns:
        True when ``listeners - average_current >= listeners * threshold``
    """
    # A freshly created feed has nothing to compare against
    if average_current == 0:
        return False

    threshold = spike_threshold(listeners, jump, thresholds)
    spiking = listeners - average_current >= listeners * threshold

    logger.debug(
        "Spike threshold evaluated",
        listeners=listeners,
        average=average_current,
        jump=jump,
        threshold=threshold,
        spiking=spiking,
    )

    return spiking
