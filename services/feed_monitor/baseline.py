"""
Unskewed baseline tracking

A plain moving average is dragged upward by the very samples a spike
produces, which makes the following cycles look normal. The tracker freezes
a protective baseline at the pre-spike average when a spike is confirmed,
lets it drift slowly toward organic growth, and releases it once the raw
average has come back down to it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from .average import BoundedAverage


logger = structlog.get_logger(__name__)


class BaselineState(Enum):
    """States of the unskewed baseline."""

    UNSET = "unset"
    FROZEN = "frozen"


@dataclass(frozen=True)
class UnskewedAverageConfig:
    """Parameters controlling when the baseline freezes, drifts and releases.

    Attributes:
        reset_pcnt: Release once the raw average is within this fraction
            above the frozen value
        adjust_pcnt: Interpolation factor used to drift the frozen value
            toward the raw average each cycle
        spikes_required: Consecutive spikes needed before freezing
        jump_required: Multiplier of the previous average that freezes
            immediately, and above which drifting is suspended
        strict_spike_count: Require ``spike_count > spikes_required`` when
            true, ``spike_count >= spikes_required`` otherwise
    """

    reset_pcnt: float = 0.15
    adjust_pcnt: float = 0.0075
    spikes_required: int = 1
    jump_required: float = 4.0
    strict_spike_count: bool = True

    def __post_init__(self) -> None:
        """Validate baseline parameters."""
        if self.reset_pcnt < 0:
            raise ValueError("Reset percentage must be non-negative")
        if not 0.0 <= self.adjust_pcnt <= 1.0:
            raise ValueError("Adjust percentage must be between 0.0 and 1.0")
        if self.spikes_required < 0:
            raise ValueError("Spikes required must be non-negative")
        if self.jump_required < 1.1:
            raise ValueError("Jump required to set must be at least 1.1")


def lerp(start: float, end: float, t: float) -> float:
    return (1.0 - t) * start + t * end


class BaselineTracker:
    """
    Two-state machine holding a feed's unskewed average.

    In the UNSET state the raw moving average is the baseline. In the FROZEN
    state ``value`` holds the protective baseline captured before a spike.
    """

    def __init__(self, config: Optional[UnskewedAverageConfig] = None) -> None:
        self.config = config or UnskewedAverageConfig()
        self.state = BaselineState.UNSET
        self.value: Optional[float] = None

    @property
    def is_frozen(self) -> bool:
        return self.state is BaselineState.FROZEN

    @property
    def unskewed_average(self) -> Optional[float]:
        """The frozen baseline, or None while unset."""
        return self.value if self.is_frozen else None

    def freeze(self, value: float) -> None:
        self.state = BaselineState.FROZEN
        self.value = float(value)

    def release(self) -> None:
        self.state = BaselineState.UNSET
        self.value = None

    def effective(self, average: BoundedAverage) -> float:
        """Return the frozen baseline if set, otherwise the raw average."""
        if self.is_frozen:
            return self.value
        return average.current

    def jump(self, listeners: float, average: BoundedAverage) -> float:
        """Return how far ``listeners`` sits above the effective baseline."""
        return listeners - self.effective(average)

    def maybe_freeze(
        self,
        listeners: float,
        average: BoundedAverage,
        has_spiked: bool,
        spike_count: int,
    ) -> bool:
        """
        Freeze the baseline at the pre-spike average when a spike is confirmed.

        Must be called after the spiking sample was added, so that
        ``average.last`` still holds the average from before it.

        Args:
            listeners: Listener count of the spiking sample
            average: Moving average after the sample was added
            has_spiked: Whether this cycle was classified as a spike
            spike_count: Consecutive spiking cycles including this one

        Returns:
            True if the baseline was frozen
        """
        if self.is_frozen or not has_spiked or average.last <= 0:
            return False

        cfg = self.config

        if cfg.strict_spike_count:
            spiked_enough = spike_count > cfg.spikes_required
        else:
            spiked_enough = spike_count >= cfg.spikes_required

        # Very large jumps freeze on the first cycle without confirmation
        large_jump = listeners > average.last * cfg.jump_required

        if not (spiked_enough or large_jump):
            return False

        self.freeze(average.last)
        logger.debug(
            "Baseline frozen",
            value=self.value,
            listeners=listeners,
            spike_count=spike_count,
            large_jump=large_jump,
        )
        return True

    def maybe_release(self, average: BoundedAverage) -> bool:
        """
        Release the frozen baseline once the raw average has caught back up.

        Returns:
            True if the baseline was released
        """
        if not self.is_frozen:
            return False

        if average.current - self.value >= self.value * self.config.reset_pcnt:
            return False

        logger.debug("Baseline released", value=self.value, average=average.current)
        self.release()
        return True

    def drift(self, listeners: float, average: BoundedAverage) -> bool:
        """
        Nudge the frozen baseline toward the raw average.

        Drift is suspended while listeners are still far above the baseline
        so an active spike cannot pull it upward.

        Returns:
            True if the baseline moved
        """
        if not self.is_frozen:
            return False

        if listeners - self.value >= self.value * self.config.jump_required:
            return False

        self.value = lerp(self.value, average.current, self.config.adjust_pcnt)
        return True

    def update(
        self,
        listeners: float,
        average: BoundedAverage,
        has_spiked: bool,
        spike_count: int,
    ) -> None:
        """Run one cycle of transitions after the sample was added to ``average``."""
        if self.is_frozen:
            if not self.maybe_release(average):
                self.drift(listeners, average)
        else:
            self.maybe_freeze(listeners, average, has_spiked, spike_count)

    def __repr__(self) -> str:
        return f"BaselineTracker(state={self.state.value}, value={self.value})"
