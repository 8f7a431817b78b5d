"""Bounded moving average over the most recent listener samples."""

from typing import List


SAMPLE_SIZE = 5


class BoundedAverage:
    """
    Fixed-capacity ring buffer of raw samples with a running mean.

    The mean only covers slots that have actually been written, so a
    partially filled buffer is not dragged toward zero by empty slots.

    Attributes:
        current: Mean of the populated samples after the latest insertion
        last: Value of ``current`` immediately before the latest insertion
        samples: Ring buffer storage
    """

    def __init__(self, sample_size: int = SAMPLE_SIZE) -> None:
        if sample_size < 1:
            raise ValueError("Sample size must be at least 1")

        self.current: float = 0.0
        self.last: float = 0.0
        self.samples: List[int] = [0] * sample_size
        self.write_index = 0
        self.populated_count = 0

    @classmethod
    def with_seed(cls, value: float, sample_size: int = SAMPLE_SIZE) -> "BoundedAverage":
        """
        Create an average whose current value is seeded without a sample.

        Used when a feed is first seen and a historical baseline exists. The
        seed acts as the baseline for the first classification and becomes
        ``last`` once the first real sample is added.
        """
        average = cls(sample_size)
        average.current = float(value)
        return average

    @property
    def capacity(self) -> int:
        return len(self.samples)

    def add_sample(self, value: int) -> None:
        """Insert a sample, evicting the oldest one once the buffer is full."""
        self.samples[self.write_index] = int(value)
        self.write_index = (self.write_index + 1) % self.capacity

        if self.populated_count < self.capacity:
            self.populated_count += 1

        self.last = self.current
        self.current = self._mean()

    def _mean(self) -> float:
        # Slots are filled in index order, so the populated ones are always
        # the first populated_count slots until the buffer wraps.
        return sum(self.samples[:self.populated_count]) / self.populated_count

    def __repr__(self) -> str:
        return (
            f"BoundedAverage(current={self.current:.2f}, last={self.last:.2f}, "
            f"samples={self.samples[:self.populated_count]})"
        )
