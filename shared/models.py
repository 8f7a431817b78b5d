"""Shared data models for the feed spike monitor.

This module contains the core data structures passed between the feed
source, the statistics core and the display sinks.
"""

from typing import Optional
from dataclasses import dataclass


@dataclass
class FeedSnapshot:
    """Represents one feed as reported by the feed source for a single cycle.

    Snapshots are read-only input to the statistics core. Two snapshots
    describe the same feed when their ids are equal.

    Attributes:
        id: Unique numeric identifier of the feed
        name: Human readable feed name
        listeners: Listener count reported for this cycle
        state_id: Numeric id of the state the feed belongs to
        county: County name, or "Numerous" when a feed covers several
        alert: Optional alert text attached to the feed by the source
    """

    id: int
    name: str
    listeners: int
    state_id: int = 0
    county: str = "Numerous"
    alert: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate feed snapshot data."""
        if self.id < 0:
            raise ValueError("Feed id must be non-negative")
        if self.listeners < 0:
            raise ValueError("Listener count must be non-negative")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeedSnapshot):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def url(self) -> str:
        return f"https://www.broadcastify.com/listen/feed/{self.id}"


@dataclass
class SurfacedFeed:
    """Represents a feed selected for display during an update cycle.

    Attributes:
        feed_id: Id of the surfaced feed
        name: Feed name
        listeners: Listener count for the cycle
        jump: Listeners above the feed's baseline, rounded to an integer
        alert: Optional alert text reported by the feed source
        rank: Position among the surfaced feeds (1 = first shown)
        total: Number of feeds surfaced in the cycle
    """

    feed_id: int
    name: str
    listeners: int
    jump: int
    alert: Optional[str]
    rank: int
    total: int

    def __post_init__(self) -> None:
        """Validate surfaced feed data."""
        if self.rank < 1:
            raise ValueError("Rank must be positive")
        if self.rank > self.total:
            raise ValueError("Rank cannot exceed the total surfaced count")

    @property
    def url(self) -> str:
        return f"https://www.broadcastify.com/listen/feed/{self.feed_id}"

    def to_dict(self) -> dict:
        return {
            "feed_id": self.feed_id,
            "name": self.name,
            "listeners": self.listeners,
            "jump": self.jump,
            "alert": self.alert,
            "rank": self.rank,
            "total": self.total,
            "url": self.url,
        }
