"""Shared modules for the feed spike monitor."""

from .models import FeedSnapshot, SurfacedFeed

__all__ = ["FeedSnapshot", "SurfacedFeed"]
