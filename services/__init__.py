"""Services of the feed spike monitor."""
