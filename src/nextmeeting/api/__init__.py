"""HTTP surface: metrics scrape, manual refresh, OAuth consent, health."""

from nextmeeting.api.app import create_app

__all__ = ["create_app"]
