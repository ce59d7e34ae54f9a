"""Next-meeting exporter: Prometheus gauges for upcoming Google Calendar events."""

__version__ = "0.1.0"
