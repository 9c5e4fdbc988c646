"""GA4 realtime snapshot service."""

__version__ = "0.1.0"
