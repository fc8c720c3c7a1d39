"""Agent Pipeline Engine: ordered agent workflows with retries, fallbacks and monitoring."""

__version__ = "1.0.0"
