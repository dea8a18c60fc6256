"""Utility modules for logging, request tracing, and common helpers."""

from crmsync.utils.logging import LogThrottle, configure_logging, get_logger

__all__ = ["configure_logging", "get_logger", "LogThrottle"]
