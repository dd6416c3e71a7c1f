"""Logpipe - Relational sink."""

from .client import SinkClient

__all__ = ["SinkClient"]
