"""
Logpipe - Workers

PersistenceWorker moves records from the queue into the sink.
"""

from .persistence import MessageOutcome, PersistenceWorker

__all__ = ["MessageOutcome", "PersistenceWorker"]
