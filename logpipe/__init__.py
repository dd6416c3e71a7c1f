"""
Logpipe - Asynchronous Log Ingestion Pipeline

HTTP ingress publishes raw JSON log records to a durable pgmq queue;
a persistence worker drains the queue into Postgres with manual
acknowledgment, bounded retries and a dead-letter queue.
"""

__version__ = "0.1.0"
