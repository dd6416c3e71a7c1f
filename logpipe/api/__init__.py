"""
Logpipe - Ingress API

POST /log hands records to the durable queue; GET /health reports whether
the broker is reachable.
"""

from .app import create_app

__all__ = ["create_app"]
