"""
API module for DataHub server.

This module provides the external HTTP interface. Every request is served
by the CompositeStore of the deepest corpus covering the request path.

Invariants:
    - All operations carry an acting user from the identity headers
    - Writes reach the object store before any search index

How to change safely:
    - Add routes as special filenames, don't repurpose existing ones
"""

from .http_server import create_http_app, run_http_server

__all__ = [
    "create_http_app",
    "run_http_server",
]
