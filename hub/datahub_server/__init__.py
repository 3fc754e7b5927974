"""
DataHub Server - Hierarchical JSON object store with search and standing queries.

This package implements a document store built on:
- Paths ("/a/b/__7__") as the identity of every JSON document
- A keyed entity store holding documents, ACLs and field schemas
- Full-text search corpora mirroring the documents under their root path
- Persistent queries matched against every indexed write

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│    HTTP     │────▶│ CompositeStore  │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                             ┌───────────────────────┴──────┐
                             ▼                              ▼
                    ┌──────────────────┐          ┌──────────────────┐
                    │SecureObjectStore │          │   SearchIndex    │
                    │ (ACL + objects)  │          │ (corpus cascade) │
                    └────────┬─────────┘          └────┬────────┬────┘
                             ▼                         ▼        ▼
                    ┌──────────────────┐     ┌──────────┐  ┌──────────┐
                    │   Keyed store    │     │  Search  │  │  Match   │
                    │    (SQLite)      │     │ (FTS5)   │  │ (FTS5)   │
                    └──────────────────┘     └──────────┘  └──────────┘

Invariants:
    - The keyed store is authoritative, search indexes are derived
    - Every operation runs on behalf of a User
    - Path encodings (key chain, doc-id) are persisted and never change

How to change safely:
    - Keep the doc-id substitution table stable
    - Add backends behind the protocols in backends/base.py
"""

from ._version import __version__

__all__ = ["__version__"]
