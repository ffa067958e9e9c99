"""Shared libraries for the retrieval engine.

Subpackages:
- ``libs.common``: configuration, logging, metrics, and events.
- ``libs.vector_store``: search primitive contracts and the PostgreSQL backend.

Notes:
- Avoid engine-specific logic; keep modules cohesive and broadly useful.
"""
