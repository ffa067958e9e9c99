"""Search primitive adapters.

Primary components:
- ``base``: abstract ``TextSearchBackend``/``VectorSearchBackend`` and errors.
- ``pgvector``: PostgreSQL implementation of both primitives.
"""
