"""Tests for the retrieval engine.

External services (PostgreSQL, Redis, the embedding and evaluator services)
are replaced by the in-memory doubles in ``conftest.py``.
"""
