"""Hybrid search components for vector + lexical ranking.

Includes the ``SearchManager`` which runs vector similarity (semantic) and
full-text (lexical) search concurrently and merges their results.
"""
