"""Retrieval helpers used before ranking.

Contents
- ``cache_manager``: Redis-backed cache of fused search results
- ``embedding``: HTTP client for the embedding function
"""
