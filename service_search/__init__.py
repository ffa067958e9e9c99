"""Hybrid retrieval service."""
