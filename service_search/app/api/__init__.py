"""API subpackage for the search service.

Routers expose endpoints for hybrid search, confidence scoring, calibration,
cache invalidation and drift cycles. The transport layer remains thin and
delegates to ``SearchManager`` and ``DriftMonitor``.
"""
