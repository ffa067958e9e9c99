"""Search service package.

Layout:
- ``api``: HTTP endpoints for search, scoring, cache and drift operations.
- ``hybrid``: lexical + vector search orchestration.
- ``ranking``: fusion, blend weight selection, confidence and calibration.
- ``retrievers``: result cache and embedding client.
- ``runtime``: service-local metrics and the persisted blend weight.
"""
