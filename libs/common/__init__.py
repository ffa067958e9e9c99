"""Common utilities shared by the search service and the drift monitor.

Includes:
- ``config``: Pydantic-based configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``events``: Redis pub/sub event models, publisher, and subscriber.

Import pattern:
- from libs.common.config import SearchConfig
- from libs.common.logging import configure_logging
"""
