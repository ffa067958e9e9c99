"""Persisted default blend weight.

The process-wide default alpha is a single versioned value in Redis:
``{"value": 0.5, "version": 3}`` under one key (``retrieval:alpha`` by
default). Readers call ``get``; the drift monitor is the only writer and uses
``compare_and_set`` so concurrent writers cannot overwrite each other
silently.

Usage
- ``state = await store.get()``
- ``ok = await store.compare_and_set(state.version, 0.55)``
"""

import json
from dataclasses import dataclass
from typing import Optional, Union

import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError

logger = structlog.get_logger("alpha_store")

DEFAULT_ALPHA_KEY = "retrieval:alpha"
DEFAULT_ALPHA = 0.5


@dataclass(frozen=True)
class AlphaState:
    value: float
    version: int


class AlphaStore:
    """Versioned accessor for the default blend weight."""

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str = DEFAULT_ALPHA_KEY,
        default: float = DEFAULT_ALPHA
    ):
        self.redis_client = redis_client
        self.key = key
        self.default = default

    def _decode(self, raw: Optional[Union[str, bytes]]) -> AlphaState:
        if raw is None:
            return AlphaState(value=self.default, version=0)
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        # A bare number is an unversioned value written by an older deployment
        if isinstance(data, (int, float)):
            return AlphaState(value=float(data), version=0)
        return AlphaState(value=float(data["value"]), version=int(data["version"]))

    async def get(self) -> AlphaState:
        """Read the current value; a missing key yields the default at version 0."""
        return self._decode(await self.redis_client.get(self.key))

    async def compare_and_set(self, expected_version: int, value: float) -> bool:
        """Write ``value`` if the stored version still equals ``expected_version``.

        Returns ``False`` when another writer got there first.
        """
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {value}")

        async with self.redis_client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                current = self._decode(await pipe.get(self.key))
                if current.version != expected_version:
                    await pipe.unwatch()
                    logger.warning(
                        "Alpha version mismatch",
                        expected_version=expected_version,
                        current_version=current.version
                    )
                    return False

                new_state = AlphaState(value=value, version=current.version + 1)
                pipe.multi()
                pipe.set(self.key, json.dumps({"value": new_state.value, "version": new_state.version}))
                await pipe.execute()
            except WatchError:
                logger.warning("Alpha modified concurrently", expected_version=expected_version)
                return False

        logger.info("Default alpha updated", alpha=value, version=expected_version + 1)
        return True
