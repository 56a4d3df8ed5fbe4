"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RepflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport
from .redis import RedisTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[RepflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("REPFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "RedisTransport", "get_transport"]
