"""Concurrency, debounce and throttle control."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RepflowConfig, load_config
from .controller import Admission, FlowController
from .redis import RedisFlowStore
from .store import DebouncedEvent, FlowStore, InMemoryFlowStore


def get_flow_store(
    backend: Optional[str] = None, config: Optional[RepflowConfig] = None
) -> FlowStore:
    """Factory function to get the configured flow store."""

    config = config or load_config()
    backend = (backend or os.getenv("REPFLOW_FLOW_BACKEND") or config.flow.backend).lower()

    if backend == "inmemory":
        return InMemoryFlowStore()
    elif backend == "redis":
        redis_conf = config.flow.redis
        return RedisFlowStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported flow backend: {backend}")


__all__ = [
    "Admission",
    "DebouncedEvent",
    "FlowController",
    "FlowStore",
    "InMemoryFlowStore",
    "RedisFlowStore",
    "get_flow_store",
]
