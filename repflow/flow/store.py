"""Shared state behind concurrency limits, debounce and throttle."""

from __future__ import annotations

import abc
import asyncio
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Set

from pydantic import BaseModel

from ..contracts import Event


class DebouncedEvent(BaseModel):
    """The latest event held back for one workflow/key pair."""

    workflow_id: str
    scope: str
    event: Event
    due_at: datetime


class FlowStore(metaclass=abc.ABCMeta):
    """Counter and queue primitives; each call must be atomic."""

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def throttle_hit(self, scope: str, limit: int, period: float, now: datetime, member: str) -> bool:
        """Record an admission in a rolling window unless ``limit`` is reached."""
        raise NotImplementedError

    @abc.abstractmethod
    async def debounce_put(self, pending: DebouncedEvent) -> None:
        """Replace the pending event for ``pending.scope`` and restart its timer."""
        raise NotImplementedError

    @abc.abstractmethod
    async def debounce_pop_due(self, now: datetime) -> List[DebouncedEvent]:
        """Remove and return every pending event whose quiet period has passed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def acquire(self, scope: str, run_id: str, limit: int, now: datetime, lease: float) -> bool:
        """Take a slot for ``run_id`` or append it to the FIFO waiting list."""
        raise NotImplementedError

    @abc.abstractmethod
    async def release(self, scope: str, run_id: str, limit: int) -> str | None:
        """Free ``run_id``'s slot and return the next waiting run, if it can start."""
        raise NotImplementedError


class InMemoryFlowStore(FlowStore):
    """Process-local flow state for tests and single-worker deployments."""

    def __init__(self) -> None:
        self._windows: Dict[str, Deque[float]] = {}
        self._pending: Dict[str, DebouncedEvent] = {}
        self._active: Dict[str, Dict[str, float]] = {}
        self._waiting: Dict[str, Deque[str]] = {}
        self._lock = asyncio.Lock()

    async def throttle_hit(self, scope: str, limit: int, period: float, now: datetime, member: str) -> bool:
        ts = now.timestamp()
        async with self._lock:
            window = self._windows.setdefault(scope, deque())
            while window and window[0] <= ts - period:
                window.popleft()
            if len(window) >= limit:
                return False
            window.append(ts)
            return True

    async def debounce_put(self, pending: DebouncedEvent) -> None:
        async with self._lock:
            self._pending[pending.scope] = pending

    async def debounce_pop_due(self, now: datetime) -> List[DebouncedEvent]:
        async with self._lock:
            due = [p for p in self._pending.values() if p.due_at <= now]
            for item in due:
                del self._pending[item.scope]
        return sorted(due, key=lambda p: p.due_at)

    async def acquire(self, scope: str, run_id: str, limit: int, now: datetime, lease: float) -> bool:
        ts = now.timestamp()
        async with self._lock:
            active = self._active.setdefault(scope, {})
            waiting = self._waiting.setdefault(scope, deque())
            for expired in [r for r, until in active.items() if until <= ts]:
                del active[expired]
            if run_id in active:
                active[run_id] = ts + lease
                return True
            head = waiting[0] if waiting else None
            if len(active) < limit and (head is None or head == run_id):
                if head is not None:
                    waiting.popleft()
                active[run_id] = ts + lease
                return True
            if run_id not in waiting:
                waiting.append(run_id)
            return False

    async def release(self, scope: str, run_id: str, limit: int) -> str | None:
        async with self._lock:
            active = self._active.setdefault(scope, {})
            waiting = self._waiting.setdefault(scope, deque())
            active.pop(run_id, None)
            if run_id in waiting:
                waiting.remove(run_id)
            if waiting and len(active) < limit:
                return waiting[0]
            return None

    def active_runs(self, scope: str) -> Set[str]:
        return set(self._active.get(scope, {}))

    def waiting_runs(self, scope: str) -> List[str]:
        return list(self._waiting.get(scope, ()))
