"""Delivery of run wake-ups from the router to workers.

A wake-up only names a run; the ledger holds its state. Delivery is
at-least-once: a message can arrive after its run finished, or twice for
the same run, and the executor treats both as no-ops. Anything a backend
loses is republished by the scheduler's redelivery sweep.
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import RunMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Per-topic queue of :class:`RunMessage` wake-ups.

    ``RawMessageT`` is the backend handle a worker passes back to
    :meth:`ack` or :meth:`nack` to settle a delivery.
    """

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    @abc.abstractmethod
    async def publish(self, topic: str, message: RunMessage) -> None:
        """Enqueue a wake-up for ``message.run_id``."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, RunMessage]]:
        """Yield deliveries in publish order until ``lifespan`` seconds pass.

        Runs forever when ``lifespan`` is None. A delivery that is never
        settled may be handed out again after a restart.
        """

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Settle a delivery whose run was executed, whatever the outcome."""

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Settle a delivery the worker crashed on.

        Backends that cannot requeue drop the message; the run is still
        queued in the ledger and gets redelivered.
        """

    @abc.abstractmethod
    async def depth(self, topic: str) -> int:
        """Wake-ups waiting on ``topic`` and not yet handed to a worker."""
