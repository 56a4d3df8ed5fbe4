"""Wiring of registry, ledger, flow control, transport, executor and scheduler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from .cache import ModelPrice, PriceTable, ResponseCache
from .config import RepflowConfig, load_config
from .contracts import RunOutcome, RunRecord, WorkflowDefinition
from .db import Database
from .dispatch import EventRouter
from .errors import ErrorSink, UnknownEventError
from .events import CronTick, EventRegistry, cron_event_name, default_event_registry
from .execute import RunWorker, StepExecutor
from .flow import FlowController, FlowStore, get_flow_store
from .generation import AgentGenerator, Embedder, Generator, HttpEmbedder
from .notify import LogNotifier, Notifier, WebhookNotifier
from .persistence import WorkflowRepository, get_repository
from .quota import QuotaService
from .registry import WorkflowRegistry
from .scheduler import CronScheduler
from .transports import BaseTransport, get_transport
from .usage import UsageTracker
from .utils.clock import Clock, SystemClock
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators handed to step bodies as ``ctx.services``."""

    db: Optional[Database] = None
    cache: Optional[ResponseCache] = None
    generator: Optional[Generator] = None
    embedder: Optional[Embedder] = None
    notifier: Notifier = field(default_factory=LogNotifier)
    usage: Optional[UsageTracker] = None
    quotas: Optional[QuotaService] = None
    clock: Clock = field(default_factory=SystemClock)
    config: RepflowConfig = field(default_factory=RepflowConfig)

    def require_db(self) -> Database:
        if self.db is None:
            raise RuntimeError("No row store configured (set store_url or REPFLOW_STORE_URL)")
        return self.db

    def require_generator(self) -> Generator:
        if self.generator is None:
            raise RuntimeError("No generator configured (set generation.model)")
        return self.generator

    def require_embedder(self) -> Embedder:
        if self.embedder is None:
            raise RuntimeError("No embedder configured (set generation.embedding_url)")
        return self.embedder


def price_table(config: RepflowConfig) -> PriceTable:
    prices = {
        name: ModelPrice(**price.model_dump()) for name, price in config.cache.prices.items()
    }
    return PriceTable(prices, default_model=config.cache.default_model)


def build_services(
    config: RepflowConfig,
    db: Optional[Database] = None,
    generator: Optional[Generator] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
    embedder: Optional[Embedder] = None,
) -> Services:
    """Create the services described by ``config``; explicit arguments win."""
    clock = clock or SystemClock()
    if db is None and config.store_url:
        db = Database(config.store_url)
    prices = price_table(config)
    cache = ResponseCache(
        store=db,
        capacity=config.cache.memory_capacity,
        ttl_seconds=config.cache.ttl_seconds,
        default_ttl=config.cache.default_ttl_seconds,
        prices=prices,
        clock=clock,
    )
    if generator is None and config.generation.model:
        generator = AgentGenerator(config.generation.model, instructions=config.generation.instructions)
    if embedder is None and config.generation.embedding_url:
        embedder = HttpEmbedder(
            config.generation.embedding_url,
            model=config.generation.embedding_model,
            api_key=config.generation.embedding_api_key,
            timeout=config.generation.timeout_seconds,
        )
    if notifier is None:
        if config.notifier.webhook_url:
            notifier = WebhookNotifier(config.notifier.webhook_url, timeout=config.notifier.timeout_seconds)
        else:
            notifier = LogNotifier()
    return Services(
        db=db,
        cache=cache,
        generator=generator,
        embedder=embedder,
        notifier=notifier,
        usage=UsageTracker(db, prices, clock) if db is not None else None,
        quotas=QuotaService(db, clock) if db is not None else None,
        clock=clock,
        config=config,
    )


class Orchestrator:
    """One process's view of the workflow platform."""

    def __init__(
        self,
        workflows: Union[WorkflowRegistry, Iterable[WorkflowDefinition]],
        *,
        config: Optional[RepflowConfig] = None,
        events: Optional[EventRegistry] = None,
        repository: Optional[WorkflowRepository] = None,
        flow_store: Optional[FlowStore] = None,
        transport: Optional[BaseTransport] = None,
        services: Optional[Services] = None,
        clock: Optional[Clock] = None,
        error_sink: Optional[ErrorSink] = None,
    ) -> None:
        self.config = config or load_config()
        self.clock = clock or (services.clock if services else SystemClock())
        self.workflows = workflows if isinstance(workflows, WorkflowRegistry) else WorkflowRegistry(workflows)
        self.events = events or default_event_registry()
        self._check_events()
        self.workflows.freeze()

        self.services = services or build_services(self.config, clock=self.clock)
        self.repository = repository or get_repository(config=self.config)
        self.flow = FlowController(
            flow_store or get_flow_store(config=self.config),
            self.clock,
            self.config.flow.lease_seconds,
        )
        self.transport = transport or get_transport(config=self.config)
        topic = self.config.transport.topic
        self.router = EventRouter(
            self.workflows, self.events, self.repository, self.flow, self.transport, topic, self.clock
        )
        retry = self.config.retry
        self.executor = StepExecutor(
            self.workflows,
            self.repository,
            self.router,
            self.flow,
            RetryPolicy(retry.base_seconds, retry.max_seconds, retry.jitter),
            services=self.services,
            error_sink=error_sink,
            clock=self.clock,
        )
        self.worker = RunWorker(
            self.transport, self.executor, topic, self.config.worker.max_in_flight
        )
        self.scheduler = CronScheduler(
            self.workflows, self.repository, self.router, self.clock, self.config.scheduler
        )

    def _check_events(self) -> None:
        for defn in self.workflows:
            if defn.cron is not None:
                self.events.register(cron_event_name(defn.id), CronTick)
            elif defn.event_name not in self.events:
                raise UnknownEventError(defn.event_name)

    async def send(
        self, name: str, data: Optional[Dict[str, Any]] = None, id: Optional[str] = None
    ) -> List[RunRecord]:
        return await self.router.send(name, data, id=id)

    async def tick(self, now: Optional[datetime] = None) -> List[RunRecord]:
        return await self.scheduler.tick(now)

    async def run_until_idle(self, max_rounds: int = 1000) -> List[RunOutcome]:
        return await self.worker.run_until_idle(max_rounds)

    async def execute(self, run_id: str) -> RunOutcome:
        return await self.executor.execute(run_id)

    async def start(self, lifespan: Optional[float] = None, schedule: bool = True) -> None:
        """Run the worker (and the scheduler loop) until ``lifespan`` elapses."""
        if self.services.db is not None:
            await self.services.db.init_db()
        await self.transport.connect()
        try:
            tasks = [self.worker.start(lifespan=lifespan)]
            if schedule:
                tasks.append(self.scheduler.start(lifespan=lifespan))
            await asyncio.gather(*tasks)
        finally:
            await self.close()

    async def close(self) -> None:
        self.scheduler.stop()
        if self.services.cache is not None:
            await self.services.cache.flush()
        await self.flow.store.close()
        await self.transport.disconnect()
        for client in (self.services.notifier, self.services.embedder):
            client_close = getattr(client, "close", None)
            if client_close is not None:
                await client_close()
        if self.services.db is not None:
            await self.services.db.close()


def build_orchestrator(
    config: Optional[RepflowConfig] = None,
    workflows: Optional[Iterable[WorkflowDefinition]] = None,
    **kwargs: Any,
) -> Orchestrator:
    """Orchestrator for the platform's own workflows, configured from ``config``."""
    from .workflows import default_workflows

    return Orchestrator(
        workflows if workflows is not None else default_workflows(),
        config=config or load_config(),
        **kwargs,
    )
