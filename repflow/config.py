from __future__ import annotations

import logging
import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CACHE_TTLS, DEFAULT_MODEL, MEMORY_CACHE_SIZE


class RedisConfig(BaseModel):
    """Connection settings shared by the Redis transport and flow store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = "runs"
    redis: RedisConfig = RedisConfig()


class FlowConfig(BaseModel):
    """Where concurrency, debounce and throttle state lives."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    lease_seconds: float = 900.0


class RetryConfig(BaseModel):
    base_seconds: float = 1.0
    max_seconds: float = 10.0
    jitter: float = 0.25


class ModelPriceConfig(BaseModel):
    """USD per million tokens."""

    input: float
    output: float
    cached_input: float = 0.0


class CacheConfig(BaseModel):
    """Response cache settings."""

    memory_capacity: int = MEMORY_CACHE_SIZE
    ttl_seconds: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CACHE_TTLS))
    default_ttl_seconds: int = 3600
    default_model: str = DEFAULT_MODEL
    prices: Dict[str, ModelPriceConfig] = Field(default_factory=dict)


class SchedulerConfig(BaseModel):
    poll_seconds: float = 30.0
    misfire_grace_seconds: float = 300.0
    stale_run_seconds: float = 900.0
    redeliver_seconds: float = 120.0


class WorkerConfig(BaseModel):
    max_in_flight: int = 10


class NotifierConfig(BaseModel):
    """Outbound notification settings; no webhook means log only."""

    webhook_url: Optional[str] = None
    timeout_seconds: float = 10.0


class GenerationConfig(BaseModel):
    """Structured generator; ``model`` is a pydantic-ai model name such as ``openai:gpt-5.2``."""

    model: Optional[str] = None
    instructions: Optional[str] = None
    embedding_url: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_api_key: Optional[str] = None
    timeout_seconds: float = 30.0


class RepflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    flow: FlowConfig = FlowConfig()
    retry: RetryConfig = RetryConfig()
    cache: CacheConfig = CacheConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    worker: WorkerConfig = WorkerConfig()
    notifier: NotifierConfig = NotifierConfig()
    generation: GenerationConfig = GenerationConfig()
    database_url: Optional[str] = None
    store_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> RepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to REPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("REPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RepflowConfig(**data)
    else:
        config = RepflowConfig()

    env_db_url = os.getenv("REPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_store_url = os.getenv("REPFLOW_STORE_URL")
    if env_store_url:
        config.store_url = env_store_url
    env_model = os.getenv("REPFLOW_GENERATOR_MODEL")
    if env_model:
        config.generation.model = env_model
    env_embedding_key = os.getenv("REPFLOW_EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY")
    if env_embedding_key and not config.generation.embedding_api_key:
        config.generation.embedding_api_key = env_embedding_key
    env_log_level = os.getenv("REPFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler for CLI processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
