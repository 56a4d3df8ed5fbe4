"""Tests for configuration loading."""

from repflow.config import load_config
from repflow.flow import InMemoryFlowStore, RedisFlowStore, get_flow_store
from repflow.generation import HttpEmbedder
from repflow.runtime import build_services
from repflow.transports import get_transport
from repflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
retry:
  base_seconds: 2
cache:
  ttl_seconds:
    workout_plan: 60
"""
    )
    monkeypatch.setenv("REPFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.retry.base_seconds == 2
    assert config.retry.max_seconds == 10
    assert config.cache.ttl_seconds == {"workout_plan": 60}


def test_defaults_without_config_file():
    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.cache.ttl_seconds["member_context"] == 30


def test_env_overrides_win(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/runs.db")
    monkeypatch.setenv("REPFLOW_STORE_URL", "sqlite:///tmp/store.db")
    monkeypatch.setenv("REPFLOW_GENERATOR_MODEL", "test")
    config = load_config()
    assert config.database_url == "sqlite:///tmp/runs.db"
    assert config.store_url == "sqlite:///tmp/store.db"
    assert config.generation.model == "test"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("REPFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_flow_store_backends(monkeypatch):
    assert isinstance(get_flow_store(), InMemoryFlowStore)
    monkeypatch.setenv("REPFLOW_FLOW_BACKEND", "redis")
    assert isinstance(get_flow_store(), RedisFlowStore)


def test_embedder_follows_generation_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    config = load_config(str(tmp_path / "missing.yaml"))
    assert build_services(config).embedder is None

    config.generation.embedding_url = "https://models.test/v1/embeddings"
    embedder = build_services(config).embedder
    assert isinstance(embedder, HttpEmbedder)
    assert embedder.model_name == "text-embedding-3-small"
    assert config.generation.embedding_api_key == "sk-env"
