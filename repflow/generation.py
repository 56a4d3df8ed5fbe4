"""Adapters around the expensive model calls: structured generation and embeddings."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol, Type, TypeVar, Union

import httpx
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.models import Model

logger = logging.getLogger(__name__)

OutputT = TypeVar("OutputT", bound=BaseModel)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class GenerationResult(BaseModel):
    """Structured output plus the accounting needed for caching and billing."""

    output: Any
    usage: TokenUsage = TokenUsage()
    model: str
    duration_ms: int = 0


class Generator(Protocol):
    async def generate(
        self, prompt: str, schema: Type[OutputT], instructions: Optional[str] = None
    ) -> GenerationResult:
        """Produce an instance of ``schema`` for ``prompt``."""


def _usage_from(run_usage: Any) -> TokenUsage:
    # Older pydantic-ai exposes usage() as a method and request/response
    # token names; current releases use a usage attribute with input/output.
    if callable(run_usage):
        run_usage = run_usage()
    input_tokens = getattr(run_usage, "input_tokens", None)
    if input_tokens is None:
        input_tokens = getattr(run_usage, "request_tokens", 0)
    output_tokens = getattr(run_usage, "output_tokens", None)
    if output_tokens is None:
        output_tokens = getattr(run_usage, "response_tokens", 0)
    cached = getattr(run_usage, "cache_read_tokens", 0)
    return TokenUsage(
        input_tokens=input_tokens or 0,
        output_tokens=output_tokens or 0,
        cached_tokens=cached or 0,
    )


class AgentGenerator:
    """Generator backed by one pydantic-ai ``Agent`` per output schema."""

    def __init__(
        self,
        model: Union[str, Model],
        model_name: Optional[str] = None,
        instructions: Optional[str] = None,
    ) -> None:
        self._model = model
        self.model_name = model_name or (
            model.split(":", 1)[-1] if isinstance(model, str) else getattr(model, "model_name", "unknown")
        )
        self._instructions = instructions
        self._agents: Dict[tuple, Agent] = {}

    def _agent(self, schema: Type[OutputT], instructions: Optional[str]) -> Agent:
        key = (schema, instructions)
        agent = self._agents.get(key)
        if agent is None:
            system_prompt = instructions or self._instructions
            agent = Agent(
                self._model,
                output_type=schema,
                system_prompt=system_prompt or (),
            )
            self._agents[key] = agent
        return agent

    async def generate(
        self, prompt: str, schema: Type[OutputT], instructions: Optional[str] = None
    ) -> GenerationResult:
        agent = self._agent(schema, instructions)
        started = time.perf_counter()
        result = await agent.run(prompt)
        duration_ms = int((time.perf_counter() - started) * 1000)
        usage = _usage_from(result.usage)
        logger.info(
            f"Generated {schema.__name__} with {self.model_name} in {duration_ms}ms "
            f"({usage.input_tokens} in / {usage.output_tokens} out)"
        )
        return GenerationResult(
            output=result.output,
            usage=usage,
            model=self.model_name,
            duration_ms=duration_ms,
        )


class Embedder(Protocol):
    async def embed(self, text: str) -> GenerationResult:
        """Vector for ``text`` as ``output`` (a list of floats)."""


class HttpEmbedder:
    """Embeddings from an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        url: str,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.model_name = model
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
            self._client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport, headers=headers
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def embed(self, text: str) -> GenerationResult:
        started = time.perf_counter()
        response = await self._get_client().post(
            self.url, json={"model": self.model_name, "input": text}
        )
        response.raise_for_status()
        body = response.json()
        duration_ms = int((time.perf_counter() - started) * 1000)
        usage = body.get("usage") or {}
        logger.debug(f"Embedded {len(text)} chars with {self.model_name} in {duration_ms}ms")
        return GenerationResult(
            output=body["data"][0]["embedding"],
            usage=TokenUsage(input_tokens=usage.get("prompt_tokens", 0)),
            model=self.model_name,
            duration_ms=duration_ms,
        )
