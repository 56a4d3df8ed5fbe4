"""Generator adapter over pydantic-ai."""

import json

import httpx
import pytest
from pydantic import BaseModel
from pydantic_ai.models.test import TestModel

from repflow.generation import AgentGenerator, GenerationResult, HttpEmbedder, TokenUsage, _usage_from


class Tip(BaseModel):
    title: str
    reps: int


@pytest.mark.asyncio
async def test_agent_generator_returns_structured_output_and_usage():
    generator = AgentGenerator(TestModel(), model_name="test")
    result = await generator.generate("Suggest a squat tip", Tip)

    assert isinstance(result, GenerationResult)
    assert isinstance(result.output, Tip)
    assert result.model == "test"
    assert result.usage.input_tokens > 0
    assert result.duration_ms >= 0


def test_model_name_from_provider_string():
    generator = AgentGenerator("openai:gpt-5.2")
    assert generator.model_name == "gpt-5.2"


@pytest.mark.asyncio
async def test_agent_is_reused_per_schema():
    generator = AgentGenerator(TestModel(), model_name="test")
    await generator.generate("a", Tip)
    await generator.generate("b", Tip)
    assert len(generator._agents) == 1


class _CurrentUsage:
    input_tokens = 120
    output_tokens = 40
    cache_read_tokens = 20


class _LegacyUsage:
    request_tokens = 90
    response_tokens = 30


def test_usage_read_from_attribute_or_method():
    assert _usage_from(_CurrentUsage()) == TokenUsage(input_tokens=120, output_tokens=40, cached_tokens=20)
    assert _usage_from(lambda: _LegacyUsage()) == TokenUsage(input_tokens=90, output_tokens=30)


@pytest.mark.asyncio
async def test_http_embedder_posts_text_and_reads_vector():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={"data": [{"embedding": [0.1, 0.2, 0.3]}], "usage": {"prompt_tokens": 7, "total_tokens": 7}},
        )

    embedder = HttpEmbedder(
        "https://models.test/v1/embeddings", api_key="sk-test", transport=httpx.MockTransport(handler)
    )
    result = await embedder.embed("Member Profile: Sam")
    await embedder.close()

    assert result.output == [0.1, 0.2, 0.3]
    assert result.usage == TokenUsage(input_tokens=7)
    assert result.model == "text-embedding-3-small"
    [request] = seen
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {"model": "text-embedding-3-small", "input": "Member Profile: Sam"}
