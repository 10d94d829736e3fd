"""
Tests for EmbeddingClient and the hosted provider adapter.

The local sentence-transformers provider is exercised by the integration
suite; here the provider is the deterministic fake from tests/fakes.py.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from chronos.core.exceptions import EmbeddingError
from chronos.services.processors.embedder import (
    EmbeddingClient,
    OpenAIEmbeddingProvider,
    ProviderResponse,
)
from tests.fakes import FakeEmbeddingProvider


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def client(embedding_provider, sleeper) -> EmbeddingClient:
    return EmbeddingClient(embedding_provider, batch_size=4, max_retries=2, retry_delay_ms=100, sleep=sleeper)


class TestEmbeddingClientConfig:
    """Constructor validation."""

    def test_rejects_bad_batch_size(self, embedding_provider):
        with pytest.raises(ValueError):
            EmbeddingClient(embedding_provider, batch_size=0)

    def test_rejects_negative_retries(self, embedding_provider):
        with pytest.raises(ValueError):
            EmbeddingClient(embedding_provider, max_retries=-1)

    def test_model_comes_from_provider(self, client):
        assert client.model == "fake-embedder"


@pytest.mark.asyncio
class TestBatching:
    """Batch splitting, ordering and accounting."""

    async def test_splits_into_batches(self, client, embedding_provider):
        texts = [f"chunk number {i}" for i in range(10)]

        result = await client.embed(texts)

        assert result.batch_sizes == [4, 4, 2]
        assert result.batch_count == 3
        assert [len(call) for call in embedding_provider.calls] == [4, 4, 2]
        assert result.chunks_processed == 10

    async def test_preserves_input_order(self, client):
        texts = [f"text {i}" for i in range(9)]
        reference = FakeEmbeddingProvider()

        result = await client.embed(texts)

        expected = (await reference.embed_batch(texts)).vectors
        assert result.embeddings == expected

    async def test_tokens_and_cost(self, client):
        result = await client.embed(["one two three", "four five"])
        assert result.total_tokens == 5
        assert result.total_cost_usd == pytest.approx(5 / 1000 * 0.02)
        assert result.as_metadata()["model"] == "fake-embedder"

    async def test_empty_input_list(self, client, embedding_provider):
        result = await client.embed([])
        assert result.embeddings == []
        assert embedding_provider.calls == []

    async def test_rejects_blank_text(self, client, embedding_provider):
        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["fine", "   "])
        assert exc_info.value.kind == "invalid_input"
        assert exc_info.value.retryable is False
        assert embedding_provider.calls == []

    async def test_batch_delay(self, embedding_provider, sleeper):
        client = EmbeddingClient(embedding_provider, batch_size=2, batch_delay_ms=250, sleep=sleeper)
        await client.embed(["a", "b", "c", "d", "e"])
        assert sleeper.delays == [0.25, 0.25]

    async def test_embed_query(self, client):
        vector = await client.embed_query("refund policy")
        assert len(vector) == 8

    async def test_default_batch_size_on_45_chunks(self, embedding_provider, sleeper):
        """45 chunks at batch_size=20 go out as 20, 20 and 5, in input order."""
        client = EmbeddingClient(embedding_provider, batch_size=20, sleep=sleeper)
        texts = [f"chunk {i} of the episode" for i in range(45)]

        result = await client.embed(texts)

        assert [len(call) for call in embedding_provider.calls] == [20, 20, 5]
        assert [text for call in embedding_provider.calls for text in call] == texts
        expected = (await FakeEmbeddingProvider().embed_batch(texts)).vectors
        assert result.embeddings == expected

    async def test_before_batch_runs_before_each_provider_call(self, client, embedding_provider):
        seen = []

        async def before_batch():
            seen.append(len(embedding_provider.calls))

        await client.embed([f"t{i}" for i in range(10)], before_batch=before_batch)

        assert seen == [0, 1, 2]

    async def test_before_batch_error_stops_embedding(self, client, embedding_provider):
        async def before_batch():
            if embedding_provider.calls:
                raise RuntimeError("stop")

        with pytest.raises(RuntimeError):
            await client.embed([f"t{i}" for i in range(10)], before_batch=before_batch)

        assert len(embedding_provider.calls) == 1


@pytest.mark.asyncio
class TestRetries:
    """Bounded retry loop per batch."""

    async def test_retries_transient_failure(self, client, embedding_provider, sleeper):
        embedding_provider.failures = [EmbeddingError("slow down", kind="rate_limit")]

        result = await client.embed(["a", "b"])

        assert result.retry_count == 1
        assert len(result.embeddings) == 2
        assert sleeper.delays == [0.1]

    async def test_exponential_delay(self, client, embedding_provider, sleeper):
        embedding_provider.failures = [
            EmbeddingError("oops", kind="server"),
            EmbeddingError("oops", kind="server"),
        ]
        await client.embed(["a"])
        assert sleeper.delays == [0.1, 0.2]

    async def test_gives_up_after_max_retries(self, client, embedding_provider):
        embedding_provider.failures = [EmbeddingError("down", kind="server")] * 3

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["a"])

        assert exc_info.value.retryable is True
        assert len(embedding_provider.calls) == 3

    async def test_permanent_failure_is_not_retried(self, client, embedding_provider):
        embedding_provider.failures = [EmbeddingError("bad input", kind="invalid_input")]

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["a", "b", "c", "d", "e"])

        assert exc_info.value.retryable is False
        assert len(embedding_provider.calls) == 1

    async def test_only_failing_batch_is_retried(self, client, embedding_provider):
        class SecondBatchFlaky(FakeEmbeddingProvider):
            def __init__(self):
                super().__init__()
                self.failed_once = False

            async def embed_batch(self, texts):
                if texts[0] == "e" and not self.failed_once:
                    self.failed_once = True
                    self.calls.append(list(texts))
                    raise EmbeddingError("blip", kind="timeout")
                return await super().embed_batch(texts)

        provider = SecondBatchFlaky()
        client = EmbeddingClient(provider, batch_size=4, max_retries=1, sleep=RecordingSleep())

        result = await client.embed(["a", "b", "c", "d", "e", "f"])

        assert [call[0] for call in provider.calls] == ["a", "e", "e"]
        assert len(result.embeddings) == 6

    async def test_vector_count_mismatch_is_retryable(self, sleeper):
        class ShortProvider(FakeEmbeddingProvider):
            async def embed_batch(self, texts):
                self.calls.append(list(texts))
                return ProviderResponse(vectors=[[0.1] * 8], tokens=1)

        provider = ShortProvider()
        client = EmbeddingClient(provider, max_retries=1, sleep=sleeper)

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["a", "b"])

        assert exc_info.value.retryable is True
        assert len(provider.calls) == 2

    async def test_request_timeout(self, sleeper):
        class HangingProvider(FakeEmbeddingProvider):
            async def embed_batch(self, texts):
                await asyncio.sleep(5)

        client = EmbeddingClient(HangingProvider(), max_retries=0, request_timeout=0.01, sleep=sleeper)

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["a"])

        assert exc_info.value.kind == "timeout"



class ScriptedVectors(FakeEmbeddingProvider):
    """Returns the same fixed vector for every input."""

    def __init__(self, vector, dimension=3):
        super().__init__(dimension=dimension)
        self.vector = vector

    async def embed_batch(self, texts):
        self.calls.append(list(texts))
        return ProviderResponse(vectors=[list(self.vector) for _ in texts], tokens=len(texts))


@pytest.mark.asyncio
class TestVectorValidation:
    """Provider output is checked before it is reported as a success."""

    async def test_nan_vectors_are_retryable(self, sleeper):
        provider = ScriptedVectors([float("nan"), 0.0, 1.0])
        client = EmbeddingClient(provider, max_retries=1, sleep=sleeper)

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["a", "b"])

        assert exc_info.value.retryable is True
        assert "NaN" in str(exc_info.value)
        assert len(provider.calls) == 2

    async def test_infinite_values_rejected(self, sleeper):
        client = EmbeddingClient(ScriptedVectors([0.0, float("inf"), 1.0]), max_retries=0, sleep=sleeper)

        with pytest.raises(EmbeddingError):
            await client.embed(["a"])

    async def test_wrong_dimension_is_permanent(self, sleeper):
        provider = ScriptedVectors([0.1, 0.2], dimension=3)
        client = EmbeddingClient(provider, max_retries=2, sleep=sleeper)

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["a"])

        assert exc_info.value.retryable is False
        assert len(provider.calls) == 1
        assert sleeper.delays == []

    async def test_recovers_when_retry_returns_finite_vectors(self, sleeper):
        class NanOnce(ScriptedVectors):
            async def embed_batch(self, texts):
                response = await super().embed_batch(texts)
                if len(self.calls) == 1:
                    response.vectors[0][0] = float("nan")
                return response

        client = EmbeddingClient(NanOnce([0.5, 0.5, 0.5]), max_retries=1, sleep=sleeper)

        result = await client.embed(["a"])

        assert result.embeddings == [[0.5, 0.5, 0.5]]
        assert result.retry_count == 1


def _openai_response(vectors, tokens=7):
    return SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=v) for i, v in vectors],
        usage=SimpleNamespace(total_tokens=tokens),
    )


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.example.test/v1/embeddings")


@pytest.mark.asyncio
class TestOpenAIProvider:
    """Error taxonomy and response handling."""

    def _provider(self, create: AsyncMock) -> OpenAIEmbeddingProvider:
        client = MagicMock()
        client.embeddings.create = create
        return OpenAIEmbeddingProvider(client, model="text-embedding-3-small", dimension=3, cost_per_1k_tokens=0.02)

    async def test_sorts_by_index(self):
        create = AsyncMock(return_value=_openai_response([(1, [0.0, 1.0, 0.0]), (0, [1.0, 0.0, 0.0])]))
        provider = self._provider(create)

        response = await provider.embed_batch(["first", "second"])

        assert response.vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        assert response.tokens == 7
        create.assert_awaited_once_with(input=["first", "second"], model="text-embedding-3-small")

    async def test_dimension_mismatch(self):
        provider = self._provider(AsyncMock(return_value=_openai_response([(0, [1.0, 0.0])])))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_batch(["x"])
        assert exc_info.value.kind == "invalid_input"

    async def test_rate_limit_is_retryable(self):
        error = openai.RateLimitError(
            "too many requests",
            response=httpx.Response(429, request=_request()),
            body=None,
        )
        provider = self._provider(AsyncMock(side_effect=error))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_batch(["x"])
        assert exc_info.value.kind == "rate_limit"
        assert exc_info.value.retryable is True

    async def test_timeout_is_retryable(self):
        provider = self._provider(AsyncMock(side_effect=openai.APITimeoutError(request=_request())))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_batch(["x"])
        assert exc_info.value.kind == "timeout"

    async def test_bad_request_is_permanent(self):
        error = openai.BadRequestError(
            "input too long",
            response=httpx.Response(400, request=_request()),
            body=None,
        )
        provider = self._provider(AsyncMock(side_effect=error))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_batch(["x"])
        assert exc_info.value.retryable is False

    async def test_server_error_is_retryable(self):
        error = openai.InternalServerError(
            "upstream failure",
            response=httpx.Response(502, request=_request()),
            body=None,
        )
        provider = self._provider(AsyncMock(side_effect=error))
        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed_batch(["x"])
        assert exc_info.value.kind == "server"
        assert exc_info.value.retryable is True
