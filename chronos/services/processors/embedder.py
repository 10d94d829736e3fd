"""
Embedding Service

Batches chunk text into embedding-provider calls and returns one vector per
input, in input order, together with token usage and cost.

Providers:
----------
- SentenceTransformerProvider: local sentence-transformers model. Free;
  token usage is counted with tiktoken so usage metrics stay comparable.
- OpenAIEmbeddingProvider: hosted OpenAI-compatible endpoint. Token usage is
  taken from the provider's response.

Both raise EmbeddingError with a kind from the provider error taxonomy:
rate_limit, timeout, server (transient) and invalid_input, auth (permanent).

Retry Model:
------------
Each batch runs through an explicit bounded loop. One attempt yields a typed
BatchAttempt (SUCCESS / RETRYABLE / PERMANENT). RETRYABLE attempts are
retried up to max_retries times with exponential delay
(retry_delay_ms * 2**attempt); only the failing batch is retried. A
PERMANENT attempt or an exhausted batch fails the whole embed() call; no
partial result is ever returned.
"""

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import numpy as np
import openai
import tiktoken
import torch
from openai import AsyncOpenAI
from sentence_transformers import SentenceTransformer

from chronos.core.config import Settings, settings as default_settings
from chronos.core.exceptions import EmbeddingError
from chronos.core.logging import get_logger

logger = get_logger(__name__)


# ========================================
# Provider interface
# ========================================

@dataclass
class ProviderResponse:
    vectors: list[list[float]]
    tokens: int


class EmbeddingProvider(Protocol):
    """Request/response contract every embedding backend implements."""

    model: str
    dimension: int
    cost_per_1k_tokens: float

    async def embed_batch(self, texts: Sequence[str]) -> ProviderResponse:
        ...


# ========================================
# Local provider (sentence-transformers)
# ========================================

class SentenceTransformerProvider:
    """
    Local embedding model via sentence-transformers.

    Usage:
    ------
    provider = SentenceTransformerProvider()
    await provider.initialize()
    response = await provider.embed_batch(["What is a refund policy?"])
    """

    cost_per_1k_tokens = 0.0

    def __init__(
        self,
        model_name: Optional[str] = None,
        device: Optional[str] = None,
        dimension: Optional[int] = None,
        normalize: bool = True,
    ):
        self.model = model_name or default_settings.EMBEDDING_MODEL
        self.device = device or default_settings.EMBEDDING_DEVICE
        self.dimension = dimension or default_settings.EMBEDDING_DIMENSION
        self.normalize = normalize

        self._model: Optional[SentenceTransformer] = None
        self._encoding = None

        self._validate_device()

    def _validate_device(self) -> None:
        """Validate and adjust device setting based on availability."""
        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("cuda_unavailable_falling_back_to_cpu")
            self.device = "cpu"
        elif self.device == "mps" and not torch.backends.mps.is_available():
            logger.warning("mps_unavailable_falling_back_to_cpu")
            self.device = "cpu"

    @property
    def initialized(self) -> bool:
        return self._model is not None

    async def initialize(self) -> None:
        """
        Load the model (downloads it on first use).

        Raises:
            ValueError: model dimension does not match EMBEDDING_DIMENSION
        """
        if self._model is not None:
            return

        logger.info("loading_embedding_model", model=self.model, device=self.device)

        # CPU-bound; keep the event loop free
        model = await asyncio.to_thread(SentenceTransformer, self.model, device=self.device)

        actual = model.get_sentence_embedding_dimension()
        if actual != self.dimension:
            raise ValueError(
                f"Model {self.model} produces {actual}-dim vectors, "
                f"EMBEDDING_DIMENSION is {self.dimension}"
            )

        self._model = model
        self._encoding = tiktoken.get_encoding("cl100k_base")
        logger.info("embedding_model_loaded", model=self.model, dimension=actual)

    async def embed_batch(self, texts: Sequence[str]) -> ProviderResponse:
        if self._model is None:
            await self.initialize()

        try:
            embeddings = await asyncio.to_thread(self._encode, list(texts))
        except (ValueError, TypeError) as e:
            raise EmbeddingError(f"Model rejected input: {e}", kind="invalid_input") from e
        except RuntimeError as e:
            # Device errors (CUDA OOM and friends) can clear up
            raise EmbeddingError(f"Model runtime error: {e}", kind="server") from e

        tokens = sum(len(self._encoding.encode(t)) for t in texts)
        return ProviderResponse(vectors=embeddings.tolist(), tokens=tokens)

    def _encode(self, texts: list[str]) -> np.ndarray:
        return self._model.encode(
            texts,
            batch_size=len(texts),
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
            convert_to_numpy=True,
        )

    async def shutdown(self) -> None:
        """Free the model (and the CUDA cache when on GPU)."""
        if self._model is not None:
            if self.device == "cuda":
                torch.cuda.empty_cache()
            self._model = None
        logger.info("embedding_provider_shut_down", model=self.model)


# ========================================
# Hosted provider (OpenAI-compatible)
# ========================================

class OpenAIEmbeddingProvider:
    """Embeddings through an OpenAI-compatible API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        dimension: int,
        cost_per_1k_tokens: float,
    ):
        self.client = client
        self.model = model
        self.dimension = dimension
        self.cost_per_1k_tokens = cost_per_1k_tokens

    async def embed_batch(self, texts: Sequence[str]) -> ProviderResponse:
        try:
            response = await self.client.embeddings.create(input=list(texts), model=self.model)
        except openai.RateLimitError as e:
            raise EmbeddingError(f"Rate limited: {e}", kind="rate_limit") from e
        except openai.APITimeoutError as e:
            raise EmbeddingError(f"Request timed out: {e}", kind="timeout") from e
        except openai.APIConnectionError as e:
            raise EmbeddingError(f"Connection error: {e}", kind="server") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise EmbeddingError(f"Provider rejected credentials: {e}", kind="auth", retryable=False) from e
        except (openai.BadRequestError, openai.UnprocessableEntityError) as e:
            raise EmbeddingError(f"Invalid input: {e}", kind="invalid_input") from e
        except openai.APIStatusError as e:
            kind = "server" if e.status_code >= 500 else "invalid_input"
            raise EmbeddingError(f"Provider error {e.status_code}: {e}", kind=kind) from e

        # Providers may return items out of order
        data = sorted(response.data, key=lambda item: item.index)
        vectors = [item.embedding for item in data]
        if vectors and len(vectors[0]) != self.dimension:
            raise EmbeddingError(
                f"Model {self.model} returned {len(vectors[0])}-dim vectors, expected {self.dimension}",
                kind="invalid_input",
            )

        tokens = response.usage.total_tokens if response.usage else 0
        return ProviderResponse(vectors=vectors, tokens=tokens)


# ========================================
# Embedding client
# ========================================

class BatchOutcome(str, enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass
class BatchAttempt:
    outcome: BatchOutcome
    response: Optional[ProviderResponse] = None
    error: Optional[EmbeddingError] = None


@dataclass
class EmbeddingResult:
    embeddings: list[list[float]]
    total_tokens: int
    total_cost_usd: float
    processing_time_ms: int
    model: str
    chunks_processed: int
    batch_count: int
    retry_count: int = 0
    batch_sizes: list[int] = field(default_factory=list)

    def as_metadata(self) -> dict:
        """Stage metadata stored on the content item."""
        return {
            "model": self.model,
            "total_tokens": self.total_tokens,
            "total_cost_usd": round(self.total_cost_usd, 6),
            "processing_time_ms": self.processing_time_ms,
            "chunks_processed": self.chunks_processed,
            "batch_count": self.batch_count,
            "retry_count": self.retry_count,
        }


class EmbeddingClient:
    """
    Batching, retrying wrapper around an EmbeddingProvider.

    This is the only place embedding cost is computed.

    Usage:
    ------
    client = EmbeddingClient(provider, batch_size=20, max_retries=3)
    result = await client.embed([chunk.chunk_text for chunk in chunks])
    query_vector = await client.embed_query("refund policy")
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = 20,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        request_timeout: float = 30.0,
        batch_delay_ms: int = 0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.provider = provider
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.request_timeout = request_timeout
        self.batch_delay_ms = batch_delay_ms
        self._sleep = sleep

    @classmethod
    def from_settings(cls, provider: EmbeddingProvider, cfg: Optional[Settings] = None) -> "EmbeddingClient":
        cfg = cfg or default_settings
        return cls(
            provider,
            batch_size=cfg.EMBEDDING_BATCH_SIZE,
            max_retries=cfg.EMBEDDING_MAX_RETRIES,
            retry_delay_ms=cfg.EMBEDDING_RETRY_DELAY_MS,
            request_timeout=cfg.EMBEDDING_REQUEST_TIMEOUT_SECONDS,
            batch_delay_ms=cfg.EMBEDDING_BATCH_DELAY_MS,
        )

    @property
    def model(self) -> str:
        return self.provider.model

    async def embed(
        self,
        texts: Sequence[str],
        before_batch: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> EmbeddingResult:
        """
        Embed texts in batches of batch_size.

        before_batch, if given, is awaited before every provider batch; an
        exception it raises aborts the call and propagates unchanged.

        Returns:
            EmbeddingResult with one vector per input, in input order

        Raises:
            EmbeddingError: a batch failed permanently or exhausted its retries
        """
        started = time.perf_counter()
        if any(not t or not t.strip() for t in texts):
            raise EmbeddingError("Cannot embed empty text", kind="invalid_input")

        batches = [
            list(texts[i:i + self.batch_size])
            for i in range(0, len(texts), self.batch_size)
        ]

        embeddings: list[list[float]] = []
        total_tokens = 0
        total_cost = 0.0
        retries = 0

        for number, batch in enumerate(batches, 1):
            if number > 1 and self.batch_delay_ms:
                await self._sleep(self.batch_delay_ms / 1000)
            if before_batch is not None:
                await before_batch()

            response, batch_retries = await self._embed_batch(batch, number, len(batches))
            retries += batch_retries

            embeddings.extend(response.vectors)
            total_tokens += response.tokens
            total_cost += response.tokens / 1000 * self.provider.cost_per_1k_tokens

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "embeddings_generated",
            model=self.provider.model,
            chunks=len(texts),
            batches=len(batches),
            tokens=total_tokens,
            cost_usd=round(total_cost, 6),
            retries=retries,
            duration_ms=elapsed_ms,
        )

        return EmbeddingResult(
            embeddings=embeddings,
            total_tokens=total_tokens,
            total_cost_usd=total_cost,
            processing_time_ms=elapsed_ms,
            model=self.provider.model,
            chunks_processed=len(texts),
            batch_count=len(batches),
            retry_count=retries,
            batch_sizes=[len(b) for b in batches],
        )

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string (one single-item batch)."""
        result = await self.embed([text])
        return result.embeddings[0]

    async def _embed_batch(
        self,
        batch: list[str],
        number: int,
        total: int,
    ) -> tuple[ProviderResponse, int]:
        last_error: Optional[EmbeddingError] = None

        for attempt in range(self.max_retries + 1):
            result = await self._attempt(batch)

            if result.outcome is BatchOutcome.SUCCESS:
                return result.response, attempt

            last_error = result.error
            if result.outcome is BatchOutcome.PERMANENT:
                logger.error(
                    "embedding_batch_failed_permanently",
                    batch=number,
                    batches=total,
                    kind=last_error.kind,
                    error=str(last_error),
                )
                raise last_error

            if attempt < self.max_retries:
                delay = self.retry_delay_ms * (2 ** attempt) / 1000
                logger.warning(
                    "embedding_batch_retry",
                    batch=number,
                    batches=total,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    kind=last_error.kind,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

        raise EmbeddingError(
            f"Batch {number}/{total} failed after {self.max_retries + 1} attempts: {last_error}",
            kind=last_error.kind if last_error else "server",
            retryable=True,
        )

    async def _attempt(self, batch: list[str]) -> BatchAttempt:
        """One provider call, translated into a typed outcome."""
        try:
            response = await asyncio.wait_for(
                self.provider.embed_batch(batch),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            return BatchAttempt(
                BatchOutcome.RETRYABLE,
                error=EmbeddingError(f"No response within {self.request_timeout}s", kind="timeout"),
            )
        except EmbeddingError as e:
            outcome = BatchOutcome.RETRYABLE if e.retryable else BatchOutcome.PERMANENT
            return BatchAttempt(outcome, error=e)

        if len(response.vectors) != len(batch):
            return BatchAttempt(
                BatchOutcome.RETRYABLE,
                error=EmbeddingError(
                    f"Provider returned {len(response.vectors)} vectors for {len(batch)} inputs",
                    kind="server",
                ),
            )

        return self._check_vectors(response)

    def _check_vectors(self, response: ProviderResponse) -> BatchAttempt:
        """Every vector must have the provider's dimension and finite values."""
        lengths = sorted({len(v) for v in response.vectors})
        if lengths != [self.provider.dimension]:
            # A model/config mismatch does not fix itself on retry
            return BatchAttempt(
                BatchOutcome.PERMANENT,
                error=EmbeddingError(
                    f"Model {self.provider.model} returned vectors of length {lengths}, "
                    f"expected {self.provider.dimension}",
                    kind="server",
                    retryable=False,
                ),
            )

        vectors = np.asarray(response.vectors, dtype=np.float64)
        if not np.isfinite(vectors).all():
            bad = int((~np.isfinite(vectors).all(axis=1)).sum())
            return BatchAttempt(
                BatchOutcome.RETRYABLE,
                error=EmbeddingError(f"Provider returned {bad} vectors with NaN or infinite values", kind="server"),
            )

        return BatchAttempt(BatchOutcome.SUCCESS, response=response)


# ========================================
# Construction
# ========================================

def build_embedding_provider(
    cfg: Optional[Settings] = None,
    openai_client: Optional[AsyncOpenAI] = None,
) -> EmbeddingProvider:
    """
    Build the provider selected by EMBEDDING_PROVIDER.

    In openai mode the caller owns ``openai_client`` and closes it; without
    one a client is created here.
    """
    cfg = cfg or default_settings

    if cfg.EMBEDDING_PROVIDER == "openai":
        client = openai_client or build_openai_client(cfg)
        return OpenAIEmbeddingProvider(
            client=client,
            model=cfg.EMBEDDING_MODEL,
            dimension=cfg.EMBEDDING_DIMENSION,
            cost_per_1k_tokens=cfg.EMBEDDING_COST_PER_1K_TOKENS,
        )

    return SentenceTransformerProvider(
        model_name=cfg.EMBEDDING_MODEL,
        device=cfg.EMBEDDING_DEVICE,
        dimension=cfg.EMBEDDING_DIMENSION,
    )


def build_openai_client(cfg: Optional[Settings] = None) -> AsyncOpenAI:
    cfg = cfg or default_settings
    return AsyncOpenAI(
        api_key=cfg.OPENAI_API_KEY,
        base_url=cfg.OPENAI_BASE_URL,
        max_retries=0,  # retries happen in EmbeddingClient
    )
