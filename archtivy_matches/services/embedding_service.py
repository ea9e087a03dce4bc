"""
Archtivy Matches — Embedding Provider

Turns one image (or its caption / alt text) into a fixed-length,
L2-normalized vector for cosine comparison:

  - ``embed_text``  — Gemini text embedding with a bounded retry loop
                      (2 retries, exponential backoff).  Never raises:
                      exhausted retries degrade to the all-zero vector plus
                      an error string.
  - ``embed_image`` — delegates to ``embed_text`` when alt text is present
                      and live inference is configured, otherwise derives a
                      deterministic pseudo-embedding from the URL so that
                      scoring is exercised end-to-end without network access.

Every vector leaving this module has exactly ``embedding_dim`` components
and is either unit-norm or all-zero.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import numpy as np
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from archtivy_matches.config import ProviderConfig

logger = structlog.get_logger("archtivy.embedding_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

# Pseudo-embedding sine series: sin((h + i*K1)*S1)*A1 + sin((h*K2 + i)*S2)*A2
_PSEUDO_K1 = 1.1
_PSEUDO_S1 = 0.001
_PSEUDO_A1 = 0.5
_PSEUDO_K2 = 0.7
_PSEUDO_S2 = 0.002
_PSEUDO_A2 = 0.3

_NORM_EPSILON = 1e-12


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    error: str | None = None
    source: str = field(default="live", compare=False)

    @property
    def is_zero(self) -> bool:
        return not any(self.vector)


class EmbeddingClient(Protocol):
    async def embed(self, text: str, dimension: int) -> Sequence[float]: ...


class GeminiEmbeddingClient:
    """Gemini ``embed_content`` wrapper requesting ``dimension`` outputs."""

    def __init__(self, config: ProviderConfig) -> None:
        import google.generativeai as genai

        genai.configure(api_key=config.api_key)
        self._genai = genai
        self._model = config.embedding_model

    async def embed(self, text: str, dimension: int) -> Sequence[float]:
        result = await self._genai.embed_content_async(
            model=self._model,
            content=text,
            task_type="semantic_similarity",
            output_dimensionality=dimension,
        )
        embedding = result.get("embedding") if isinstance(result, dict) else None
        if not embedding:
            raise ValueError(f"Gemini returned no embedding for model {self._model}")
        return embedding


# ──────────────────────────────────────────────────────────────────────────────
# Vector helpers
# ──────────────────────────────────────────────────────────────────────────────

def zero_vector(dim: int) -> list[float]:
    return [0.0] * dim


def fit_dimension(values: Sequence[float], dim: int) -> np.ndarray:
    """Pad with zeros or truncate ``values`` to exactly ``dim`` floats."""
    arr = np.zeros(dim, dtype=np.float64)
    raw = np.asarray(list(values)[:dim], dtype=np.float64)
    arr[: raw.shape[0]] = raw
    return arr


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale to unit norm; zero (or non-finite) input comes back all-zero."""
    if not np.all(np.isfinite(vector)):
        return np.zeros_like(vector)
    norm = float(np.linalg.norm(vector))
    if norm < _NORM_EPSILON:
        return np.zeros_like(vector)
    return vector / norm


def normalize_embedding(values: Sequence[float], dim: int) -> list[float]:
    return l2_normalize(fit_dimension(values, dim)).tolist()


def url_seed(url: str) -> int:
    """Stable signed 32-bit seed derived from the URL bytes."""
    digest = hashlib.sha256(url.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big", signed=True)


def pseudo_embedding(url: str, dim: int) -> list[float]:
    """Deterministic, network-free embedding for ``url`` (unit norm)."""
    h = float(url_seed(url))
    i = np.arange(dim, dtype=np.float64)
    raw = (
        np.sin((h + i * _PSEUDO_K1) * _PSEUDO_S1) * _PSEUDO_A1
        + np.sin((h * _PSEUDO_K2 + i) * _PSEUDO_S2) * _PSEUDO_A2
    )
    return l2_normalize(raw).tolist()


# ──────────────────────────────────────────────────────────────────────────────
# Provider
# ──────────────────────────────────────────────────────────────────────────────

class EmbeddingProvider:
    """Produce fixed-length, normalized embeddings for images and text."""

    def __init__(
        self,
        config: ProviderConfig,
        client: EmbeddingClient | None = None,
    ) -> None:
        """Initialise the provider.

        Parameters
        ----------
        config:
            Explicit provider configuration (credentials, model, dimension,
            retry policy).
        client:
            Optional embedding client.  When omitted and credentials are
            present, a ``GeminiEmbeddingClient`` is created.
        """
        self.config = config
        self.dim = config.embedding_dim

        if client is None and config.has_credentials:
            client = GeminiEmbeddingClient(config)
        self._client = client
        self._missing_credentials_logged = False

        logger.info(
            "embedding_provider_initialised",
            dim=self.dim,
            live=self._client is not None,
            model=config.embedding_model,
        )

    @property
    def is_live(self) -> bool:
        return self._client is not None

    async def embed_text(self, text: str) -> EmbeddingResult:
        """Embed ``text``; degrade to the zero vector instead of raising."""
        if not text or not text.strip():
            return EmbeddingResult(zero_vector(self.dim), source="empty")

        if self._client is None:
            if not self._missing_credentials_logged:
                logger.warning("embedding_credentials_missing", fallback="zero_vector")
                self._missing_credentials_logged = True
            return EmbeddingResult(
                zero_vector(self.dim),
                error="GEMINI_API_KEY not set",
                source="none",
            )

        try:
            raw = await self._embed_with_retry(text.strip())
        except Exception as exc:
            logger.error(
                "embedding_retries_exhausted",
                attempts=self.config.max_retries + 1,
                error=str(exc),
            )
            return EmbeddingResult(
                zero_vector(self.dim),
                error=f"embedding failed: {exc}",
                source="live",
            )

        vector = normalize_embedding(raw, self.dim)
        if not any(vector):
            return EmbeddingResult(vector, error="provider returned a zero vector")
        return EmbeddingResult(vector)

    async def embed_image(self, url: str, alt_text: str | None = None) -> EmbeddingResult:
        """Embed an image by its alt text when possible, else by URL hash."""
        if alt_text and alt_text.strip() and self.is_live:
            return await self.embed_text(alt_text)

        if not url or not url.strip():
            logger.warning("embed_image_empty_url")
            return EmbeddingResult(
                zero_vector(self.dim),
                error="image url is empty",
                source="none",
            )

        return EmbeddingResult(pseudo_embedding(url.strip(), self.dim), source="pseudo")

    async def _embed_with_retry(self, text: str) -> Sequence[float]:
        """Bounded retry loop: 1 call + ``max_retries`` retries, doubling delay."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(Exception),
                stop=stop_after_attempt(self.config.max_retries + 1),
                wait=wait_exponential(
                    multiplier=self.config.retry_base_seconds,
                    exp_base=2,
                ),
                reraise=False,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "embedding_retry",
                            attempt_number=attempt.retry_state.attempt_number,
                        )
                    return await self._client.embed(text, self.dim)
        except RetryError as retry_err:
            raise retry_err.last_attempt.exception() from retry_err
        raise RuntimeError("embedding retry loop ended without a result")
