"""Text -> D_high vector adapter around an external embedding provider.

Single-shot by contract: callers (profile updater, backfill tool) decide
whether a failed call is retried or skipped for this cycle.
"""
from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Mapping, Optional, Protocol

import aiohttp
import numpy as np

from .errors import ConfigError, DataError, ProviderError, ProviderTimeout
from .models import ContentItem
from .profile import InterestSet
from .settings import Settings

log = logging.getLogger(__name__)

SNIPPET_CHARS = 200
RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def content_text(item: ContentItem, snippet_chars: int = SNIPPET_CHARS) -> str:
    return f"{item.title} - {(item.snippet or '')[:snippet_chars]}"


def build_profile_text(
    interests: InterestSet,
    contents: Mapping[str, ContentItem],
    snippet_chars: int = SNIPPET_CHARS,
) -> str:
    """Concatenate item texts, each repeated floor(weight) times (at least once)."""
    lines: List[str] = []
    for wi in interests.items:
        item = contents.get(wi.content_id)
        if item is None:
            continue
        text = content_text(item, snippet_chars)
        lines.extend([text] * max(1, math.floor(wi.weight)))
    return "\n".join(lines)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]: ...

    async def close(self) -> None: ...


class OpenAIEmbeddingProvider:
    """OpenAI-compatible /v1/embeddings client."""

    def __init__(self, api_key: str, url: str, model: str, timeout: float = 20.0):
        if not api_key:
            raise ConfigError("embedding API key not set")
        self.url = url
        self.model = model
        self.timeout = aiohttp.ClientTimeout(total=timeout, sock_connect=min(timeout, 10.0))
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)
        return self._session

    async def embed(self, text: str) -> List[float]:
        session = self._get_session()
        payload = {"model": self.model, "input": [text]}
        try:
            async with session.post(self.url, json=payload) as r:
                if r.status in RETRYABLE_STATUS:
                    raise ProviderError(f"embedding provider returned {r.status}", retryable=True, status=r.status)
                if r.status >= 400:
                    body = await r.text()
                    raise ProviderError(
                        f"embedding provider returned {r.status}: {body[:200]}", retryable=False, status=r.status
                    )
                try:
                    data = await r.json(content_type=None)
                except ValueError as e:
                    raise ProviderError("undecodable response from embedding provider", retryable=False) from e
        except asyncio.TimeoutError as e:
            raise ProviderTimeout() from e
        except aiohttp.ClientError as e:
            raise ProviderError(f"embedding provider unreachable: {e}") from e
        try:
            return data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("invalid response from embedding provider", retryable=False) from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class LocalEmbeddingProvider:
    """sentence-transformers model run in a worker thread."""

    def __init__(self, model_name: str):
        self.model_name = model_name
        self._model = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            import torch
            device = "cuda" if torch.cuda.is_available() else "cpu"
            log.info(f"Loading local embedding model {self.model_name} on {device}")
            self._model = SentenceTransformer(self.model_name, device=device)
        return self._model

    def _encode(self, text: str) -> List[float]:
        model = self._load()
        return model.encode([text], show_progress_bar=False, normalize_embeddings=False)[0].tolist()

    async def embed(self, text: str) -> List[float]:
        try:
            return await asyncio.to_thread(self._encode, text)
        except (RuntimeError, ValueError) as e:
            raise ProviderError(f"local embedding failed: {e}", retryable=False) from e

    async def close(self) -> None:
        return None


def make_provider(settings: Settings) -> EmbeddingProvider:
    if settings.embed_backend == "local":
        return LocalEmbeddingProvider(settings.embed_model)
    if settings.embed_backend == "openai":
        return OpenAIEmbeddingProvider(
            api_key=settings.embed_api_key,
            url=settings.embed_api_url,
            model=settings.embed_model,
            timeout=settings.embed_timeout,
        )
    raise ConfigError(f"unknown embed backend: {settings.embed_backend}")


class EmbeddingService:
    def __init__(self, provider: EmbeddingProvider, d_high: int, timeout: float = 20.0):
        self.provider = provider
        self.d_high = d_high
        self.timeout = timeout

    async def embed(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise DataError("cannot embed empty text")
        try:
            raw = await asyncio.wait_for(self.provider.embed(text), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(f"embedding provider timed out after {self.timeout}s") from e
        vec = np.asarray(raw, dtype=np.float32)
        if vec.ndim != 1 or vec.shape[0] != self.d_high:
            raise ProviderError(
                f"provider returned {vec.shape} vector, expected ({self.d_high},)", retryable=False
            )
        if not np.all(np.isfinite(vec)):
            raise ProviderError("provider returned non-finite values", retryable=False)
        return vec

    async def close(self) -> None:
        await self.provider.close()
