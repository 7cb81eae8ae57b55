"""Embedding generators for description vectors.

========== ===================================== =====================
Key        Backend                               Notes
========== ===================================== =====================
hash       token hashing (no model download)     default, 256 dims
http       OpenAI-compatible ``/embeddings`` API needs ``endpoint``
========== ===================================== =====================

Both expose ``async generate_embedding(text) -> List[float]``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from hashlib import blake2b
from typing import List, Optional, Protocol

import requests

from .config import DEFAULT_EMBEDDING_DIM, IndexerConfig
from .errors import ProviderError, RetryableProviderError, classify_status

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class EmbeddingGenerator(Protocol):
    async def generate_embedding(self, text: str) -> List[float]:
        ...


# ===================================================================
# HashEmbeddingModel  (no model download)
# ===================================================================

class HashEmbeddingModel:
    """Deterministic token-hashing embedder.

    Provides keyword-level similarity: descriptions that share identifiers
    land close together. Used when no embedding endpoint is configured.
    """

    def __init__(self, dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        self.dim = dim

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return _l2_normalize(vec)

    async def generate_embedding(self, text: str) -> List[float]:
        return self.embed_text(text)


# ===================================================================
# HttpEmbeddingGenerator
# ===================================================================

class HttpEmbeddingGenerator:
    """OpenAI-compatible embeddings endpoint (OpenAI, Ollama ``/v1``, vLLM...)."""

    def __init__(self, endpoint: str, model: str, api_key: str = "", timeout: float = 30) -> None:
        self.endpoint = endpoint
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    async def generate_embedding(self, text: str) -> List[float]:
        return await asyncio.to_thread(self._embed_sync, text)

    def _embed_sync(self, text: str) -> List[float]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                self.endpoint,
                json={"model": self.model, "input": text},
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RetryableProviderError(f"embeddings: {exc}") from exc
        if not response.ok:
            raise classify_status(response.status_code, response.text)
        try:
            return [float(v) for v in response.json()["data"][0]["embedding"]]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"embeddings: malformed response ({exc})") from exc


# ===================================================================
# Factory
# ===================================================================

def get_embedder(cfg: Optional[IndexerConfig] = None, api_key: str = "") -> EmbeddingGenerator:
    """Return the embedder selected by ``[embeddings].model``.

    Unknown keys fall back to hash embeddings with a warning.
    """
    cfg = cfg or IndexerConfig()
    if cfg.embedding_model == "hash":
        return HashEmbeddingModel(cfg.embedding_dim)
    if cfg.embedding_endpoint:
        return HttpEmbeddingGenerator(cfg.embedding_endpoint, cfg.embedding_model, api_key=api_key)
    logger.warning(
        "Embedding model '%s' has no endpoint configured; falling back to hash.", cfg.embedding_model,
    )
    return HashEmbeddingModel(cfg.embedding_dim)


def _l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]
