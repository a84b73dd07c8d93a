"""
Unified Embedding Interface
Turns user-state text into the vector used for pattern matching.

Supported methods:
- sentence_transformer: local SentenceTransformer model
- http: remote embedding endpoint returning {"embedding": [...]}
- hashing: deterministic hashed bag-of-words, no model required
- none: pattern matching disabled
"""

import re
import hashlib
import logging
from typing import Callable, List, Optional

import numpy as np
import requests

from resonance_loop.errors import DependencyError

logger = logging.getLogger(__name__)

VALID_METHODS = ['sentence_transformer', 'http', 'hashing', 'none']
HASHING_DIMENSION = 256

_TOKEN_RE = re.compile(r"[a-z0-9']+")


def hashing_embedding(text: str, dimension: int = HASHING_DIMENSION) -> np.ndarray:
    """Signed feature-hashing of lowercase tokens, L2-normalized."""
    vec = np.zeros(dimension, dtype=float)
    for token in _TOKEN_RE.findall(text.lower()):
        digest = hashlib.md5(token.encode('utf-8')).digest()
        index = int.from_bytes(digest[:4], 'little') % dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        vec[index] += sign
    norm = np.linalg.norm(vec)
    return vec / norm if norm > 0 else vec


class EmbeddingService:
    """Text -> vector with a bounded timeout and no retries.

    ``embed`` raises DependencyError on any failure; ``try_embed`` logs a
    warning and returns None so callers can degrade to non-vector scoring.
    """

    def __init__(self, method: str = 'sentence_transformer', url: Optional[str] = None,
                 timeout: float = 5.0, model_name: str = 'all-MiniLM-L6-v2',
                 api_key: Optional[str] = None, embed_fn: Optional[Callable[[str], List[float]]] = None):
        if method not in VALID_METHODS:
            raise ValueError(f"Unknown embedding method: {method}")
        self.method = method
        self.url = url
        self.timeout = timeout
        self.model_name = model_name
        self.api_key = api_key
        self._embed_fn = embed_fn
        self._embedder = None

    @classmethod
    def from_config(cls, config: dict) -> "EmbeddingService":
        return cls(
            method=config.get('embedding_method', 'none'),
            url=config.get('embedding_url'),
            timeout=config.get('embedding_timeout', 5.0),
            model_name=config.get('embedding_model', 'all-MiniLM-L6-v2'),
        )

    @property
    def enabled(self) -> bool:
        return self._embed_fn is not None or self.method != 'none'

    def _embed_http(self, text: str) -> np.ndarray:
        if not self.url:
            raise DependencyError("http embedding method selected but no embedding_url configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = requests.post(self.url, json={"text": text}, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.Timeout as e:
            raise DependencyError(f"Embedding request timeout after {self.timeout}s") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise DependencyError(f"Embedding request failed: {e}") from e
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise DependencyError("Embedding response did not contain an embedding")
        return np.asarray(embedding, dtype=float)

    def _embed_local(self, text: str) -> np.ndarray:
        if self._embedder is None:
            from resonance_loop.embedders.sentence_transformer_embedder import SentenceTransformerEmbedder
            try:
                self._embedder = SentenceTransformerEmbedder(self.model_name)
            except RuntimeError as e:
                raise DependencyError(str(e)) from e
        try:
            return self._embedder.embed(text)
        except Exception as e:
            raise DependencyError(f"SentenceTransformer encode failed: {e}") from e

    def embed(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise DependencyError("Cannot embed empty text")
        if self._embed_fn is not None:
            try:
                return np.asarray(self._embed_fn(text), dtype=float)
            except DependencyError:
                raise
            except Exception as e:
                raise DependencyError(f"Embedding function failed: {e}") from e
        if self.method == 'http':
            return self._embed_http(text)
        if self.method == 'hashing':
            return hashing_embedding(text)
        if self.method == 'sentence_transformer':
            return self._embed_local(text)
        raise DependencyError("Embedding disabled")

    def try_embed(self, text: str) -> Optional[np.ndarray]:
        if not self.enabled:
            return None
        try:
            return self.embed(text)
        except DependencyError as e:
            logger.warning(f"Embedding unavailable, using non-vector scoring: {e}")
            return None
