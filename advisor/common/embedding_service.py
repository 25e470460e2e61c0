"""
Embedding Service

Generates query and document embeddings for retrieval. Uses the OpenAI
embeddings endpoint by default, or fastembed for on-device generation.
"""

import logging
from typing import List, Optional

import numpy as np

from .errors import EmbeddingUnavailableError

logger = logging.getLogger("advisor.common.embedding_service")


def cosine_distances(query_vec: List[float], vectors: List[List[float]]) -> List[float]:
    """
    Compute cosine distance (1 - cosine similarity) between a query and
    multiple vectors.

    Zero-length vectors are treated as maximally unrelated (distance 1.0).

    Args:
        query_vec: Query embedding vector
        vectors: Embedding vectors to compare against

    Returns:
        List of distances in [0.0, 2.0]
    """
    if not vectors:
        return []

    query = np.asarray(query_vec, dtype=float)
    matrix = np.asarray(vectors, dtype=float)

    if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
        raise ValueError(f"Vector dimension mismatch: {matrix.shape} vs {query.shape}")

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(norms > 0, dots / norms, 0.0)

    # Clamp to valid range (numerical precision issues)
    distances = np.clip(1.0 - similarities, 0.0, 2.0)
    return distances.tolist()


class EmbeddingService:
    """
    Embedding service for advisor agents.

    Modes:
    - ``openai``: hosted embeddings (text-embedding-3-small by default)
    - ``femb``: fastembed, on-device

    ``dimensions`` shortens hosted embeddings; fastembed models have a fixed
    size and ignore it.
    """

    def __init__(
        self,
        mode: str = "openai",
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        self._mode = mode
        self._model = model
        self._dimensions = dimensions
        self._client = None
        self._init_client(api_key)

    def _init_client(self, api_key: Optional[str]) -> None:
        """Initialize the underlying embedding backend"""
        try:
            if self._mode == "openai":
                if not api_key:
                    logger.info("OpenAI API key not provided, embeddings unavailable")
                    return
                from openai import OpenAI
                self._client = OpenAI(api_key=api_key)
            elif self._mode == "femb":
                from fastembed import TextEmbedding
                self._client = TextEmbedding(model_name=self._model)
            else:
                logger.warning("Unsupported embedding mode: %s", self._mode)
                return
            logger.info("Initialized with mode=%s, model=%s", self._mode, self._model)
        except ImportError as e:
            logger.warning("Embedding backend for mode=%s not installed: %s", self._mode, e)
            self._client = None
        except Exception as e:
            logger.warning("Failed to initialize embedding backend: %s", e)
            self._client = None

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._client is not None

    @property
    def model(self) -> str:
        return self._model

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors

        Raises:
            EmbeddingUnavailableError: backend missing or request failed
        """
        if not self._client:
            raise EmbeddingUnavailableError("Embedding backend not initialized")

        if not texts:
            return []

        try:
            if self._mode == "openai":
                kwargs = {"dimensions": self._dimensions} if self._dimensions else {}
                response = self._client.embeddings.create(model=self._model, input=texts, **kwargs)
                return [list(item.embedding) for item in response.data]
            embeddings = list(self._client.embed(texts))
        except Exception as e:
            raise EmbeddingUnavailableError(f"Embedding request failed: {e}") from e

        return [np.asarray(e, dtype=float).tolist() for e in embeddings]

    def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector
        """
        if not text:
            raise EmbeddingUnavailableError("Cannot embed empty text")

        embeddings = self.embed([text])
        return embeddings[0]
