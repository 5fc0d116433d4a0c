"""Semantic encoder: caching, normalising, batching front of the embed client.

The embedding model itself runs elsewhere (EMBED_ENGINE). This class owns
what happens around the call: identical texts are answered from an LRU
cache, every vector is scaled to unit length so that cosine similarity and
dot product agree, corpus encoding is split into one backend call per batch
and every vector is checked against the configured dimensionality.

A failing backend is never papered over with a zero vector; the
EmbeddingError propagates to the caller.
"""

from collections import OrderedDict

import numpy as np

from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import EmbeddingError, InvalidVectorError

DEFAULT_BATCH_SIZE = 32


class SemanticEncoder:
    def __init__(self, helper_config: HelperConfig, embed_client: EmbedClientInterface, dimension: int, cache_size: int = 1024) -> None:
        self.logging = helper_config.get_logger()
        self.embed_client = embed_client
        self.dimension = dimension
        self.cache_size = cache_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()

    ##########################################
    ################# CACHE ##################
    ##########################################

    def _cache_get(self, text: str) -> list[float] | None:
        if text not in self._cache:
            return None
        self._cache.move_to_end(text)
        return self._cache[text]

    def _cache_set(self, text: str, vector: list[float]) -> None:
        if self.cache_size <= 0:
            return
        self._cache[text] = vector
        self._cache.move_to_end(text)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    ##########################################
    ############### VECTORS ##################
    ##########################################

    def _normalize(self, raw_vector: list[float]) -> list[float]:
        """Validate the dimension and scale the vector to unit length.

        Raises:
            InvalidVectorError: Wrong dimension, or a zero / non-finite vector.
        """
        if len(raw_vector) != self.dimension:
            raise InvalidVectorError(
                f"Embedding has dimension {len(raw_vector)}, expected {self.dimension}."
            )
        vector = np.asarray(raw_vector, dtype=np.float64)
        norm = float(np.linalg.norm(vector))
        if not np.isfinite(norm) or norm == 0.0:
            raise InvalidVectorError("Embedding backend returned a zero or non-finite vector.")
        return (vector / norm).tolist()

    async def check_dimension(self) -> int:
        """Compare the model's advertised vector size with the configured one.

        Returns:
            int: The model's vector size.

        Raises:
            InvalidVectorError: If the two differ.
        """
        model_dimension = await self.embed_client.do_fetch_embedding_vector_size()
        if model_dimension != self.dimension:
            raise InvalidVectorError(
                f"Embedding model '{self.embed_client.embed_model}' produces {model_dimension}-dimensional vectors, "
                f"VECTOR_DIMENSION is {self.dimension}."
            )
        return model_dimension

    ##########################################
    ############### ENCODING #################
    ##########################################

    async def embed(self, text: str) -> list[float]:
        """Embed a single text, e.g. a search query.

        Returns:
            list[float]: Unit-length vector of the configured dimension.

        Raises:
            EmbeddingError: The backend failed.
            InvalidVectorError: The backend returned an unusable vector.
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed an empty text.")
        cached = self._cache_get(text)
        if cached is not None:
            return list(cached)
        vectors = await self.embed_client.do_embed([text])
        vector = self._normalize(vectors[0])
        self._cache_set(text, vector)
        return list(vector)

    async def embed_batch(self, texts: list[str], batch_size: int = DEFAULT_BATCH_SIZE) -> list[list[float]]:
        """Embed a corpus, one backend call per batch of uncached texts.

        The output has one vector per input text, in input order. Batch results
        are not cached; the cache is meant for repeated queries.

        Raises:
            EmbeddingError: A batch failed; nothing is returned for the other batches.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}.")
        results: list[list[float] | None] = [None] * len(texts)
        missing: list[int] = []
        for position, text in enumerate(texts):
            if not text or not text.strip():
                raise EmbeddingError(f"Cannot embed an empty text (position {position}).")
            cached = self._cache_get(text)
            if cached is not None:
                results[position] = list(cached)
            else:
                missing.append(position)

        total_batches = (len(missing) + batch_size - 1) // batch_size
        for batch_number, start in enumerate(range(0, len(missing), batch_size), start=1):
            positions = missing[start:start + batch_size]
            vectors = await self.embed_client.do_embed([texts[p] for p in positions])
            for position, raw_vector in zip(positions, vectors):
                results[position] = self._normalize(raw_vector)
            self.logging.debug("Embedded batch %d of %d (%d texts).", batch_number, total_batches, len(positions))

        return [vector for vector in results if vector is not None]
