"""
Embedding Manager - sentence embeddings for priority similarity

Uses sentence-transformers (optional extra: pip install context-lattice[embeddings]).
Model: all-MiniLM-L6-v2 (384 dimensions, fast, good quality)

The PriorityScorer takes `EmbeddingManager.encode` as its embedder so the
frequency sub-score uses semantic rather than bag-of-words similarity.
"""

import logging
from collections import OrderedDict

import numpy as np

logger = logging.getLogger(__name__)


class EmbeddingManager:
    """
    Generates and caches text embeddings.
    """

    def __init__(self, model_name: str = 'all-MiniLM-L6-v2', cache_size: int = 1024):
        """
        Initialize embedding manager.

        Args:
            model_name: SentenceTransformer model name
            cache_size: Number of text embeddings kept in memory
        """
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

        logger.info(f"📦 Loading embedding model: {model_name}...")
        self.model = SentenceTransformer(model_name)
        self.dimension = self.model.get_sentence_embedding_dimension()
        logger.info(f"✅ Model loaded: {model_name} ({self.dimension}D)")

    def encode(self, text: str) -> np.ndarray:
        """
        Generate embedding for text (cached).

        Returns:
            Numpy array of shape (dimension,)
        """
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        embedding = np.asarray(self.model.encode(text, show_progress_bar=False), dtype=float)
        self._cache[text] = embedding
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return embedding
