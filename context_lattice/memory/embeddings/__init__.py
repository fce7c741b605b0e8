"""
Optional sentence embeddings for semantic priority scoring.
"""

from .embedding_manager import EmbeddingManager

__all__ = ['EmbeddingManager']
