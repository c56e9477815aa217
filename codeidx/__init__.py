"""Data types, Redis cache, queue and locks, embeddings and vector search for codebase indexing."""

__version__ = "0.1.0"