"""Knowledge retrieval service: chunking, embeddings and hybrid search over per-owner knowledge bases."""

__version__ = "0.1.0"
