"""
Knowledge retrieval - chunking, embeddings and hybrid search.

This module provides:
1. Ingestion: chunk long entries and embed them with provider fallback
2. Retrieval: vector, keyword and hybrid search
3. Context building: prompt-ready context for the chat layer

Design for modularity:
- The coordinator owns access control and mutation
- The search engine only reads from the store
- Embedding providers are resolved per knowledge base
"""

from retrieval_service.features.knowledge.service import (
    KnowledgeBaseCoordinator,
    create_knowledge_coordinator,
)
from retrieval_service.features.knowledge.retriever import (
    HybridSearchEngine,
    format_ai_context,
)
from retrieval_service.features.knowledge.chunker import ContentChunker
from retrieval_service.features.knowledge.embeddings import (
    EmbeddingProviderFactory,
    ProviderKind,
)
from retrieval_service.features.knowledge.similarity import cosine_similarity
from retrieval_service.features.knowledge.store import (
    EntryStore,
    InMemoryEntryStore,
    SupabaseEntryStore,
)

__all__ = [
    # Coordinator
    "KnowledgeBaseCoordinator",
    "create_knowledge_coordinator",
    # Retrieval
    "HybridSearchEngine",
    "format_ai_context",
    # Ingestion
    "ContentChunker",
    "EmbeddingProviderFactory",
    "ProviderKind",
    # Scoring
    "cosine_similarity",
    # Storage
    "EntryStore",
    "InMemoryEntryStore",
    "SupabaseEntryStore",
]
