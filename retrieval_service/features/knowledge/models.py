"""
Domain records for knowledge bases, entries and search results.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChunkStrategy(str, Enum):
    TOKENS = "tokens"
    SENTENCES = "sentences"
    PARAGRAPHS = "paragraphs"
    SMART = "smart"


class SearchMode(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class IndexState(str, Enum):
    """Embedding lifecycle of an entry."""

    UNINDEXED = "unindexed"
    EMBEDDING_ATTEMPTED = "embedding_attempted"
    INDEXED = "indexed"
    INDEXED_VIA_FALLBACK = "indexed_via_fallback"


class KnowledgeBase(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str
    description: Optional[str] = None
    source_type: str = "manual"
    is_public: bool = False
    is_active: bool = True
    similarity_threshold: float = Field(default=0.75, ge=0, le=1)
    embedding_model: Optional[str] = None
    use_hybrid_search: bool = True
    vector_search_weight: int = Field(default=70, ge=0, le=100)
    keyword_search_weight: int = Field(default=30, ge=0, le=100)
    auto_chunk_content: bool = True
    chunk_size: int = Field(default=512, ge=100, le=2048)
    chunk_overlap: int = Field(default=50, ge=0, le=500)
    chunk_strategy: ChunkStrategy = ChunkStrategy.SMART
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def is_readable_by(self, caller: str) -> bool:
        return self.is_active and (self.user_id == caller or self.is_public)


class KnowledgeEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    knowledge_base_id: str
    title: str
    content: str
    summary: Optional[str] = None
    source_url: Optional[str] = None
    source_type: str = "text"
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    vector_embedding: Optional[list[float]] = None
    vector_indexed: bool = False
    index_state: IndexState = IndexState.UNINDEXED
    chunk_id: Optional[str] = None
    chunk_index: Optional[int] = None
    parent_entry_id: Optional[str] = None
    keyword_highlights: Optional[dict[str, float]] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    # Set by search, never persisted
    similarity_score: Optional[float] = Field(default=None, exclude=True)

    @property
    def is_chunk(self) -> bool:
        return self.parent_entry_id is not None and self.chunk_id is not None

    @property
    def has_chunks(self) -> bool:
        return self.metadata.get("has_chunks") is True

    @property
    def has_embedding(self) -> bool:
        return bool(self.vector_embedding)


class EntryPayload(BaseModel):
    """Caller-supplied fields for a new entry."""

    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    summary: Optional[str] = None
    source_url: Optional[str] = None
    source_type: str = "text"
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class KnowledgeBaseSettings(BaseModel):
    """Partial update of a knowledge base's search and chunking settings."""

    similarity_threshold: Optional[float] = None
    embedding_model: Optional[str] = None
    use_hybrid_search: Optional[bool] = None
    vector_search_weight: Optional[int] = None
    keyword_search_weight: Optional[int] = None
    auto_chunk_content: Optional[bool] = None
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    chunk_strategy: Optional[ChunkStrategy] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None


class SearchFilters(BaseModel):
    source_type: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    include_chunks: bool = True
    parent_entry_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.source_type is None
            and not self.tags
            and self.include_chunks
            and self.parent_entry_id is None
        )


class SearchResult(BaseModel):
    id: str
    knowledge_base_id: str
    title: str
    content: str
    summary: Optional[str] = None
    source_url: Optional[str] = None
    source_type: str = "text"
    tags: list[str] = Field(default_factory=list)
    similarity_score: float
    chunk_id: Optional[str] = None
    chunk_index: Optional[int] = None
    parent_entry_id: Optional[str] = None
    keyword_highlights: Optional[dict[str, float]] = None
    metadata: Optional[dict[str, Any]] = None


class IngestResult(BaseModel):
    created_entries: list[KnowledgeEntry] = Field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0


class BulkEmbedReport(BaseModel):
    processed_count: int = 0
    failed_count: int = 0
    fallback_entry_ids: list[str] = Field(default_factory=list)
    diagnostics: list[dict[str, Any]] = Field(default_factory=list)


class ChunkingReport(BaseModel):
    processed: int = 0
    total: int = 0
    results: dict[str, bool] = Field(default_factory=dict)


class AIContextResult(BaseModel):
    id: str
    title: str
    content: str
    source_url: Optional[str] = None
    score: float
    knowledge_base_id: str
    knowledge_base_name: str


class KnowledgeStats(BaseModel):
    knowledge_bases: int = 0
    entries: int = 0
    active_entries: int = 0
    chunks: int = 0
    index_states: dict[str, int] = Field(default_factory=dict)
    providers: list[str] = Field(default_factory=list)


class KnowledgeBaseUpdate(BaseModel):
    """Partial update of a knowledge base's descriptive fields."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    source_type: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None


class EntryUpdate(BaseModel):
    """Partial update of an entry. Changing title or content invalidates its index."""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    content: Optional[str] = Field(None, min_length=1)
    summary: Optional[str] = None
    source_url: Optional[str] = None
    source_type: Optional[str] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None


class ExportedEntry(EntryPayload):
    id: Optional[str] = None
    is_active: bool = True


class KnowledgeBaseExport(BaseModel):
    """A knowledge base and its parent entries; chunks and vectors are rebuilt on import."""

    knowledge_base: dict[str, Any]
    entries: list[ExportedEntry] = Field(default_factory=list)


class ImportResult(BaseModel):
    knowledge_base: KnowledgeBase
    entries_imported: int = 0
    entries_skipped: int = 0
    failed_count: int = 0


class EntryEmbeddingReport(BaseModel):
    entry_id: str
    provider: str
    used_fallback: bool
    index_state: IndexState
    error: Optional[str] = None
