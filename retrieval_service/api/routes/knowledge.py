"""
Knowledge retrieval API endpoints.

These endpoints expose the knowledge coordinator for:
1. The chat layer, to fetch prompt context
2. Admin tooling, to ingest, embed, chunk and tune knowledge bases
3. Search UIs

Semantic validation (query length, limits, weights, access) happens in the
coordinator. Its errors, and any unexpected exception, are rendered as the
``{"error": {...}}`` envelope by the handlers in ``retrieval_service.main``.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from retrieval_service.api.dependencies import get_caller_id, get_coordinator
from retrieval_service.features.knowledge.models import (
    AIContextResult,
    BulkEmbedReport,
    ChunkingReport,
    ChunkStrategy,
    EntryEmbeddingReport,
    EntryPayload,
    EntryUpdate,
    ImportResult,
    KnowledgeBase,
    KnowledgeBaseExport,
    KnowledgeBaseSettings,
    KnowledgeBaseUpdate,
    KnowledgeEntry,
    KnowledgeStats,
    SearchFilters,
    SearchResult,
)
from retrieval_service.features.knowledge.retriever import format_ai_context
from retrieval_service.features.knowledge.service import KnowledgeBaseCoordinator

router = APIRouter(prefix="/knowledge", tags=["knowledge"])


# ===================== Request/Response Models =====================

class SearchRequest(BaseModel):
    """Search request across the caller's knowledge bases."""
    query: str = Field(..., description="Search query text (at least 3 characters)")
    knowledge_base_ids: Optional[List[str]] = Field(None, description="Restrict to these knowledge bases")
    mode: str = Field("hybrid", description="vector, keyword or hybrid")
    limit: int = Field(10, description="Max results to return (1-50)")
    min_similarity: Optional[float] = Field(None, description="Minimum vector similarity (0-1)")
    vector_weight: Optional[float] = Field(None, description="Hybrid vector weight (0-100)")
    keyword_weight: Optional[float] = Field(None, description="Hybrid keyword weight (0-100)")
    filters: SearchFilters = Field(default_factory=SearchFilters)
    include_metadata: bool = False
    include_highlights: bool = False


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResult]
    total: int


class ContextRequest(BaseModel):
    """Request for prompt-ready context."""
    query: str = Field(..., description="The user's question")
    knowledge_base_ids: Optional[List[str]] = None
    max_results: int = Field(3, description="Max pieces of context (1-50)")
    min_score: float = Field(0.7, description="Minimum vector similarity (0-1)")


class ContextResponse(BaseModel):
    query: str
    results: List[AIContextResult]
    context: str


class KnowledgeBaseCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    source_type: str = "manual"
    is_public: bool = False
    similarity_threshold: float = 0.75
    embedding_model: Optional[str] = None
    use_hybrid_search: bool = True
    vector_search_weight: int = 70
    keyword_search_weight: int = 30
    auto_chunk_content: bool = True
    chunk_size: int = 512
    chunk_overlap: int = 50
    chunk_strategy: ChunkStrategy = ChunkStrategy.SMART
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EntriesRequest(BaseModel):
    """One or many entries to add to a knowledge base."""
    entries: List[EntryPayload] = Field(..., min_length=1)
    generate_embeddings: bool = True


class IngestResponse(BaseModel):
    entry_ids: List[str]
    processed_count: int
    failed_count: int


class EmbeddingsRequest(BaseModel):
    force: bool = False
    only_unindexed: bool = True


class ChunkingRequest(BaseModel):
    force: bool = False


class DeleteResponse(BaseModel):
    entry_id: str
    removed: int


class EntryUpdateRequest(EntryUpdate):
    regenerate_embeddings: bool = True


class EntryEmbeddingRequest(BaseModel):
    force: bool = True


class ImportRequest(KnowledgeBaseExport):
    overwrite_existing: bool = False
    generate_embeddings: bool = True


class BaseDeleteResponse(BaseModel):
    knowledge_base_id: str
    entries_removed: int


def _entry_view(entry: KnowledgeEntry) -> Dict[str, Any]:
    """Entry as returned to clients; vectors stay server-side."""
    return entry.model_dump(mode="json", exclude={"vector_embedding"})


# ===================== Endpoints =====================

@router.post("/search", response_model=SearchResponse)
async def search_knowledge(
    request: SearchRequest,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """
    Vector, keyword or hybrid search across accessible knowledge bases.

    Results are ranked by score; equal scores are ordered by entry id.
    """
    results = await coordinator.query(
        caller,
        request.query,
        knowledge_base_ids=request.knowledge_base_ids,
        mode=request.mode,
        filters=request.filters,
        limit=request.limit,
        min_similarity=request.min_similarity,
        vector_weight=request.vector_weight,
        keyword_weight=request.keyword_weight,
        include_metadata=request.include_metadata,
        include_highlights=request.include_highlights,
    )

    return SearchResponse(query=request.query, results=results, total=len(results))


@router.post("/context", response_model=ContextResponse)
async def get_context(
    request: ContextRequest,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """
    Context for prompt injection.

    **For the chat layer**: inject ``context`` into the system prompt.
    """
    results = await coordinator.search_for_ai_context(
        caller,
        request.query,
        knowledge_base_ids=request.knowledge_base_ids,
        max_results=request.max_results,
        min_score=request.min_score,
    )

    return ContextResponse(query=request.query, results=results, context=format_ai_context(results))


@router.post("/bases", response_model=KnowledgeBase, status_code=201)
async def create_knowledge_base(
    request: KnowledgeBaseCreate,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    return coordinator.create_knowledge_base(caller, request.model_dump())


@router.patch("/bases/{base_id}/settings", response_model=KnowledgeBase)
async def update_settings(
    base_id: str,
    request: KnowledgeBaseSettings,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Update search and chunking settings (owner only)."""
    return coordinator.update_search_settings(caller, base_id, request)


@router.get("/bases", response_model=List[KnowledgeBase])
async def list_knowledge_bases(
    search: Optional[str] = Query(None, description="Match on name or description"),
    is_public: Optional[bool] = None,
    source_type: Optional[str] = None,
    page: int = Query(1, description="Page number, from 1"),
    per_page: int = Query(15, description="Page size (1-100)"),
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Knowledge bases the caller owns or that are public, newest first."""
    return coordinator.list_knowledge_bases(
        caller, search=search, is_public=is_public, source_type=source_type, page=page, per_page=per_page
    )


@router.post("/bases/import", response_model=ImportResult, status_code=201)
async def import_knowledge_base(
    request: ImportRequest,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Recreate an exported knowledge base under the caller."""
    return await coordinator.import_knowledge_base(
        caller,
        request,
        overwrite_existing=request.overwrite_existing,
        generate_embeddings=request.generate_embeddings,
    )


@router.get("/bases/{base_id}", response_model=KnowledgeBase)
async def get_knowledge_base(
    base_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    return coordinator.get_knowledge_base(caller, base_id)


@router.patch("/bases/{base_id}", response_model=KnowledgeBase)
async def update_knowledge_base(
    base_id: str,
    request: KnowledgeBaseUpdate,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Rename, describe or change the visibility of a knowledge base (owner only)."""
    return coordinator.update_knowledge_base(caller, base_id, request)


@router.delete("/bases/{base_id}", response_model=BaseDeleteResponse)
async def delete_knowledge_base(
    base_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Delete a knowledge base together with all of its entries."""
    removed = coordinator.delete_knowledge_base(caller, base_id)
    return BaseDeleteResponse(knowledge_base_id=base_id, entries_removed=removed)


@router.get("/bases/{base_id}/entries")
async def list_entries(
    base_id: str,
    search: Optional[str] = None,
    source_type: Optional[str] = None,
    tags: Optional[List[str]] = Query(None, description="Entries must carry every tag"),
    include_chunks: bool = False,
    page: int = 1,
    per_page: int = 20,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    entries = coordinator.list_entries(
        caller,
        base_id,
        search=search,
        source_type=source_type,
        tags=tags,
        include_chunks=include_chunks,
        page=page,
        per_page=per_page,
    )
    return [_entry_view(entry) for entry in entries]


@router.get("/bases/{base_id}/export", response_model=KnowledgeBaseExport)
async def export_knowledge_base(
    base_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    return coordinator.export_knowledge_base(caller, base_id)


@router.get("/bases/{base_id}/stats", response_model=KnowledgeStats)
async def knowledge_base_stats(
    base_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    return coordinator.get_knowledge_base_stats(caller, base_id)


@router.post("/bases/{base_id}/entries", response_model=IngestResponse, status_code=201)
async def add_entries(
    base_id: str,
    request: EntriesRequest,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Create entries; long content is chunked when the base has auto-chunking on."""
    result = await coordinator.bulk_import(
        caller, base_id, request.entries, generate_embeddings=request.generate_embeddings
    )

    return IngestResponse(
        entry_ids=[entry.id for entry in result.created_entries],
        processed_count=result.processed_count,
        failed_count=result.failed_count,
    )


@router.post("/bases/{base_id}/embeddings", response_model=BulkEmbedReport)
async def generate_embeddings(
    base_id: str,
    request: EmbeddingsRequest = EmbeddingsRequest(),
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Embed a knowledge base's entries with bounded concurrency."""
    return await coordinator.bulk_embed(
        caller, base_id, force=request.force, only_unindexed=request.only_unindexed
    )


@router.post("/bases/{base_id}/chunking", response_model=ChunkingReport)
async def process_chunking(
    base_id: str,
    request: ChunkingRequest = ChunkingRequest(),
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Chunk every parent entry of a knowledge base."""
    return await coordinator.process_knowledge_base_chunking(caller, base_id, force=request.force)


@router.post("/entries/{entry_id}/chunking")
async def chunk_entry(
    entry_id: str,
    request: ChunkingRequest = ChunkingRequest(),
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    chunked = await coordinator.chunk_entry(caller, entry_id, force=request.force)
    return {"entry_id": entry_id, "chunked": chunked}


@router.get("/entries/{entry_id}/similar", response_model=List[SearchResult])
async def similar_entries(
    entry_id: str,
    limit: int = Query(5, description="Max results (1-50)"),
    min_similarity: Optional[float] = Query(None, description="Minimum score (0-1)"),
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Entries in the same knowledge base that resemble this one."""
    return await coordinator.find_similar(caller, entry_id, limit=limit, min_similarity=min_similarity)


@router.post("/entries/{entry_id}/highlights", response_model=Dict[str, float])
async def keyword_highlights(
    entry_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    return coordinator.generate_keyword_highlights(caller, entry_id)


@router.post("/entries/{entry_id}/deactivate")
async def deactivate_entry(
    entry_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    entry = coordinator.deactivate_entry(caller, entry_id)
    return {"entry_id": entry.id, "is_active": entry.is_active}


@router.delete("/entries/{entry_id}", response_model=DeleteResponse)
async def delete_entry(
    entry_id: str,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Hard delete an entry together with its chunks."""
    removed = coordinator.delete_entry(caller, entry_id)
    return DeleteResponse(entry_id=entry_id, removed=removed)


@router.patch("/entries/{entry_id}")
async def update_entry(
    entry_id: str,
    request: EntryUpdateRequest,
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """
    Update an entry (owner only).

    New title or content clears the old vector and chunks; the entry is
    re-chunked and, with ``regenerate_embeddings``, embedded again.
    """
    changes = EntryUpdate.model_validate(
        request.model_dump(exclude_unset=True, exclude={"regenerate_embeddings"})
    )
    entry = await coordinator.update_entry(
        caller, entry_id, changes, regenerate_embeddings=request.regenerate_embeddings
    )
    return _entry_view(entry)


@router.post("/entries/{entry_id}/embeddings", response_model=EntryEmbeddingReport)
async def generate_entry_embedding(
    entry_id: str,
    request: EntryEmbeddingRequest = EntryEmbeddingRequest(),
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    return await coordinator.generate_entry_embedding(caller, entry_id, force=request.force)


@router.get("/stats", response_model=KnowledgeStats)
async def get_stats(
    caller: str = Depends(get_caller_id),
    coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator),
):
    """Entry counts over the knowledge bases the caller can read."""
    return coordinator.get_stats(caller)


@router.get("/health")
async def knowledge_health(coordinator: KnowledgeBaseCoordinator = Depends(get_coordinator)):
    """Store connectivity and configured embedding providers."""
    return coordinator.health_check()
