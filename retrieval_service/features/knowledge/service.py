"""
Knowledge Service - the coordinator every caller goes through.

Owns access control, ingestion (chunking + embedding), bulk jobs and query
dispatch. The search engine and the embedding providers never see a caller
id; they receive already-resolved knowledge bases.

Usage:
    coordinator = create_knowledge_coordinator()

    # Ingest
    result = await coordinator.create_entry(user_id, base_id, EntryPayload(title=..., content=...))

    # Search
    results = await coordinator.query(user_id, "How do refunds work?", mode="hybrid")
"""

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from retrieval_service.core.config import EmbeddingConfig, settings
from retrieval_service.core.logging_utils import sanitize_for_logging
from retrieval_service.features.knowledge.chunker import ContentChunker
from retrieval_service.features.knowledge.embeddings import (
    EmbeddingProviderFactory,
    EmbeddingResult,
    embedding_text,
)
from retrieval_service.features.knowledge.keywords import keyword_importance, summarize
from retrieval_service.features.knowledge.models import (
    AIContextResult,
    BulkEmbedReport,
    ChunkingReport,
    EntryEmbeddingReport,
    EntryPayload,
    EntryUpdate,
    ExportedEntry,
    ImportResult,
    IndexState,
    IngestResult,
    KnowledgeBase,
    KnowledgeBaseExport,
    KnowledgeBaseSettings,
    KnowledgeBaseUpdate,
    KnowledgeEntry,
    KnowledgeStats,
    SearchFilters,
    SearchMode,
    SearchResult,
)
from retrieval_service.features.knowledge.retriever import HybridSearchEngine
from retrieval_service.features.knowledge.store import EntryStore, InMemoryEntryStore, SupabaseEntryStore
from retrieval_service.shared.correlation import CorrelationContext, get_correlation_id
from retrieval_service.shared.errors import AccessDenied, InvalidInput, NotFound

logger = logging.getLogger("Retrieval.Knowledge.Service")

MIN_QUERY_LENGTH = 3
MAX_LIMIT = 50
MAX_WEIGHT = 100
ENTRY_SUMMARY_LENGTH = 200
CHUNK_SUMMARY_LENGTH = 150
# Candidate multiplier when post-filters will discard some results
FILTER_OVERFETCH = 3
MAX_PAGE_SIZE = 100

# Parent metadata describing its chunk group
CHUNK_METADATA_KEYS = ("has_chunks", "chunk_id", "chunk_count")

# Index bookkeeping left out of exports
INDEX_METADATA_KEYS = CHUNK_METADATA_KEYS + ("embedding_provider",)

# Base fields an export may carry into a new or overwritten base
IMPORTED_BASE_FIELDS = frozenset(KnowledgeBase.model_fields) - {"id", "user_id", "created_at", "updated_at"}

SETTING_RANGES = {
    "similarity_threshold": (0, 1),
    "vector_search_weight": (0, MAX_WEIGHT),
    "keyword_search_weight": (0, MAX_WEIGHT),
    "chunk_size": (100, 2048),
    "chunk_overlap": (0, 500),
}


def _check_range(field: str, value: Optional[float], low: float, high: float) -> None:
    if value is not None and not (low <= value <= high):
        raise InvalidInput(f"{field} must be between {low} and {high}", field=field)


def _check_weight_total(base: KnowledgeBase) -> None:
    if base.vector_search_weight + base.keyword_search_weight <= 0:
        raise InvalidInput(
            "vector_search_weight and keyword_search_weight cannot both be 0",
            field="vector_search_weight",
        )


def validate_query(query: str) -> str:
    if not isinstance(query, str) or len(query.strip()) < MIN_QUERY_LENGTH:
        raise InvalidInput(
            f"Query must be at least {MIN_QUERY_LENGTH} characters", field="query"
        )
    return query.strip()


def validate_search_params(
    query: str,
    mode: Any = SearchMode.HYBRID,
    limit: int = 10,
    min_similarity: Optional[float] = None,
    vector_weight: Optional[float] = None,
    keyword_weight: Optional[float] = None,
) -> Tuple[str, SearchMode]:
    """Reject malformed search parameters before any work is done."""
    query = validate_query(query)
    try:
        resolved_mode = SearchMode(mode)
    except ValueError:
        raise InvalidInput(
            f"mode must be one of {', '.join(m.value for m in SearchMode)}", field="mode"
        )
    _check_range("limit", limit, 1, MAX_LIMIT)
    _check_range("min_similarity", min_similarity, 0, 1)
    _check_range("vector_weight", vector_weight, 0, MAX_WEIGHT)
    _check_range("keyword_weight", keyword_weight, 0, MAX_WEIGHT)
    if vector_weight is not None and keyword_weight is not None and vector_weight + keyword_weight <= 0:
        raise InvalidInput("At least one search weight must be positive", field="vector_weight")
    return query, resolved_mode


def paginate(items: List[Any], page: int, per_page: int) -> List[Any]:
    if page < 1:
        raise InvalidInput("page must be at least 1", field="page")
    _check_range("per_page", per_page, 1, MAX_PAGE_SIZE)
    start = (page - 1) * per_page
    return items[start:start + per_page]


def _newest_first(items: List[Any]) -> List[Any]:
    return sorted(items, key=lambda item: (item.created_at, item.id), reverse=True)


def _mentions(entry: KnowledgeEntry, needle: str) -> bool:
    needle = needle.lower()
    return any(needle in (text or "").lower() for text in (entry.title, entry.content, entry.summary))


def apply_filters(entries: Iterable[KnowledgeEntry], filters: SearchFilters) -> List[KnowledgeEntry]:
    kept = []
    for entry in entries:
        if filters.source_type and entry.source_type != filters.source_type:
            continue
        if filters.tags and not all(tag in entry.tags for tag in filters.tags):
            continue
        if not filters.include_chunks and entry.is_chunk:
            continue
        if filters.parent_entry_id and entry.parent_entry_id != filters.parent_entry_id:
            continue
        kept.append(entry)
    return kept


def to_search_result(
    entry: KnowledgeEntry,
    include_metadata: bool = False,
    include_highlights: bool = False,
) -> SearchResult:
    highlights = None
    if include_highlights:
        highlights = entry.keyword_highlights or keyword_importance(entry.content)
    return SearchResult(
        id=entry.id,
        knowledge_base_id=entry.knowledge_base_id,
        title=entry.title,
        content=entry.content,
        summary=entry.summary,
        source_url=entry.source_url,
        source_type=entry.source_type,
        tags=list(entry.tags),
        similarity_score=round(entry.similarity_score or 0.0, 6),
        chunk_id=entry.chunk_id,
        chunk_index=entry.chunk_index,
        parent_entry_id=entry.parent_entry_id,
        keyword_highlights=highlights,
        metadata=dict(entry.metadata) if include_metadata else None,
    )


class KnowledgeBaseCoordinator:
    """
    Unified interface for knowledge operations.

    Constructed with explicit collaborators; nothing is looked up from
    module globals after construction.
    """

    def __init__(
        self,
        store: EntryStore,
        config: EmbeddingConfig,
        chunker: Optional[ContentChunker] = None,
        engine: Optional[HybridSearchEngine] = None,
        embeddings: Optional[EmbeddingProviderFactory] = None,
    ):
        self.store = store
        self.config = config
        self.chunker = chunker or ContentChunker()
        self.embeddings = embeddings or (engine.embeddings if engine else EmbeddingProviderFactory(config))
        self.engine = engine or HybridSearchEngine(store, self.embeddings)

    # ==================== ACCESS ====================

    def resolve_accessible_bases(self, caller: str) -> List[KnowledgeBase]:
        """Active bases the caller owns or that are public."""
        return [
            base for base in self.store.list_knowledge_bases(owner_or_public=caller)
            if base.is_readable_by(caller)
        ]

    def resolve_scope(
        self,
        caller: str,
        knowledge_base_ids: Optional[Sequence[str]] = None,
    ) -> List[KnowledgeBase]:
        """
        Accessible bases, narrowed to ``knowledge_base_ids`` when given.

        Raises:
            NotFound: none of the named bases exist
            AccessDenied: the named bases exist but none are readable
        """
        accessible = self.resolve_accessible_bases(caller)
        if not knowledge_base_ids:
            return accessible

        wanted = list(dict.fromkeys(knowledge_base_ids))
        by_id = {base.id: base for base in accessible}
        scope = [by_id[base_id] for base_id in wanted if base_id in by_id]
        if scope:
            return scope

        if all(self.store.get_knowledge_base(base_id) is None for base_id in wanted):
            raise NotFound("Knowledge base not found", resource_type="knowledge_base")
        raise AccessDenied("You do not have access to the requested knowledge bases")

    def _owned_base(self, caller: str, base_id: str) -> KnowledgeBase:
        base = self.store.get_knowledge_base(base_id)
        if base is None:
            raise NotFound("Knowledge base not found", resource_type="knowledge_base", resource_id=base_id)
        if base.user_id != caller:
            raise AccessDenied("Only the owner can modify this knowledge base")
        return base

    def _readable_base(self, caller: str, base_id: str) -> KnowledgeBase:
        """The owner sees their bases even when inactive; others need an active public base."""
        base = self.store.get_knowledge_base(base_id)
        if base is None:
            raise NotFound("Knowledge base not found", resource_type="knowledge_base", resource_id=base_id)
        if base.user_id != caller and not base.is_readable_by(caller):
            raise AccessDenied("You do not have access to this knowledge base")
        return base

    def _entry_with_base(self, entry_id: str) -> Tuple[KnowledgeEntry, KnowledgeBase]:
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise NotFound("Knowledge entry not found", resource_type="knowledge_entry", resource_id=entry_id)
        base = self.store.get_knowledge_base(entry.knowledge_base_id)
        if base is None:
            raise NotFound(
                "Knowledge base not found",
                resource_type="knowledge_base",
                resource_id=entry.knowledge_base_id,
            )
        return entry, base

    def _readable_entry(self, caller: str, entry_id: str) -> Tuple[KnowledgeEntry, KnowledgeBase]:
        entry, base = self._entry_with_base(entry_id)
        if not base.is_readable_by(caller):
            raise AccessDenied("You do not have access to this knowledge entry")
        return entry, base

    def _owned_entry(self, caller: str, entry_id: str) -> Tuple[KnowledgeEntry, KnowledgeBase]:
        entry, base = self._entry_with_base(entry_id)
        if base.user_id != caller:
            raise AccessDenied("Only the owner can modify this knowledge entry")
        return entry, base

    # ==================== KNOWLEDGE BASES ====================

    def create_knowledge_base(self, caller: str, data: Dict[str, Any]) -> KnowledgeBase:
        fields = {k: v for k, v in data.items() if k not in ("id", "user_id")}
        for field, (low, high) in SETTING_RANGES.items():
            _check_range(field, fields.get(field), low, high)
        try:
            base = KnowledgeBase(user_id=caller, **fields)
        except ValidationError as e:
            raise InvalidInput(f"Invalid knowledge base: {e.errors()[0]['msg']}")
        _check_weight_total(base)
        self.store.save_knowledge_base(base)
        logger.info("Created knowledge base", extra={"knowledge_base_id": base.id, "owner": caller})
        return base

    def update_search_settings(
        self,
        caller: str,
        base_id: str,
        changes: KnowledgeBaseSettings,
    ) -> KnowledgeBase:
        """Owner-only partial update of search and chunking settings."""
        base = self._owned_base(caller, base_id)
        updates = changes.model_dump(exclude_none=True)
        for field, (low, high) in SETTING_RANGES.items():
            _check_range(field, updates.get(field), low, high)

        try:
            updated = KnowledgeBase.model_validate({**base.model_dump(), **updates})
        except ValidationError as e:
            raise InvalidInput(f"Invalid settings: {e.errors()[0]['msg']}")
        _check_weight_total(updated)

        self.store.save_knowledge_base(updated)
        logger.info(
            "Updated knowledge base settings",
            extra={"knowledge_base_id": base_id, "changes": sanitize_for_logging(updates)},
        )
        return updated

    def list_knowledge_bases(
        self,
        caller: str,
        search: Optional[str] = None,
        is_public: Optional[bool] = None,
        source_type: Optional[str] = None,
        page: int = 1,
        per_page: int = 15,
    ) -> List[KnowledgeBase]:
        """Accessible bases, newest first. ``search`` matches name or description."""
        bases = self.resolve_accessible_bases(caller)
        if is_public is not None:
            bases = [base for base in bases if base.is_public == is_public]
        if source_type:
            bases = [base for base in bases if base.source_type == source_type]
        if search:
            needle = search.lower()
            bases = [
                base for base in bases
                if needle in base.name.lower() or needle in (base.description or "").lower()
            ]
        return paginate(_newest_first(bases), page, per_page)

    def get_knowledge_base(self, caller: str, base_id: str) -> KnowledgeBase:
        return self._readable_base(caller, base_id)

    def update_knowledge_base(
        self,
        caller: str,
        base_id: str,
        changes: KnowledgeBaseUpdate,
    ) -> KnowledgeBase:
        """Owner-only update of name, description, source type, metadata and visibility."""
        base = self._owned_base(caller, base_id)
        updates = changes.model_dump(exclude_unset=True)
        try:
            updated = KnowledgeBase.model_validate({**base.model_dump(), **updates})
        except ValidationError as e:
            raise InvalidInput(f"Invalid knowledge base: {e.errors()[0]['msg']}")

        self.store.save_knowledge_base(updated)
        logger.info(
            "Updated knowledge base",
            extra={"knowledge_base_id": base_id, "changes": sanitize_for_logging(updates)},
        )
        return updated

    def delete_knowledge_base(self, caller: str, base_id: str) -> int:
        """Owner-only hard delete of a base and all its entries; returns the entries removed."""
        base = self._owned_base(caller, base_id)
        removed = self.store.delete_knowledge_base(base.id)
        logger.info("Deleted knowledge base", extra={"knowledge_base_id": base.id, "entries_removed": removed})
        return removed

    def list_entries(
        self,
        caller: str,
        base_id: str,
        search: Optional[str] = None,
        source_type: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        include_chunks: bool = False,
        page: int = 1,
        per_page: int = 20,
    ) -> List[KnowledgeEntry]:
        """Active entries of a readable base, newest first."""
        base = self._readable_base(caller, base_id)
        filters = SearchFilters(source_type=source_type, tags=list(tags or []), include_chunks=include_chunks)
        entries = apply_filters(self.store.list_entries([base.id], active_only=True), filters)
        if search:
            entries = [entry for entry in entries if _mentions(entry, search)]
        return paginate(_newest_first(entries), page, per_page)

    # ==================== EXPORT / IMPORT ====================

    def export_knowledge_base(self, caller: str, base_id: str) -> KnowledgeBaseExport:
        """The base and its parent entries. Chunks and vectors are rebuilt on import."""
        base = self._readable_base(caller, base_id)
        parents = sorted(self.store.list_parent_entries(base.id), key=lambda e: (e.created_at, e.id))
        fields = set(ExportedEntry.model_fields)
        entries = []
        for entry in parents:
            exported = ExportedEntry.model_validate(entry.model_dump(include=fields))
            for key in INDEX_METADATA_KEYS:
                exported.metadata.pop(key, None)
            entries.append(exported)
        return KnowledgeBaseExport(knowledge_base=base.model_dump(mode="json"), entries=entries)

    async def import_knowledge_base(
        self,
        caller: str,
        data: Any,
        overwrite_existing: bool = False,
        generate_embeddings: bool = True,
    ) -> ImportResult:
        """
        Create a base owned by the caller from an export.

        With ``overwrite_existing`` an exported base id the caller already
        owns is updated in place, and exported entries whose id already
        exists in that base replace the stored ones. Without it, entries
        whose id already exists are skipped.
        """
        if not isinstance(data, KnowledgeBaseExport):
            try:
                data = KnowledgeBaseExport.model_validate(data)
            except ValidationError as e:
                raise InvalidInput(f"Invalid export: {e.errors()[0]['msg']}")

        fields = {k: v for k, v in data.knowledge_base.items() if k in IMPORTED_BASE_FIELDS}
        base = None
        exported_id = data.knowledge_base.get("id")
        if overwrite_existing and exported_id:
            existing = self.store.get_knowledge_base(exported_id)
            if existing is not None and existing.user_id == caller:
                try:
                    changes = KnowledgeBaseUpdate.model_validate(
                        {k: v for k, v in fields.items() if k in KnowledgeBaseUpdate.model_fields}
                    )
                except ValidationError as e:
                    raise InvalidInput(f"Invalid knowledge base: {e.errors()[0]['msg']}")
                base = self.update_knowledge_base(caller, existing.id, changes)
        if base is None:
            base = self.create_knowledge_base(caller, fields)

        result = ImportResult(knowledge_base=base)
        for item in data.entries:
            existing_entry = self.store.get_entry(item.id) if item.id else None
            if existing_entry is not None:
                if not overwrite_existing:
                    result.entries_skipped += 1
                    continue
                if existing_entry.knowledge_base_id == base.id:
                    self._delete_with_chunks(existing_entry)

            entry = KnowledgeEntry(knowledge_base_id=base.id, **item.model_dump(exclude={"id"}))
            try:
                ingested = await self.ingest(entry, base, generate_embeddings)
            except Exception as e:
                logger.error(f"Import failed for entry '{item.title}': {e}")
                result.failed_count += 1
                continue
            result.entries_imported += 1
            result.failed_count += ingested.failed_count

        logger.info(
            "Imported knowledge base",
            extra={
                "knowledge_base_id": base.id,
                "imported": result.entries_imported,
                "skipped": result.entries_skipped,
            },
        )
        return result

    # ==================== INGESTION ====================

    async def ingest(
        self,
        entry: KnowledgeEntry,
        base: KnowledgeBase,
        generate_embeddings: bool = True,
    ) -> IngestResult:
        """
        Save an entry, chunk it when the base asks for that, then embed.

        A failure while saving chunks rolls the chunks back and leaves the
        parent unflagged; the parent itself is still saved and embedded.
        """
        entry.knowledge_base_id = base.id
        if not entry.summary:
            entry.summary = summarize(entry.content, ENTRY_SUMMARY_LENGTH)
        self.store.save_entry(entry)

        result = IngestResult(created_entries=[entry])

        if base.auto_chunk_content and not entry.is_chunk:
            try:
                chunks = self._materialize_chunks(entry, base)
                result.created_entries.extend(chunks)
            except Exception as e:
                logger.error(f"Chunking failed for entry {entry.id}: {e}")
                result.failed_count += 1

        if generate_embeddings:
            for created in result.created_entries:
                embedded = await self.embed_entry(created, base, force=True)
                result.processed_count += 1
                if embedded is not None and embedded.used_fallback:
                    result.failed_count += 1

        return result

    async def create_entry(
        self,
        caller: str,
        base_id: str,
        payload: EntryPayload,
        generate_embeddings: bool = True,
    ) -> IngestResult:
        base = self._owned_base(caller, base_id)
        entry = KnowledgeEntry(knowledge_base_id=base.id, **payload.model_dump())
        result = await self.ingest(entry, base, generate_embeddings)
        logger.info(
            "Created knowledge entry",
            extra={"entry_id": entry.id, "knowledge_base_id": base.id, "chunks": len(result.created_entries) - 1},
        )
        return result

    async def bulk_import(
        self,
        caller: str,
        base_id: str,
        payloads: Sequence[Any],
        generate_embeddings: bool = True,
    ) -> IngestResult:
        """Create many entries; one entry's failure does not stop the rest."""
        base = self._owned_base(caller, base_id)
        validated = []
        for index, payload in enumerate(payloads):
            if isinstance(payload, EntryPayload):
                validated.append(payload)
                continue
            try:
                validated.append(EntryPayload.model_validate(payload))
            except ValidationError as e:
                raise InvalidInput(f"Entry {index} is invalid: {e.errors()[0]['msg']}", field=f"entries[{index}]")

        total = IngestResult()
        for payload in validated:
            entry = KnowledgeEntry(knowledge_base_id=base.id, **payload.model_dump())
            try:
                result = await self.ingest(entry, base, generate_embeddings)
            except Exception as e:
                logger.error(f"Bulk import failed for entry '{payload.title}': {e}")
                total.failed_count += 1
                continue
            total.created_entries.extend(result.created_entries)
            total.processed_count += result.processed_count
            total.failed_count += result.failed_count

        logger.info(
            "Bulk import done",
            extra={"knowledge_base_id": base.id, "requested": len(validated), "created": len(total.created_entries)},
        )
        return total

    def _materialize_chunks(self, parent: KnowledgeEntry, base: KnowledgeBase) -> List[KnowledgeEntry]:
        texts = self.chunker.generate_chunks(
            parent.content,
            chunk_size=base.chunk_size,
            chunk_overlap=base.chunk_overlap,
            strategy=base.chunk_strategy,
        )
        if not texts:
            return []

        chunk_id = str(uuid.uuid4())
        saved: List[KnowledgeEntry] = []
        try:
            for index, text in enumerate(texts):
                chunk = KnowledgeEntry(
                    knowledge_base_id=parent.knowledge_base_id,
                    title=f"{parent.title} (Chunk {index + 1})",
                    content=text,
                    summary=summarize(text, CHUNK_SUMMARY_LENGTH),
                    source_url=parent.source_url,
                    source_type=parent.source_type,
                    tags=list(parent.tags),
                    metadata=dict(parent.metadata),
                    is_active=parent.is_active,
                    chunk_id=chunk_id,
                    chunk_index=index,
                    parent_entry_id=parent.id,
                )
                # Chunks never inherit the parent's chunk bookkeeping
                for key in CHUNK_METADATA_KEYS:
                    chunk.metadata.pop(key, None)
                self.store.save_entry(chunk)
                saved.append(chunk)
        except Exception:
            for chunk in saved:
                self.store.delete_entry(chunk.id)
            raise

        parent.metadata.update({"has_chunks": True, "chunk_id": chunk_id, "chunk_count": len(saved)})
        self.store.save_entry(parent)
        return saved

    def _remove_chunks(self, parent: KnowledgeEntry) -> int:
        removed = 0
        for chunk in self.store.list_chunks(parent.id):
            if self.store.delete_entry(chunk.id):
                removed += 1
        for key in CHUNK_METADATA_KEYS:
            parent.metadata.pop(key, None)
        self.store.save_entry(parent)
        return removed

    # ==================== EMBEDDINGS ====================

    async def embed_entry(
        self,
        entry: KnowledgeEntry,
        base: KnowledgeBase,
        force: bool = False,
    ) -> Optional[EmbeddingResult]:
        """
        Attach a vector to ``entry``.

        Returns None when the entry already has a vector and ``force`` is
        not set.
        """
        if entry.has_embedding and not force:
            return None

        entry.index_state = IndexState.EMBEDDING_ATTEMPTED
        self.store.save_entry(entry)

        chain = self.embeddings.for_model(base.embedding_model)
        result = await chain.embed(embedding_text(entry.title, entry.content))

        entry.vector_embedding = result.vector
        entry.vector_indexed = True
        entry.index_state = IndexState.INDEXED_VIA_FALLBACK if result.used_fallback else IndexState.INDEXED
        entry.metadata["embedding_provider"] = result.provider.value
        self.store.save_entry(entry)
        return result

    async def bulk_embed(
        self,
        caller: str,
        base_id: str,
        force: bool = False,
        only_unindexed: bool = True,
    ) -> BulkEmbedReport:
        """
        Embed the entries of a base with bounded concurrency.

        ``processed_count`` counts every attempted entry; entries that ended
        up on the deterministic fallback are counted in ``failed_count`` and
        listed in ``fallback_entry_ids``.
        """
        base = self._owned_base(caller, base_id)
        entries = self.store.list_entries([base.id], active_only=False)
        if only_unindexed and not force:
            entries = [entry for entry in entries if not entry.has_embedding]

        semaphore = asyncio.Semaphore(max(1, self.config.embedding_concurrency))

        async def embed_one(entry: KnowledgeEntry) -> Tuple[KnowledgeEntry, Optional[EmbeddingResult], Optional[str]]:
            async with semaphore:
                try:
                    return entry, await self.embed_entry(entry, base, force=True), None
                except Exception as e:
                    logger.error(f"Embedding failed for entry {entry.id}: {e}")
                    return entry, None, str(e)

        job_context = (
            CorrelationContext(f"embed-{base.id[:8]}") if get_correlation_id() is None
            else contextlib.nullcontext()
        )
        with job_context:
            outcomes = await asyncio.gather(*(embed_one(entry) for entry in entries))

            report = BulkEmbedReport(processed_count=len(outcomes))
            for entry, result, error in outcomes:
                if error is not None:
                    report.failed_count += 1
                    report.diagnostics.append({"entry_id": entry.id, "error": error})
                elif result is not None and result.used_fallback:
                    report.failed_count += 1
                    report.fallback_entry_ids.append(entry.id)
                    report.diagnostics.append({
                        "entry_id": entry.id,
                        "provider": result.provider.value,
                        "error": result.error,
                    })

            logger.info(
                "Bulk embedding done",
                extra={
                    "knowledge_base_id": base.id,
                    "processed": report.processed_count,
                    "failed": report.failed_count,
                },
            )
        return report

    # ==================== CHUNKING ====================

    async def _chunk(self, entry: KnowledgeEntry, base: KnowledgeBase, force: bool) -> bool:
        if entry.has_chunks and not force:
            return False
        if entry.has_chunks or self.store.list_chunks(entry.id):
            self._remove_chunks(entry)

        chunks = self._materialize_chunks(entry, base)
        for chunk in chunks:
            await self.embed_entry(chunk, base)
        return bool(chunks)

    async def chunk_entry(self, caller: str, entry_id: str, force: bool = False) -> bool:
        """
        Split one entry into chunks.

        Returns False when the entry is already chunked (without ``force``)
        or too short to chunk. ``force`` removes existing chunks first.
        """
        entry, base = self._owned_entry(caller, entry_id)
        if entry.is_chunk:
            raise InvalidInput("Chunk entries cannot be chunked again", field="entry_id")
        return await self._chunk(entry, base, force)

    async def process_knowledge_base_chunking(
        self,
        caller: str,
        base_id: str,
        force: bool = False,
    ) -> ChunkingReport:
        base = self._owned_base(caller, base_id)
        parents = self.store.list_parent_entries(base.id)

        report = ChunkingReport(total=len(parents))
        for entry in parents:
            try:
                chunked = await self._chunk(entry, base, force)
            except Exception as e:
                logger.error(f"Chunking failed for entry {entry.id}: {e}")
                chunked = False
            report.results[entry.id] = chunked
            if chunked:
                report.processed += 1

        logger.info(
            "Knowledge base chunking done",
            extra={"knowledge_base_id": base.id, "processed": report.processed, "total": report.total},
        )
        return report

    # ==================== SEARCH ====================

    async def query(
        self,
        caller: str,
        query: str,
        knowledge_base_ids: Optional[Sequence[str]] = None,
        mode: Any = SearchMode.HYBRID,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
        min_similarity: Optional[float] = None,
        vector_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        include_metadata: bool = False,
        include_highlights: bool = False,
    ) -> List[SearchResult]:
        """
        Search the caller's accessible knowledge.

        Args:
            caller: Opaque user id
            query: Natural language query (at least 3 characters)
            knowledge_base_ids: Restrict to these bases (intersected with access)
            mode: vector, keyword or hybrid
            filters: Post-filters on source type, tags, chunks and parent
            limit: Max results (1-50)
            min_similarity: Vector score floor; defaults to each base's threshold
            vector_weight / keyword_weight: Hybrid weights (0-100); default per base

        Raises:
            InvalidInput, NotFound, AccessDenied
        """
        query, mode = validate_search_params(
            query, mode, limit, min_similarity, vector_weight, keyword_weight
        )
        filters = filters or SearchFilters()
        scope = self.resolve_scope(caller, knowledge_base_ids)
        if not scope:
            return []

        fetch = limit if filters.is_empty else limit * FILTER_OVERFETCH
        if mode == SearchMode.VECTOR:
            hits = await self.engine.vector_search(query, scope, fetch, min_similarity)
        elif mode == SearchMode.KEYWORD:
            hits = await self.engine.keyword_search(query, scope, fetch)
        else:
            hits = await self.engine.hybrid_search(
                query, scope, fetch, min_similarity, vector_weight, keyword_weight
            )

        hits = apply_filters(hits, filters)[:limit]
        logger.info(
            "Knowledge query done",
            extra={"mode": mode.value, "bases": len(scope), "results": len(hits)},
        )
        return [to_search_result(hit, include_metadata, include_highlights) for hit in hits]

    async def find_similar(
        self,
        caller: str,
        entry_id: str,
        limit: int = 5,
        min_similarity: Optional[float] = None,
    ) -> List[SearchResult]:
        _check_range("limit", limit, 1, MAX_LIMIT)
        _check_range("min_similarity", min_similarity, 0, 1)
        entry, base = self._readable_entry(caller, entry_id)
        hits = await self.engine.find_similar_entries(entry, base, limit, min_similarity)
        return [to_search_result(hit) for hit in hits]

    async def search_for_ai_context(
        self,
        caller: str,
        query: str,
        knowledge_base_ids: Optional[Sequence[str]] = None,
        max_results: int = 3,
        min_score: float = 0.7,
    ) -> List[AIContextResult]:
        query = validate_query(query)
        _check_range("max_results", max_results, 1, MAX_LIMIT)
        _check_range("min_score", min_score, 0, 1)
        scope = self.resolve_scope(caller, knowledge_base_ids)
        return await self.engine.search_for_ai_context(query, scope, max_results, min_score)

    # ==================== ENTRY MAINTENANCE ====================

    def _set_active(self, entry: KnowledgeEntry, active: bool) -> None:
        entry.is_active = active
        self.store.save_entry(entry)
        for chunk in self.store.list_chunks(entry.id):
            chunk.is_active = active
            self.store.save_entry(chunk)

    def deactivate_entry(self, caller: str, entry_id: str) -> KnowledgeEntry:
        """Soft delete: the entry and its chunks drop out of search."""
        entry, _ = self._owned_entry(caller, entry_id)
        self._set_active(entry, False)
        return entry

    async def update_entry(
        self,
        caller: str,
        entry_id: str,
        changes: EntryUpdate,
        regenerate_embeddings: bool = True,
    ) -> KnowledgeEntry:
        """
        Owner-only partial update of an entry.

        A new title or content drops the stored vector and highlights, and a
        parent loses its chunks; they are re-chunked when the base has
        auto-chunking on. With ``regenerate_embeddings`` the entry and its
        new chunks are embedded again, otherwise they stay unindexed until
        the next bulk embed.
        """
        entry, base = self._owned_entry(caller, entry_id)
        updates = changes.model_dump(exclude_unset=True)
        try:
            updated = KnowledgeEntry.model_validate({**entry.model_dump(), **updates})
        except ValidationError as e:
            raise InvalidInput(f"Invalid entry: {e.errors()[0]['msg']}")

        if "metadata" in updates:
            for key in CHUNK_METADATA_KEYS:
                if key in entry.metadata:
                    updated.metadata[key] = entry.metadata[key]

        content_changed = updated.title != entry.title or updated.content != entry.content
        if content_changed:
            updated.vector_embedding = None
            updated.vector_indexed = False
            updated.index_state = IndexState.UNINDEXED
            updated.keyword_highlights = None
            updated.metadata.pop("embedding_provider", None)
            if "summary" not in updates:
                length = CHUNK_SUMMARY_LENGTH if updated.is_chunk else ENTRY_SUMMARY_LENGTH
                updated.summary = summarize(updated.content, length)
        self.store.save_entry(updated)

        if content_changed and not updated.is_chunk:
            if self.store.list_chunks(updated.id):
                self._remove_chunks(updated)
            if base.auto_chunk_content:
                try:
                    self._materialize_chunks(updated, base)
                except Exception as e:
                    logger.error(f"Re-chunking failed for entry {updated.id}: {e}")

        if updated.is_active != entry.is_active:
            self._set_active(updated, updated.is_active)

        if content_changed and regenerate_embeddings:
            await self.embed_entry(updated, base, force=True)
            for chunk in self.store.list_chunks(updated.id):
                await self.embed_entry(chunk, base)

        logger.info(
            "Updated knowledge entry",
            extra={"entry_id": updated.id, "fields": sorted(updates), "reindexed": content_changed},
        )
        return self.store.get_entry(updated.id)

    def _delete_with_chunks(self, entry: KnowledgeEntry) -> int:
        removed = 0
        for chunk in self.store.list_chunks(entry.id):
            if self.store.delete_entry(chunk.id):
                removed += 1
        if self.store.delete_entry(entry.id):
            removed += 1

        if entry.parent_entry_id:
            parent = self.store.get_entry(entry.parent_entry_id)
            if parent is not None:
                remaining = len(self.store.list_chunks(parent.id))
                if remaining:
                    parent.metadata["chunk_count"] = remaining
                else:
                    for key in CHUNK_METADATA_KEYS:
                        parent.metadata.pop(key, None)
                self.store.save_entry(parent)
        return removed

    def delete_entry(self, caller: str, entry_id: str) -> int:
        """
        Hard delete an entry and its chunks.

        Deleting a single chunk updates its parent's chunk bookkeeping.
        Returns the number of entries removed.
        """
        entry, _ = self._owned_entry(caller, entry_id)
        removed = self._delete_with_chunks(entry)
        logger.info("Deleted knowledge entry", extra={"entry_id": entry_id, "removed": removed})
        return removed

    async def generate_entry_embedding(
        self,
        caller: str,
        entry_id: str,
        force: bool = True,
    ) -> EntryEmbeddingReport:
        """Embed one entry now. Without ``force`` an existing vector is kept."""
        entry, base = self._owned_entry(caller, entry_id)
        result = await self.embed_entry(entry, base, force=force)
        if result is None:
            return EntryEmbeddingReport(
                entry_id=entry.id,
                provider=entry.metadata.get("embedding_provider", "unknown"),
                used_fallback=entry.index_state == IndexState.INDEXED_VIA_FALLBACK,
                index_state=entry.index_state,
            )
        return EntryEmbeddingReport(
            entry_id=entry.id,
            provider=result.provider.value,
            used_fallback=result.used_fallback,
            index_state=entry.index_state,
            error=result.error,
        )

    def generate_keyword_highlights(self, caller: str, entry_id: str) -> Dict[str, float]:
        """Store the entry's top keywords with importance = frequency / max frequency."""
        entry, _ = self._owned_entry(caller, entry_id)
        entry.keyword_highlights = keyword_importance(entry.content)
        self.store.save_entry(entry)
        return entry.keyword_highlights

    # ==================== STATS & HEALTH ====================

    def _stats_for(self, bases: Sequence[KnowledgeBase]) -> KnowledgeStats:
        entries = self.store.list_entries([base.id for base in bases], active_only=False)

        states: Dict[str, int] = {state.value: 0 for state in IndexState}
        for entry in entries:
            states[entry.index_state.value] += 1

        return KnowledgeStats(
            knowledge_bases=len(bases),
            entries=len(entries),
            active_entries=sum(1 for entry in entries if entry.is_active),
            chunks=sum(1 for entry in entries if entry.is_chunk),
            index_states=states,
            providers=self.embeddings.configured_providers(),
        )

    def get_stats(self, caller: str) -> KnowledgeStats:
        """Counts over the bases the caller can read."""
        return self._stats_for(self.resolve_accessible_bases(caller))

    def get_knowledge_base_stats(self, caller: str, base_id: str) -> KnowledgeStats:
        return self._stats_for([self._readable_base(caller, base_id)])

    def health_check(self) -> Dict[str, Any]:
        """Check if the store answers and which providers are configured."""
        store_ok = False
        try:
            self.store.list_knowledge_bases()
            store_ok = True
        except Exception as e:
            logger.error(f"Store health check failed: {e}")

        providers = self.embeddings.configured_providers()
        return {
            "store": type(self.store).__name__,
            "store_connected": store_ok,
            "providers": providers,
            "semantic_embeddings": providers != ["fallback"],
            "status": "healthy" if store_ok else "unhealthy",
        }


def build_store(backend: Optional[str] = None) -> EntryStore:
    """Store for the configured STORE_BACKEND (memory or supabase)."""
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "supabase":
        from retrieval_service.core.database import get_supabase
        return SupabaseEntryStore(get_supabase())
    if backend != "memory":
        logger.warning(f"Unknown STORE_BACKEND '{backend}', using memory")
    return InMemoryEntryStore()


def create_knowledge_coordinator(
    store: Optional[EntryStore] = None,
    config: Optional[EmbeddingConfig] = None,
) -> KnowledgeBaseCoordinator:
    """Create a coordinator from explicit parts, or from the environment."""
    config = config or EmbeddingConfig.from_env()
    store = store or build_store()
    logger.info(
        "Knowledge coordinator created",
        extra={"store": type(store).__name__, "config": sanitize_for_logging(config)},
    )
    return KnowledgeBaseCoordinator(store=store, config=config)
