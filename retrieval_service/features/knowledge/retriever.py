"""
Retrieval - vector, keyword and hybrid search over knowledge entries.

This is the "read" side of RAG. Every search takes its scope as a sequence
of already access-checked ``KnowledgeBase`` records and only reads from the
store. Returned entries carry their score in ``similarity_score``; ties on
score are broken by ascending entry id so rankings are reproducible.
"""

import logging
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Tuple

from retrieval_service.features.knowledge.embeddings import EmbeddingChain, EmbeddingProviderFactory
from retrieval_service.features.knowledge.keywords import (
    extract_keywords,
    jaccard,
    keyword_relevance,
    query_terms,
)
from retrieval_service.features.knowledge.models import (
    AIContextResult,
    KnowledgeBase,
    KnowledgeEntry,
)
from retrieval_service.features.knowledge.similarity import cosine_similarity
from retrieval_service.features.knowledge.store import EntryStore
from retrieval_service.shared.errors import InvalidInput

logger = logging.getLogger("Retrieval.Knowledge.Retriever")

DEFAULT_SIMILARITY_THRESHOLD = 0.75

# Used for a stored base whose own weights are both 0
DEFAULT_VECTOR_WEIGHT = 70
DEFAULT_KEYWORD_WEIGHT = 30

# Score given to keyword-only matches added to AI context
KEYWORD_CONTEXT_SCORE = 0.7

# Heuristic similarity weights
TAG_WEIGHT = 0.5
KEYWORD_WEIGHT = 0.3
TITLE_WEIGHT = 0.2


def rank(entries: List[KnowledgeEntry], limit: int) -> List[KnowledgeEntry]:
    """Order by score desc, then id asc, and truncate."""
    ordered = sorted(entries, key=lambda e: (-(e.similarity_score or 0.0), e.id))
    return ordered[:limit]


def normalize_weights(vector_weight: float, keyword_weight: float) -> Tuple[float, float]:
    if vector_weight < 0 or keyword_weight < 0:
        raise InvalidInput("Search weights must be non-negative", field="vector_weight")
    total = vector_weight + keyword_weight
    if total <= 0:
        raise InvalidInput("At least one search weight must be positive", field="vector_weight")
    return vector_weight / total, keyword_weight / total


def title_similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, (a or "").lower(), (b or "").lower()).ratio()


class HybridSearchEngine:
    """Scores entries by cosine similarity, keyword relevance, or a blend of both."""

    def __init__(self, store: EntryStore, embeddings: EmbeddingProviderFactory):
        self.store = store
        self.embeddings = embeddings

    def _provider_groups(self, scope: Sequence[KnowledgeBase]) -> Dict[tuple, Tuple[EmbeddingChain, List[str]]]:
        """Bases grouped by resolved embedding provider."""
        groups: Dict[tuple, Tuple[EmbeddingChain, List[str]]] = {}
        for base in scope:
            chain = self.embeddings.for_model(base.embedding_model)
            groups.setdefault(chain.key, (chain, []))[1].append(base.id)
        return groups

    async def vector_search(
        self,
        query: str,
        scope: Sequence[KnowledgeBase],
        limit: int = 10,
        min_similarity: Optional[float] = None,
    ) -> List[KnowledgeEntry]:
        """
        Cosine-similarity search.

        The query is embedded once per distinct provider in scope, and each
        entry is compared with the query vector of its own base's provider.
        Without ``min_similarity`` each entry must reach its base's threshold.
        """
        if not scope:
            return []
        bases = {base.id: base for base in scope}

        hits: List[KnowledgeEntry] = []
        for chain, base_ids in self._provider_groups(scope).values():
            result = await chain.embed(query)
            for entry in self.store.list_entries(base_ids, active_only=True, embedded_only=True):
                base = bases.get(entry.knowledge_base_id)
                threshold = min_similarity
                if threshold is None:
                    threshold = base.similarity_threshold if base else DEFAULT_SIMILARITY_THRESHOLD
                score = cosine_similarity(result.vector, entry.vector_embedding)
                if score >= threshold:
                    entry.similarity_score = score
                    hits.append(entry)

        logger.debug(f"Vector search matched {len(hits)} entries", extra={"bases": len(bases)})
        return rank(hits, limit)

    async def keyword_search(
        self,
        query: str,
        scope: Sequence[KnowledgeBase],
        limit: int = 10,
    ) -> List[KnowledgeEntry]:
        """
        Lexical search.

        Uses the store's native full-text ranking when it has one; otherwise
        scores substring matches with ``keyword_relevance``.
        """
        base_ids = [base.id for base in scope]
        if not base_ids:
            return []

        hits: List[KnowledgeEntry] = []
        native = self.store.full_text_search(base_ids, query, limit)
        if native is not None:
            for entry, score in native:
                if score > 0:
                    entry.similarity_score = score
                    hits.append(entry)
            return rank(hits, limit)

        terms = query_terms(query)
        for entry in self.store.text_search(base_ids, terms):
            score = keyword_relevance(query, entry.title, entry.content)
            if score > 0:
                entry.similarity_score = score
                hits.append(entry)
        return rank(hits, limit)

    async def hybrid_search(
        self,
        query: str,
        scope: Sequence[KnowledgeBase],
        limit: int = 10,
        min_similarity: Optional[float] = None,
        vector_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
    ) -> List[KnowledgeEntry]:
        """
        Weighted blend of vector and keyword scores.

        Weights not given explicitly come from each entry's knowledge base;
        a base with hybrid search switched off contributes vector scores only.
        An entry found by only one side scores 0 on the other.
        """
        if not scope:
            return []

        weights = {}
        for base in scope:
            if vector_weight is None and keyword_weight is None and not base.use_hybrid_search:
                weights[base.id] = (1.0, 0.0)
                continue
            weights[base.id] = normalize_weights(*self._base_weights(base, vector_weight, keyword_weight))

        run_vector = any(wv > 0 for wv, _ in weights.values())
        run_keyword = any(wk > 0 for _, wk in weights.values())

        vector_hits = await self.vector_search(query, scope, limit * 2, min_similarity) if run_vector else []
        keyword_hits = await self.keyword_search(query, scope, limit * 2) if run_keyword else []

        combined: Dict[str, List] = {}
        for entry in vector_hits:
            combined[entry.id] = [entry, entry.similarity_score or 0.0, 0.0]
        for entry in keyword_hits:
            if entry.id in combined:
                combined[entry.id][2] = entry.similarity_score or 0.0
            else:
                combined[entry.id] = [entry, 0.0, entry.similarity_score or 0.0]

        results = []
        for entry, vector_score, keyword_score in combined.values():
            wv, wk = weights[entry.knowledge_base_id]
            entry.similarity_score = vector_score * wv + keyword_score * wk
            results.append(entry)

        logger.info(
            "Hybrid search done",
            extra={"vector_hits": len(vector_hits), "keyword_hits": len(keyword_hits), "merged": len(results)},
        )
        return rank(results, limit)

    @staticmethod
    def _base_weights(
        base: KnowledgeBase,
        vector_weight: Optional[float],
        keyword_weight: Optional[float],
    ) -> Tuple[float, float]:
        """Explicit weights, else the base's own; a stored 0/0 pair reads as 70/30."""
        stored_v, stored_k = base.vector_search_weight, base.keyword_search_weight
        if stored_v + stored_k <= 0:
            logger.warning(
                f"Knowledge base {base.id} has no positive search weight, using "
                f"{DEFAULT_VECTOR_WEIGHT}/{DEFAULT_KEYWORD_WEIGHT}"
            )
            stored_v, stored_k = DEFAULT_VECTOR_WEIGHT, DEFAULT_KEYWORD_WEIGHT
        wv = vector_weight if vector_weight is not None else stored_v
        wk = keyword_weight if keyword_weight is not None else stored_k
        return wv, wk

    async def find_similar_entries(
        self,
        entry: KnowledgeEntry,
        base: KnowledgeBase,
        limit: int = 5,
        min_similarity: Optional[float] = None,
    ) -> List[KnowledgeEntry]:
        """
        Entries of the same base that resemble ``entry``.

        Cosine similarity when ``entry`` has a vector; if that finds nothing
        (or there is no vector), a heuristic of tag overlap, keyword overlap
        and title resemblance.
        """
        excluded = {entry.id}
        if entry.parent_entry_id:
            excluded.add(entry.parent_entry_id)
        excluded.update(chunk.id for chunk in self.store.list_chunks(entry.id))

        candidates = [
            candidate for candidate in self.store.list_entries([base.id], active_only=True)
            if candidate.id not in excluded
        ]

        if entry.has_embedding:
            threshold = min_similarity if min_similarity is not None else base.similarity_threshold
            hits = []
            for candidate in candidates:
                if not candidate.has_embedding:
                    continue
                score = cosine_similarity(entry.vector_embedding, candidate.vector_embedding)
                if score >= threshold:
                    candidate.similarity_score = score
                    hits.append(candidate)
            if hits:
                return rank(hits, limit)

        source_keywords = extract_keywords(entry.content)
        hits = []
        for candidate in candidates:
            score = (
                TAG_WEIGHT * jaccard(entry.tags, candidate.tags)
                + KEYWORD_WEIGHT * jaccard(source_keywords, extract_keywords(candidate.content))
                + TITLE_WEIGHT * title_similarity(entry.title, candidate.title)
            )
            if score <= 0:
                continue
            if min_similarity is not None and score < min_similarity:
                continue
            candidate.similarity_score = score
            hits.append(candidate)
        return rank(hits, limit)

    async def search_for_ai_context(
        self,
        query: str,
        scope: Sequence[KnowledgeBase],
        max_results: int = 3,
        min_score: float = 0.7,
    ) -> List[AIContextResult]:
        """Best vector matches, topped up with keyword matches when short."""
        if not scope:
            return []
        names = {base.id: base.name for base in scope}

        hits = await self.vector_search(query, scope, limit=max_results, min_similarity=min_score)
        if len(hits) < max_results:
            seen = {hit.id for hit in hits}
            for entry in await self.keyword_search(query, scope, limit=max_results):
                if len(hits) >= max_results:
                    break
                if entry.id in seen:
                    continue
                entry.similarity_score = KEYWORD_CONTEXT_SCORE
                hits.append(entry)
                seen.add(entry.id)

        return [
            AIContextResult(
                id=entry.id,
                title=entry.title,
                content=entry.content,
                source_url=entry.source_url,
                score=entry.similarity_score or 0.0,
                knowledge_base_id=entry.knowledge_base_id,
                knowledge_base_name=names.get(entry.knowledge_base_id, ""),
            )
            for entry in hits
        ]


def format_ai_context(results: Sequence[AIContextResult]) -> str:
    """
    Render AI-context results as a prompt block.

    Returns an empty string when there is nothing to add.
    """
    if not results:
        return ""

    parts = [
        "I am providing you with some relevant information from my knowledge base. "
        "Please use this information to help answer the user's question if applicable:\n\n"
    ]
    for index, result in enumerate(results, start=1):
        parts.append(f"--- Information #{index} from {result.knowledge_base_name} ---\n")
        parts.append(f"Title: {result.title}\n")
        parts.append(f"Content: {result.content}\n")
        if result.source_url:
            parts.append(f"Source: {result.source_url}\n")
        if result.score:
            parts.append(f"Relevance: {result.score * 100:.1f}%\n")
        parts.append("---\n\n")

    parts.append(
        "When referencing this information in your response, please cite the source as "
        "[Knowledge Base #X] where X is the information number.\n"
    )
    parts.append(
        "If the provided information doesn't fully answer the query, use your general "
        "knowledge to supplement it.\n"
    )
    return "".join(parts)
