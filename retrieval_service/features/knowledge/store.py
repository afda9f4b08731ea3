"""
Entry storage.

``EntryStore`` is the only thing the search engine reads from. Two
implementations:

- ``InMemoryEntryStore``: entries in an arena keyed by id, plus a chunk-group
  index and a parent index. Default backend and the one tests use.
- ``SupabaseEntryStore``: ``knowledge_bases`` / ``knowledge_entries`` tables,
  with optional native full-text ranking through the
  ``match_knowledge_entries_fulltext`` RPC.

Chunks are never parents: saving an entry whose ``parent_entry_id`` points
at a chunk is rejected, so parent/chunk links cannot form cycles.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from retrieval_service.features.knowledge.models import KnowledgeBase, KnowledgeEntry
from retrieval_service.shared.errors import InvalidInput

logger = logging.getLogger("Retrieval.Knowledge.Store")

ScoredEntry = Tuple[KnowledgeEntry, float]


def _matches_any(entry: KnowledgeEntry, terms: Sequence[str]) -> bool:
    haystack = " ".join([entry.title or "", entry.content or "", entry.summary or ""]).lower()
    return any(term.lower() in haystack for term in terms)


class EntryStore(ABC):
    """Persistence for knowledge bases and their entries."""

    # Knowledge bases

    @abstractmethod
    def get_knowledge_base(self, base_id: str) -> Optional[KnowledgeBase]: ...

    @abstractmethod
    def save_knowledge_base(self, base: KnowledgeBase) -> KnowledgeBase: ...

    @abstractmethod
    def list_knowledge_bases(self, owner_or_public: Optional[str] = None) -> List[KnowledgeBase]:
        """All bases, or only those owned by ``owner_or_public`` or public."""

    @abstractmethod
    def delete_knowledge_base(self, base_id: str) -> int:
        """Remove a base together with its entries; returns the entries removed."""

    # Entries

    @abstractmethod
    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]: ...

    @abstractmethod
    def save_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry: ...

    @abstractmethod
    def delete_entry(self, entry_id: str) -> bool: ...

    @abstractmethod
    def list_entries(
        self,
        base_ids: Optional[Iterable[str]] = None,
        active_only: bool = True,
        embedded_only: bool = False,
    ) -> List[KnowledgeEntry]: ...

    @abstractmethod
    def list_chunks(self, parent_id: str) -> List[KnowledgeEntry]:
        """Chunks of ``parent_id`` ordered by chunk_index."""

    @abstractmethod
    def list_parent_entries(self, base_id: str) -> List[KnowledgeEntry]:
        """Entries of a base that are not chunks."""

    @abstractmethod
    def text_search(self, base_ids: Iterable[str], terms: Sequence[str]) -> List[KnowledgeEntry]:
        """Active entries whose title, content or summary contain any term."""

    def full_text_search(
        self,
        base_ids: Iterable[str],
        query: str,
        limit: int,
    ) -> Optional[List[ScoredEntry]]:
        """Native full-text relevance in [0, 1], or None when unsupported."""
        return None


class InMemoryEntryStore(EntryStore):
    """Arena-backed store. Returns copies so callers never alias stored records."""

    def __init__(self):
        self._bases: Dict[str, KnowledgeBase] = {}
        self._entries: Dict[str, KnowledgeEntry] = {}
        # chunk_id -> chunk entry ids
        self._chunk_groups: Dict[str, List[str]] = {}
        # parent entry id -> chunk entry ids
        self._children: Dict[str, List[str]] = {}

    def get_knowledge_base(self, base_id: str) -> Optional[KnowledgeBase]:
        base = self._bases.get(base_id)
        return base.model_copy(deep=True) if base else None

    def save_knowledge_base(self, base: KnowledgeBase) -> KnowledgeBase:
        base.updated_at = datetime.now(timezone.utc)
        self._bases[base.id] = base.model_copy(deep=True)
        return base

    def list_knowledge_bases(self, owner_or_public: Optional[str] = None) -> List[KnowledgeBase]:
        return [
            base.model_copy(deep=True)
            for base in self._bases.values()
            if owner_or_public is None or base.user_id == owner_or_public or base.is_public
        ]

    def delete_knowledge_base(self, base_id: str) -> int:
        owned = [eid for eid, entry in self._entries.items() if entry.knowledge_base_id == base_id]
        for entry_id in owned:
            self.delete_entry(entry_id)
        self._bases.pop(base_id, None)
        return len(owned)

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    def save_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        if entry.parent_entry_id:
            if entry.parent_entry_id == entry.id:
                raise InvalidInput("An entry cannot be its own parent", field="parent_entry_id")
            parent = self._entries.get(entry.parent_entry_id)
            if parent is not None and parent.is_chunk:
                raise InvalidInput("Chunks cannot have chunks", field="parent_entry_id")

        previous = self._entries.get(entry.id)
        if previous is not None:
            self._unindex(previous)

        entry.updated_at = datetime.now(timezone.utc)
        stored = entry.model_copy(deep=True)
        stored.similarity_score = None
        self._entries[entry.id] = stored
        self._index(stored)
        return entry

    def delete_entry(self, entry_id: str) -> bool:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return False
        self._unindex(entry)
        self._children.pop(entry_id, None)
        return True

    def _index(self, entry: KnowledgeEntry) -> None:
        if entry.chunk_id:
            self._chunk_groups.setdefault(entry.chunk_id, []).append(entry.id)
        if entry.parent_entry_id:
            self._children.setdefault(entry.parent_entry_id, []).append(entry.id)

    def _unindex(self, entry: KnowledgeEntry) -> None:
        if entry.chunk_id and entry.id in self._chunk_groups.get(entry.chunk_id, []):
            self._chunk_groups[entry.chunk_id].remove(entry.id)
            if not self._chunk_groups[entry.chunk_id]:
                del self._chunk_groups[entry.chunk_id]
        if entry.parent_entry_id and entry.id in self._children.get(entry.parent_entry_id, []):
            self._children[entry.parent_entry_id].remove(entry.id)
            if not self._children[entry.parent_entry_id]:
                del self._children[entry.parent_entry_id]

    def list_entries(
        self,
        base_ids: Optional[Iterable[str]] = None,
        active_only: bool = True,
        embedded_only: bool = False,
    ) -> List[KnowledgeEntry]:
        wanted = set(base_ids) if base_ids is not None else None
        return [
            entry.model_copy(deep=True)
            for entry in self._entries.values()
            if (wanted is None or entry.knowledge_base_id in wanted)
            and (not active_only or entry.is_active)
            and (not embedded_only or entry.has_embedding)
        ]

    def list_chunks(self, parent_id: str) -> List[KnowledgeEntry]:
        chunks = [self._entries[cid] for cid in self._children.get(parent_id, [])]
        chunks.sort(key=lambda e: (e.chunk_index if e.chunk_index is not None else 0, e.id))
        return [chunk.model_copy(deep=True) for chunk in chunks]

    def list_parent_entries(self, base_id: str) -> List[KnowledgeEntry]:
        return [
            entry.model_copy(deep=True)
            for entry in self._entries.values()
            if entry.knowledge_base_id == base_id and not entry.parent_entry_id
        ]

    def text_search(self, base_ids: Iterable[str], terms: Sequence[str]) -> List[KnowledgeEntry]:
        if not terms:
            return []
        return [entry for entry in self.list_entries(base_ids) if _matches_any(entry, terms)]


class SupabaseEntryStore(EntryStore):
    """Store backed by Supabase tables."""

    BASES_TABLE = "knowledge_bases"
    ENTRIES_TABLE = "knowledge_entries"
    FULLTEXT_RPC = "match_knowledge_entries_fulltext"

    def __init__(self, client):
        """Initialize with Supabase client."""
        self.client = client
        self._fulltext_supported = True

    @staticmethod
    def _to_entry(row: dict) -> KnowledgeEntry:
        vector = row.get("vector_embedding")
        # pgvector columns come back as their text form
        if isinstance(vector, str):
            row = {**row, "vector_embedding": json.loads(vector)}
        return KnowledgeEntry.model_validate(row)

    # Knowledge bases

    def get_knowledge_base(self, base_id: str) -> Optional[KnowledgeBase]:
        result = self.client.table(self.BASES_TABLE).select("*").eq("id", base_id).limit(1).execute()
        if not result.data:
            return None
        return KnowledgeBase.model_validate(result.data[0])

    def save_knowledge_base(self, base: KnowledgeBase) -> KnowledgeBase:
        base.updated_at = datetime.now(timezone.utc)
        try:
            self.client.table(self.BASES_TABLE).upsert(base.model_dump(mode="json")).execute()
        except Exception as e:
            logger.error(f"Error saving knowledge base {base.id}: {e}")
            raise
        return base

    def list_knowledge_bases(self, owner_or_public: Optional[str] = None) -> List[KnowledgeBase]:
        query = self.client.table(self.BASES_TABLE).select("*")
        if owner_or_public is not None:
            query = query.or_(f"user_id.eq.{owner_or_public},is_public.eq.true")
        result = query.execute()
        return [KnowledgeBase.model_validate(row) for row in result.data or []]

    def delete_knowledge_base(self, base_id: str) -> int:
        removed = self.client.table(self.ENTRIES_TABLE).delete().eq("knowledge_base_id", base_id).execute()
        self.client.table(self.BASES_TABLE).delete().eq("id", base_id).execute()
        return len(removed.data or [])

    # Entries

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        result = self.client.table(self.ENTRIES_TABLE).select("*").eq("id", entry_id).limit(1).execute()
        if not result.data:
            return None
        return self._to_entry(result.data[0])

    def save_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        if entry.parent_entry_id:
            parent = self.get_entry(entry.parent_entry_id)
            if parent is not None and parent.is_chunk:
                raise InvalidInput("Chunks cannot have chunks", field="parent_entry_id")

        entry.updated_at = datetime.now(timezone.utc)
        try:
            self.client.table(self.ENTRIES_TABLE).upsert(entry.model_dump(mode="json")).execute()
        except Exception as e:
            logger.error(f"Error saving knowledge entry {entry.id}: {e}")
            raise
        return entry

    def delete_entry(self, entry_id: str) -> bool:
        result = self.client.table(self.ENTRIES_TABLE).delete().eq("id", entry_id).execute()
        return bool(result.data)

    def list_entries(
        self,
        base_ids: Optional[Iterable[str]] = None,
        active_only: bool = True,
        embedded_only: bool = False,
    ) -> List[KnowledgeEntry]:
        query = self.client.table(self.ENTRIES_TABLE).select("*")
        if base_ids is not None:
            ids = list(base_ids)
            if not ids:
                return []
            query = query.in_("knowledge_base_id", ids)
        if active_only:
            query = query.eq("is_active", True)
        if embedded_only:
            query = query.not_.is_("vector_embedding", "null")
        result = query.execute()
        return [self._to_entry(row) for row in result.data or []]

    def list_chunks(self, parent_id: str) -> List[KnowledgeEntry]:
        result = (
            self.client.table(self.ENTRIES_TABLE)
            .select("*")
            .eq("parent_entry_id", parent_id)
            .order("chunk_index")
            .execute()
        )
        return [self._to_entry(row) for row in result.data or []]

    def list_parent_entries(self, base_id: str) -> List[KnowledgeEntry]:
        result = (
            self.client.table(self.ENTRIES_TABLE)
            .select("*")
            .eq("knowledge_base_id", base_id)
            .is_("parent_entry_id", "null")
            .execute()
        )
        return [self._to_entry(row) for row in result.data or []]

    def text_search(self, base_ids: Iterable[str], terms: Sequence[str]) -> List[KnowledgeEntry]:
        ids = list(base_ids)
        # PostgREST filter syntax reserves these characters
        safe_terms = [t.translate(str.maketrans("", "", ",()*%")) for t in terms]
        safe_terms = [t for t in safe_terms if t]
        if not ids or not safe_terms:
            return []

        conditions = ",".join(
            f"{column}.ilike.*{term}*"
            for term in safe_terms
            for column in ("title", "content", "summary")
        )
        result = (
            self.client.table(self.ENTRIES_TABLE)
            .select("*")
            .in_("knowledge_base_id", ids)
            .eq("is_active", True)
            .or_(conditions)
            .execute()
        )
        return [self._to_entry(row) for row in result.data or []]

    def full_text_search(
        self,
        base_ids: Iterable[str],
        query: str,
        limit: int,
    ) -> Optional[List[ScoredEntry]]:
        if not self._fulltext_supported:
            return None

        ids = list(base_ids)
        try:
            result = self.client.rpc(self.FULLTEXT_RPC, {
                "query_text": query,
                "knowledge_base_ids": ids,
                "match_count": limit,
            }).execute()
        except Exception as e:
            logger.warning(f"Full-text RPC failed, falling back to substring search: {e}")
            self._fulltext_supported = False
            return None

        ranks = {row["id"]: float(row.get("rank") or 0) for row in result.data or []}
        if not ranks:
            return []

        rows = self.client.table(self.ENTRIES_TABLE).select("*").in_("id", list(ranks)).execute()
        scored = []
        for row in rows.data or []:
            entry = self._to_entry(row)
            if entry.is_active:
                scored.append((entry, max(0.0, min(1.0, ranks[entry.id]))))
        return scored
