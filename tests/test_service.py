"""Tests for the knowledge coordinator: access, ingestion, bulk jobs and queries."""

import asyncio

import pytest

from retrieval_service.features.knowledge.models import (
    EntryPayload,
    EntryUpdate,
    IndexState,
    KnowledgeBaseSettings,
    KnowledgeBaseUpdate,
    SearchFilters,
)
from retrieval_service.features.knowledge.service import KnowledgeBaseCoordinator
from retrieval_service.features.knowledge.store import InMemoryEntryStore
from retrieval_service.shared.errors import AccessDenied, InvalidInput, NotFound

from conftest import VOCAB, long_text


class FailingChunkStore(InMemoryEntryStore):
    """Refuses to save the third chunk of any entry."""

    def save_entry(self, entry):
        if entry.chunk_index == 2:
            raise RuntimeError("disk full")
        return super().save_entry(entry)


class TestAccess:
    def test_scope_defaults_to_owned_and_public(self, coordinator, make_base):
        own = make_base("alice")
        public = make_base("bob", is_public=True)
        make_base("bob")
        make_base("alice", is_active=False)
        ids = {base.id for base in coordinator.resolve_scope("alice")}
        assert ids == {own.id, public.id}

    def test_unknown_base_is_not_found(self, coordinator, make_base):
        make_base()
        with pytest.raises(NotFound):
            coordinator.resolve_scope("alice", ["missing"])

    def test_private_base_is_denied(self, coordinator, make_base):
        private = make_base("bob")
        with pytest.raises(AccessDenied):
            coordinator.resolve_scope("alice", [private.id])

    def test_inactive_base_is_denied(self, coordinator, make_base):
        inactive = make_base("alice", is_active=False)
        with pytest.raises(AccessDenied):
            coordinator.resolve_scope("alice", [inactive.id])

    def test_scope_is_intersected(self, coordinator, make_base):
        own = make_base("alice")
        private = make_base("bob")
        assert [b.id for b in coordinator.resolve_scope("alice", [own.id, private.id])] == [own.id]

    def test_only_owner_can_add_entries(self, coordinator, make_base):
        public = make_base("bob", is_public=True)
        payload = EntryPayload(title="Refund", content="refund")
        with pytest.raises(AccessDenied):
            asyncio.run(coordinator.create_entry("alice", public.id, payload))


class TestQueryValidation:
    @pytest.mark.parametrize("kwargs", [
        {"query": "hi"},
        {"query": "   ab   "},
        {"query": "refund", "limit": 0},
        {"query": "refund", "limit": 51},
        {"query": "refund", "mode": "fuzzy"},
        {"query": "refund", "min_similarity": 1.5},
        {"query": "refund", "vector_weight": 0, "keyword_weight": 0},
        {"query": "refund", "vector_weight": 150},
    ])
    def test_rejected_before_any_work(self, coordinator, make_base, remote, kwargs):
        make_base()
        with pytest.raises(InvalidInput):
            asyncio.run(coordinator.query("alice", **kwargs))
        assert remote.calls == []

    def test_invalid_input_wins_over_access(self, coordinator, remote):
        with pytest.raises(InvalidInput):
            asyncio.run(coordinator.query("alice", "no", knowledge_base_ids=["missing"]))

    def test_context_query_validated(self, coordinator, remote):
        with pytest.raises(InvalidInput):
            asyncio.run(coordinator.search_for_ai_context("alice", "ab"))
        assert remote.calls == []


class TestInactiveEntries:
    @pytest.mark.parametrize("mode", ["vector", "keyword", "hybrid"])
    def test_searches_only_see_active_entries(self, coordinator, make_base, add_entry, mode):
        base = make_base()
        entries = [
            add_entry(base, f"Refund note {i}", f"refund billing account {i}")
            for i in range(12)
        ]
        for entry in entries[:3]:
            coordinator.deactivate_entry("alice", entry.id)
        active_ids = {entry.id for entry in entries[3:]}

        results = asyncio.run(coordinator.query("alice", "refund", mode=mode, limit=50, min_similarity=0.0))
        assert {r.id for r in results} == active_ids


class TestIngest:
    def test_short_entry_is_embedded_whole(self, coordinator, make_base, store, remote):
        base = make_base(auto_chunk_content=True)
        result = asyncio.run(coordinator.create_entry(
            "alice", base.id, EntryPayload(title="Refund Policy", content="Refunds take five days.")
        ))
        assert len(result.created_entries) == 1
        assert (result.processed_count, result.failed_count) == (1, 0)

        entry = store.get_entry(result.created_entries[0].id)
        assert entry.index_state == IndexState.INDEXED
        assert entry.vector_indexed
        assert entry.summary == "Refunds take five days."
        assert entry.metadata["embedding_provider"] == "openai"
        assert remote.calls == ["Refund Policy\nRefunds take five days."]

    def test_fallback_counts_as_failed(self, coordinator, make_base, store, remote):
        base = make_base()
        remote.fail_on = lambda text: True
        result = asyncio.run(coordinator.create_entry(
            "alice", base.id, EntryPayload(title="Refund Policy", content="Refunds take five days.")
        ))
        assert (result.processed_count, result.failed_count) == (1, 1)
        entry = store.get_entry(result.created_entries[0].id)
        assert entry.index_state == IndexState.INDEXED_VIA_FALLBACK
        assert entry.has_embedding

    def test_long_entry_is_chunked(self, coordinator, make_base, store):
        base = make_base(auto_chunk_content=True)
        payload = EntryPayload(
            title="Guide",
            content=long_text(),
            tags=["billing"],
            source_url="https://help.example.com/guide",
            metadata={"lang": "en"},
        )
        result = asyncio.run(coordinator.create_entry("alice", base.id, payload))

        parent = store.get_entry(result.created_entries[0].id)
        chunks = store.list_chunks(parent.id)
        assert len(chunks) > 1
        assert parent.has_chunks
        assert parent.metadata["chunk_count"] == len(chunks)
        assert result.processed_count == len(chunks) + 1

        for index, chunk in enumerate(chunks):
            assert chunk.title == f"Guide (Chunk {index + 1})"
            assert chunk.chunk_index == index
            assert chunk.chunk_id == parent.metadata["chunk_id"]
            assert chunk.parent_entry_id == parent.id
            assert chunk.tags == ["billing"]
            assert chunk.source_url == "https://help.example.com/guide"
            assert chunk.metadata["lang"] == "en"
            assert "has_chunks" not in chunk.metadata
            assert chunk.has_embedding

    def test_failed_chunk_save_leaves_parent_unflagged(self, config, embeddings):
        store = FailingChunkStore()
        coordinator = KnowledgeBaseCoordinator(store=store, config=config, embeddings=embeddings)
        base = coordinator.create_knowledge_base("alice", {"name": "Support", "auto_chunk_content": True})

        result = asyncio.run(coordinator.create_entry(
            "alice", base.id, EntryPayload(title="Guide", content=long_text())
        ))
        parent = store.get_entry(result.created_entries[0].id)
        assert not parent.has_chunks
        assert store.list_chunks(parent.id) == []
        assert result.failed_count == 1
        assert parent.has_embedding

    def test_bulk_import_rejects_invalid_payload(self, coordinator, make_base, store):
        base = make_base()
        with pytest.raises(InvalidInput):
            asyncio.run(coordinator.bulk_import("alice", base.id, [
                {"title": "Good", "content": "fine"},
                {"title": "", "content": "missing title"},
            ]))
        assert store.list_entries([base.id]) == []

    def test_bulk_import(self, coordinator, make_base):
        base = make_base()
        result = asyncio.run(coordinator.bulk_import("alice", base.id, [
            {"title": "Refund", "content": "refund"},
            EntryPayload(title="Billing", content="billing"),
        ]))
        assert len(result.created_entries) == 2
        assert (result.processed_count, result.failed_count) == (2, 0)


class TestBulkEmbed:
    def test_fifty_entries_with_five_failures(self, coordinator, make_base, add_entry, store, remote):
        base = make_base()
        entries = [add_entry(base, f"Entry {i:02d}", f"billing note {i}", embed=False) for i in range(50)]
        failing_titles = {f"Entry {i:02d}" for i in range(5)}
        remote.fail_on = lambda text: text.split("\n")[0] in failing_titles

        report = asyncio.run(coordinator.bulk_embed("alice", base.id))

        assert report.processed_count == 50
        assert report.failed_count == 5
        assert set(report.fallback_entry_ids) == {e.id for e in entries[:5]}
        assert len(report.diagnostics) == 5

        stored = store.list_entries([base.id])
        assert all(entry.has_embedding for entry in stored)
        states = {entry.id: entry.index_state for entry in stored}
        assert all(states[e.id] == IndexState.INDEXED_VIA_FALLBACK for e in entries[:5])
        assert all(states[e.id] == IndexState.INDEXED for e in entries[5:])

    def test_skips_embedded_entries_unless_forced(self, coordinator, make_base, add_entry, remote):
        base = make_base()
        add_entry(base, "Refund", "refund")
        add_entry(base, "Billing", "billing", embed=False)
        remote.calls.clear()

        report = asyncio.run(coordinator.bulk_embed("alice", base.id))
        assert report.processed_count == 1
        forced = asyncio.run(coordinator.bulk_embed("alice", base.id, force=True))
        assert forced.processed_count == 2

    def test_owner_only(self, coordinator, make_base):
        base = make_base("bob", is_public=True)
        with pytest.raises(AccessDenied):
            asyncio.run(coordinator.bulk_embed("alice", base.id))


class TestChunking:
    def test_rechunk_requires_force(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())

        assert asyncio.run(coordinator.chunk_entry("alice", entry.id))
        first = [c.id for c in store.list_chunks(entry.id)]
        assert not asyncio.run(coordinator.chunk_entry("alice", entry.id))

        assert asyncio.run(coordinator.chunk_entry("alice", entry.id, force=True))
        second = [c.id for c in store.list_chunks(entry.id)]
        assert len(second) == len(first)
        assert not set(first) & set(second)
        assert all(store.get_entry(cid) is None for cid in first)

    def test_chunks_cannot_be_chunked(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", entry.id))
        chunk = store.list_chunks(entry.id)[0]
        with pytest.raises(InvalidInput):
            asyncio.run(coordinator.chunk_entry("alice", chunk.id))

    def test_short_entry_not_chunked(self, coordinator, make_base, add_entry):
        base = make_base()
        entry = add_entry(base, "Refund", "Refunds take five days.")
        assert not asyncio.run(coordinator.chunk_entry("alice", entry.id))

    def test_process_knowledge_base(self, coordinator, make_base, add_entry):
        base = make_base()
        long_entry = add_entry(base, "Guide", long_text())
        short_entry = add_entry(base, "Refund", "Refunds take five days.")

        report = asyncio.run(coordinator.process_knowledge_base_chunking("alice", base.id))
        assert report.total == 2
        assert report.processed == 1
        assert report.results == {long_entry.id: True, short_entry.id: False}


class TestEntryMaintenance:
    def _chunked(self, coordinator, make_base, add_entry):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", entry.id))
        return entry

    def test_delete_cascades_to_chunks(self, coordinator, make_base, add_entry, store):
        entry = self._chunked(coordinator, make_base, add_entry)
        chunk_count = len(store.list_chunks(entry.id))

        assert coordinator.delete_entry("alice", entry.id) == chunk_count + 1
        assert store.list_entries(None, active_only=False) == []

    def test_deleting_a_chunk_updates_parent(self, coordinator, make_base, add_entry, store):
        entry = self._chunked(coordinator, make_base, add_entry)
        chunks = store.list_chunks(entry.id)

        assert coordinator.delete_entry("alice", chunks[0].id) == 1
        parent = store.get_entry(entry.id)
        assert parent.metadata["chunk_count"] == len(chunks) - 1

    def test_deactivate_cascades(self, coordinator, make_base, add_entry, store):
        entry = self._chunked(coordinator, make_base, add_entry)
        coordinator.deactivate_entry("alice", entry.id)
        assert not store.get_entry(entry.id).is_active
        assert all(not chunk.is_active for chunk in store.list_chunks(entry.id))

    def test_missing_entry(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.delete_entry("alice", "missing")

    def test_keyword_highlights(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Refund", "refund refund refund billing billing")
        highlights = coordinator.generate_keyword_highlights("alice", entry.id)
        assert highlights == {"refund": 1.0, "billing": pytest.approx(0.6667)}
        assert store.get_entry(entry.id).keyword_highlights == highlights


class TestSettings:
    def test_update(self, coordinator, make_base):
        base = make_base()
        updated = coordinator.update_search_settings(
            "alice", base.id, KnowledgeBaseSettings(vector_search_weight=50, keyword_search_weight=50)
        )
        assert (updated.vector_search_weight, updated.keyword_search_weight) == (50, 50)
        assert updated.similarity_threshold == base.similarity_threshold

    @pytest.mark.parametrize("changes", [
        {"similarity_threshold": 1.2},
        {"chunk_size": 50},
        {"chunk_overlap": 600},
        {"keyword_search_weight": 101},
    ])
    def test_out_of_range(self, coordinator, make_base, changes):
        base = make_base()
        with pytest.raises(InvalidInput):
            coordinator.update_search_settings("alice", base.id, KnowledgeBaseSettings(**changes))

    def test_owner_only(self, coordinator, make_base):
        base = make_base("bob", is_public=True)
        with pytest.raises(AccessDenied):
            coordinator.update_search_settings("alice", base.id, KnowledgeBaseSettings(chunk_size=256))

    def test_create_validates_ranges(self, coordinator):
        with pytest.raises(InvalidInput):
            coordinator.create_knowledge_base("alice", {"name": "Support", "chunk_size": 10})

    def test_create_rejects_zero_weight_total(self, coordinator, store):
        with pytest.raises(InvalidInput):
            coordinator.create_knowledge_base(
                "bob", {"name": "Shared", "vector_search_weight": 0, "keyword_search_weight": 0}
            )
        assert store.list_knowledge_bases() == []

    def test_update_checks_merged_weights(self, coordinator, make_base):
        base = make_base(vector_search_weight=0, keyword_search_weight=100)
        with pytest.raises(InvalidInput):
            coordinator.update_search_settings("alice", base.id, KnowledgeBaseSettings(keyword_search_weight=0))

        updated = coordinator.update_search_settings("alice", base.id, KnowledgeBaseSettings(vector_search_weight=0))
        assert (updated.vector_search_weight, updated.keyword_search_weight) == (0, 100)

    def test_zero_weight_public_base_does_not_break_other_callers(self, coordinator, store, make_base, add_entry):
        own = make_base("alice")
        policy = add_entry(own, "Refund Policy", "How a refund works.")
        shared = make_base("bob", is_public=True)
        shared.vector_search_weight = 0
        shared.keyword_search_weight = 0
        store.save_knowledge_base(shared)

        results = asyncio.run(coordinator.query("alice", "refund policy", mode="hybrid"))
        assert [r.id for r in results] == [policy.id]


class TestQuery:
    def test_post_filters(self, coordinator, make_base, add_entry):
        base = make_base()
        policy = add_entry(base, "Refund Policy", "refund details", tags=["billing"])
        faq = add_entry(base, "Refund FAQ", "refund questions", source_type="faq")

        by_tag = asyncio.run(coordinator.query(
            "alice", "refund", mode="keyword", filters=SearchFilters(tags=["billing"])
        ))
        assert [r.id for r in by_tag] == [policy.id]

        by_source = asyncio.run(coordinator.query(
            "alice", "refund", mode="keyword", filters=SearchFilters(source_type="faq")
        ))
        assert [r.id for r in by_source] == [faq.id]

    def test_exclude_chunks(self, coordinator, make_base, add_entry):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", entry.id))

        results = asyncio.run(coordinator.query(
            "alice", "billing", mode="keyword", limit=50, filters=SearchFilters(include_chunks=False)
        ))
        assert [r.id for r in results] == [entry.id]

    def test_metadata_and_highlights_are_optional(self, coordinator, make_base, add_entry):
        base = make_base()
        add_entry(base, "Refund Policy", "refund refund details", metadata={"lang": "en"})

        plain = asyncio.run(coordinator.query("alice", "refund", mode="keyword"))
        assert plain[0].metadata is None
        assert plain[0].keyword_highlights is None

        rich = asyncio.run(coordinator.query(
            "alice", "refund", mode="keyword", include_metadata=True, include_highlights=True
        ))
        assert rich[0].metadata["lang"] == "en"
        assert rich[0].keyword_highlights["refund"] == 1.0

    def test_public_base_is_searchable(self, coordinator, make_base, add_entry):
        base = make_base("bob", is_public=True)
        entry = add_entry(base, "Refund Policy", "refund details")
        results = asyncio.run(coordinator.query("alice", "refund", mode="keyword"))
        assert [r.id for r in results] == [entry.id]

    def test_find_similar_checks_access(self, coordinator, make_base, add_entry):
        base = make_base("bob")
        entry = add_entry(base, "Refund Policy", "refund details")
        with pytest.raises(AccessDenied):
            asyncio.run(coordinator.find_similar("alice", entry.id))


class TestStatsAndHealth:
    def test_stats(self, coordinator, make_base, add_entry):
        base = make_base()
        add_entry(base, "Refund", "refund")
        add_entry(base, "Billing", "billing", embed=False)

        stats = coordinator.get_stats("alice")
        assert stats.knowledge_bases == 1
        assert stats.entries == 2
        assert stats.active_entries == 2
        assert stats.chunks == 0
        assert stats.index_states["indexed"] == 1
        assert stats.index_states["unindexed"] == 1
        assert stats.providers == ["openai", "fallback"]

    def test_stats_only_count_readable_bases(self, coordinator, make_base, add_entry):
        own = make_base("alice")
        add_entry(own, "Refund", "refund")
        shared = make_base("bob", is_public=True)
        add_entry(shared, "Billing", "billing")
        private = make_base("bob")
        add_entry(private, "Secret", "password")
        add_entry(private, "Login", "login")

        stats = coordinator.get_stats("alice")
        assert stats.knowledge_bases == 2
        assert stats.entries == 2
        assert coordinator.get_stats("carol").entries == 1

    def test_base_stats_check_access(self, coordinator, make_base, add_entry):
        private = make_base("bob")
        add_entry(private, "Secret", "password")
        add_entry(private, "Login", "login", embed=False)

        stats = coordinator.get_knowledge_base_stats("bob", private.id)
        assert (stats.knowledge_bases, stats.entries) == (1, 2)
        assert stats.index_states["unindexed"] == 1
        with pytest.raises(AccessDenied):
            coordinator.get_knowledge_base_stats("alice", private.id)

    def test_health(self, coordinator):
        health = coordinator.health_check()
        assert health["status"] == "healthy"
        assert health["store"] == "InMemoryEntryStore"
        assert health["semantic_embeddings"] is True


class TestKnowledgeBases:
    def test_list_filters(self, coordinator, make_base):
        own = make_base("alice")
        shared = make_base("bob", name="Billing Docs", description="Invoices and receipts", is_public=True)
        make_base("bob", name="Private notes")

        assert {b.id for b in coordinator.list_knowledge_bases("alice")} == {own.id, shared.id}
        assert [b.id for b in coordinator.list_knowledge_bases("alice", search="invoices")] == [shared.id]
        assert [b.id for b in coordinator.list_knowledge_bases("alice", is_public=False)] == [own.id]
        assert len(coordinator.list_knowledge_bases("alice", page=2, per_page=1)) == 1
        with pytest.raises(InvalidInput):
            coordinator.list_knowledge_bases("alice", per_page=0)

    def test_get_checks_access(self, coordinator, make_base):
        private = make_base("bob")
        inactive = make_base("bob", is_active=False)
        assert coordinator.get_knowledge_base("bob", inactive.id).id == inactive.id
        with pytest.raises(AccessDenied):
            coordinator.get_knowledge_base("alice", private.id)
        with pytest.raises(NotFound):
            coordinator.get_knowledge_base("alice", "missing")

    def test_update_is_owner_only(self, coordinator, make_base):
        base = make_base("alice", description="Old")
        updated = coordinator.update_knowledge_base(
            "alice", base.id, KnowledgeBaseUpdate(name="Help Center", description=None, is_public=True)
        )
        assert (updated.name, updated.description, updated.is_public) == ("Help Center", None, True)
        assert updated.chunk_size == base.chunk_size

        with pytest.raises(AccessDenied):
            coordinator.update_knowledge_base("bob", base.id, KnowledgeBaseUpdate(name="Mine now"))

    def test_delete_cascades_to_entries(self, coordinator, make_base, add_entry, store):
        base = make_base()
        guide = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", guide.id))
        add_entry(base, "Refund", "refund")
        other = make_base()
        kept = add_entry(other, "Billing", "billing")
        total = len(store.list_entries([base.id], active_only=False))

        with pytest.raises(AccessDenied):
            coordinator.delete_knowledge_base("bob", base.id)
        assert coordinator.delete_knowledge_base("alice", base.id) == total

        assert store.get_knowledge_base(base.id) is None
        assert store.list_entries([base.id], active_only=False) == []
        assert store.get_entry(kept.id) is not None
        assert asyncio.run(coordinator.query("alice", "refund", mode="keyword")) == []

    def test_list_entries(self, coordinator, make_base, add_entry):
        base = make_base()
        guide = add_entry(base, "Guide", long_text(), tags=["billing"])
        asyncio.run(coordinator.chunk_entry("alice", guide.id))
        refund = add_entry(base, "Refund Policy", "Refunds take five days.")
        hidden = add_entry(base, "Old policy", "Refunds took ten days.")
        coordinator.deactivate_entry("alice", hidden.id)

        assert {e.id for e in coordinator.list_entries("alice", base.id)} == {guide.id, refund.id}
        assert [e.id for e in coordinator.list_entries("alice", base.id, search="five days")] == [refund.id]
        assert [e.id for e in coordinator.list_entries("alice", base.id, tags=["billing"])] == [guide.id]
        with_chunks = coordinator.list_entries("alice", base.id, include_chunks=True, per_page=100)
        assert any(e.is_chunk for e in with_chunks)

        private = make_base("bob")
        with pytest.raises(AccessDenied):
            coordinator.list_entries("alice", private.id)


class TestEntryUpdate:
    def test_new_content_is_embedded_again(self, coordinator, make_base, add_entry, store, remote):
        base = make_base()
        entry = add_entry(base, "Refund Policy", "refund details")
        coordinator.generate_keyword_highlights("alice", entry.id)

        updated = asyncio.run(coordinator.update_entry(
            "alice", entry.id, EntryUpdate(content="shipping and delivery times")
        ))
        assert remote.calls[-1] == "Refund Policy\nshipping and delivery times"
        assert updated.index_state == IndexState.INDEXED
        assert updated.vector_embedding[VOCAB.index("shipping")] == 1.0
        assert updated.vector_embedding[VOCAB.index("refund")] == 1.0
        assert updated.keyword_highlights is None
        assert updated.summary == "shipping and delivery times"

        results = asyncio.run(coordinator.query("alice", "delivery", mode="vector", min_similarity=0.5))
        assert [r.id for r in results] == [entry.id]

    def test_without_regeneration_entry_leaves_vector_search(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Refund Policy", "refund details")

        updated = asyncio.run(coordinator.update_entry(
            "alice", entry.id, EntryUpdate(title="Refund rules"), regenerate_embeddings=False
        ))
        assert updated.vector_embedding is None
        assert not updated.vector_indexed
        assert updated.index_state == IndexState.UNINDEXED
        assert asyncio.run(coordinator.query("alice", "refund", mode="vector")) == []

        report = asyncio.run(coordinator.bulk_embed("alice", base.id))
        assert report.processed_count == 1

    def test_new_content_is_chunked_again(self, coordinator, make_base, store):
        base = make_base(auto_chunk_content=True)
        result = asyncio.run(coordinator.create_entry(
            "alice", base.id, EntryPayload(title="Guide", content=long_text())
        ))
        parent_id = result.created_entries[0].id
        old_chunk_ids = {chunk.id for chunk in store.list_chunks(parent_id)}
        assert old_chunk_ids

        updated = asyncio.run(coordinator.update_entry(
            "alice", parent_id, EntryUpdate(content=long_text(paragraphs=12, sentences=5))
        ))
        new_chunks = store.list_chunks(parent_id)
        assert new_chunks
        assert old_chunk_ids.isdisjoint(chunk.id for chunk in new_chunks)
        assert all(store.get_entry(chunk_id) is None for chunk_id in old_chunk_ids)
        assert updated.metadata["chunk_count"] == len(new_chunks)
        assert all(chunk.has_embedding for chunk in new_chunks)

    def test_stale_chunks_removed_when_auto_chunk_is_off(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", entry.id))

        updated = asyncio.run(coordinator.update_entry("alice", entry.id, EntryUpdate(content="Short now.")))
        assert store.list_chunks(entry.id) == []
        assert not updated.has_chunks

    def test_metadata_change_keeps_index(self, coordinator, make_base, add_entry, store, remote):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", entry.id))
        calls = len(remote.calls)

        updated = asyncio.run(coordinator.update_entry("alice", entry.id, EntryUpdate(metadata={"lang": "en"})))
        assert updated.metadata["lang"] == "en"
        assert updated.has_chunks
        assert updated.vector_embedding == entry.vector_embedding
        assert len(remote.calls) == calls

    def test_reactivation_cascades_to_chunks(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Guide", long_text())
        asyncio.run(coordinator.chunk_entry("alice", entry.id))
        coordinator.deactivate_entry("alice", entry.id)

        asyncio.run(coordinator.update_entry("alice", entry.id, EntryUpdate(is_active=True)))
        assert store.get_entry(entry.id).is_active
        assert all(chunk.is_active for chunk in store.list_chunks(entry.id))

    def test_owner_only(self, coordinator, make_base, add_entry):
        base = make_base("bob", is_public=True)
        entry = add_entry(base, "Refund Policy", "refund details")
        with pytest.raises(AccessDenied):
            asyncio.run(coordinator.update_entry("alice", entry.id, EntryUpdate(title="Mine")))


class TestEntryEmbedding:
    def test_embeds_one_entry(self, coordinator, make_base, add_entry, store):
        base = make_base()
        entry = add_entry(base, "Refund", "refund", embed=False)

        report = asyncio.run(coordinator.generate_entry_embedding("alice", entry.id))
        assert (report.provider, report.used_fallback) == ("openai", False)
        assert report.index_state == IndexState.INDEXED
        assert store.get_entry(entry.id).has_embedding

    def test_keeps_existing_vector_unless_forced(self, coordinator, make_base, add_entry, remote):
        base = make_base()
        entry = add_entry(base, "Refund", "refund")
        calls = len(remote.calls)

        report = asyncio.run(coordinator.generate_entry_embedding("alice", entry.id, force=False))
        assert report.provider == "openai"
        assert len(remote.calls) == calls

    def test_fallback_is_reported(self, coordinator, make_base, add_entry, remote):
        base = make_base()
        entry = add_entry(base, "Refund", "refund", embed=False)
        remote.fail_on = lambda text: True

        report = asyncio.run(coordinator.generate_entry_embedding("alice", entry.id))
        assert report.used_fallback
        assert report.index_state == IndexState.INDEXED_VIA_FALLBACK
        assert "simulated outage" in report.error


class TestExportImport:
    def _export(self, coordinator, make_base, add_entry):
        base = make_base(description="Help articles")
        guide = add_entry(base, "Guide", long_text(), tags=["billing"])
        asyncio.run(coordinator.chunk_entry("alice", guide.id))
        old = add_entry(base, "Old policy", "Refunds took ten days.")
        coordinator.deactivate_entry("alice", old.id)
        return base, coordinator.export_knowledge_base("alice", base.id)

    def test_export_has_parents_without_vectors(self, coordinator, make_base, add_entry):
        base, export = self._export(coordinator, make_base, add_entry)
        assert export.knowledge_base["id"] == base.id
        assert [e.title for e in export.entries] == ["Guide", "Old policy"]
        assert export.entries[1].is_active is False
        assert "vector_embedding" not in export.entries[0].model_dump()
        assert not set(export.entries[0].metadata) & {"has_chunks", "chunk_id", "chunk_count", "embedding_provider"}

    def test_import_creates_a_new_base(self, coordinator, make_base, add_entry, store):
        base, export = self._export(coordinator, make_base, add_entry)
        data = export.model_dump()
        for entry in data["entries"]:
            entry["id"] = None

        result = asyncio.run(coordinator.import_knowledge_base("bob", data))
        imported = result.knowledge_base
        assert imported.id != base.id
        assert (imported.user_id, imported.description) == ("bob", "Help articles")
        assert (result.entries_imported, result.entries_skipped) == (2, 0)

        entries = store.list_parent_entries(imported.id)
        assert {e.title for e in entries} == {"Guide", "Old policy"}
        assert all(e.has_embedding for e in entries)
        assert not any(e.has_chunks for e in entries)

    def test_existing_entries_are_skipped(self, coordinator, make_base, add_entry):
        _, export = self._export(coordinator, make_base, add_entry)
        result = asyncio.run(coordinator.import_knowledge_base("bob", export))
        assert (result.entries_imported, result.entries_skipped) == (0, 2)

    def test_overwrite_replaces_own_base_in_place(self, coordinator, make_base, add_entry, store):
        base, export = self._export(coordinator, make_base, add_entry)
        export.knowledge_base["name"] = "Renamed"
        old_ids = {e.id for e in store.list_entries([base.id], active_only=False)}

        result = asyncio.run(coordinator.import_knowledge_base("alice", export, overwrite_existing=True))
        assert result.knowledge_base.id == base.id
        assert result.knowledge_base.name == "Renamed"
        assert result.entries_imported == 2

        parents = store.list_parent_entries(base.id)
        assert len(parents) == 2
        assert old_ids.isdisjoint(e.id for e in store.list_entries([base.id], active_only=False))

    def test_invalid_export(self, coordinator):
        with pytest.raises(InvalidInput):
            asyncio.run(coordinator.import_knowledge_base("alice", {"entries": []}))
