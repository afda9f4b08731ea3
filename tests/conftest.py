"""Shared fixtures: in-memory store, in-process embedding providers, coordinator."""

import asyncio

import pytest

from retrieval_service.core.config import EmbeddingConfig
from retrieval_service.features.knowledge.embeddings import (
    EmbeddingProvider,
    EmbeddingProviderFactory,
    ProviderKind,
)
from retrieval_service.features.knowledge.models import KnowledgeEntry
from retrieval_service.features.knowledge.service import KnowledgeBaseCoordinator
from retrieval_service.features.knowledge.store import InMemoryEntryStore
from retrieval_service.shared.errors import ProviderRequestFailed

VOCAB = [
    "billing", "refund", "invoice", "password", "account",
    "shipping", "delivery", "payment", "security", "login",
]


def bag_of_words(text: str) -> list:
    words = [w.strip(".,!?:;()\"'").lower() for w in text.split()]
    return [float(words.count(term)) for term in VOCAB]


class FakeRemoteProvider(EmbeddingProvider):
    """Bag-of-words vectors over VOCAB; can be told to fail or stall."""

    kind = ProviderKind.OPENAI

    def __init__(self, config, model, kind=ProviderKind.OPENAI):
        super().__init__(config, model, len(VOCAB))
        self.kind = kind
        self.calls = []
        self.fail_on = lambda text: False
        self.delay = 0.0

    async def _request(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on(text):
            raise ProviderRequestFailed(self.kind.value, "simulated outage")
        return bag_of_words(text)


def long_text(paragraphs: int = 20, sentences: int = 8) -> str:
    """Paragraphs of distinct sentences, each paragraph roughly 600 characters."""
    blocks = []
    for p in range(paragraphs):
        blocks.append(" ".join(
            f"Paragraph {p} sentence {s} explains how the billing account handles item {p * 100 + s}."
            for s in range(sentences)
        ))
    return "\n\n".join(blocks)


@pytest.fixture
def config():
    return EmbeddingConfig(openai_api_key="test-key", embedding_timeout=1.0, embedding_concurrency=4)


@pytest.fixture
def remote(config):
    return FakeRemoteProvider(config, "text-embedding-ada-002")


@pytest.fixture
def embeddings(config, remote):
    return EmbeddingProviderFactory(config, builders={ProviderKind.OPENAI: lambda cfg, model: remote})


@pytest.fixture
def store():
    return InMemoryEntryStore()


@pytest.fixture
def coordinator(store, config, embeddings):
    return KnowledgeBaseCoordinator(store=store, config=config, embeddings=embeddings)


@pytest.fixture
def make_base(coordinator):
    def _make(owner="alice", **fields):
        fields.setdefault("name", "Support")
        fields.setdefault("auto_chunk_content", False)
        return coordinator.create_knowledge_base(owner, fields)
    return _make


@pytest.fixture
def add_entry(coordinator, store):
    """Create and embed an entry directly, bypassing access checks."""
    def _add(base, title, content, embed=True, **fields):
        entry = KnowledgeEntry(knowledge_base_id=base.id, title=title, content=content, **fields)
        asyncio.run(coordinator.ingest(entry, base, generate_embeddings=embed))
        return store.get_entry(entry.id)
    return _add
