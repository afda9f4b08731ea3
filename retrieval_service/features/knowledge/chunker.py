"""
Chunking strategies for long knowledge entries.

The goal of chunking is to:
1. Keep chunks small enough for good retrieval precision (~chunk_size tokens)
2. Preserve semantic boundaries (sentences, paragraphs) where possible
3. Carry a short overlap between neighbouring chunks so context survives the cut

Sizes are given in tokens and converted with rough ratios: 1 token is about
4 characters, and about 1.3 tokens make a word.
"""

import re
import logging
from typing import List

from bs4 import BeautifulSoup

from retrieval_service.features.knowledge.models import ChunkStrategy

logger = logging.getLogger("Retrieval.Knowledge.Chunker")

CHARS_PER_TOKEN = 4
TOKENS_PER_WORD = 1.3

# Content shorter than chunk_size * MIN_CONTENT_FACTOR characters is not chunked
MIN_CONTENT_FACTOR = 5

# Thresholds for picking the paragraph strategy in smart mode
SMART_MIN_PARAGRAPH_BREAKS = 10
SMART_MIN_LENGTH = 10000

HTML_TAG_PATTERN = re.compile(r"<(p|div|span|h1|h2|h3)[\s>]", re.IGNORECASE)
SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
PARAGRAPH_SPLIT_PATTERN = re.compile(r"\n\s*\n")
SENTENCE_BOUNDARY_PATTERN = re.compile(r"[.!?]\s+(?=[A-Z])")

BLOCK_TAGS = ["p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr", "br", "blockquote", "pre"]


def looks_like_html(content: str) -> bool:
    return bool(HTML_TAG_PATTERN.search(content))


def html_to_text(html_content: str) -> str:
    """Extract text from HTML; block elements become paragraph breaks."""
    soup = BeautifulSoup(html_content, "html.parser")

    for element in soup(["script", "style", "meta", "link"]):
        element.decompose()

    for element in soup.find_all(BLOCK_TAGS):
        element.insert_before("\n\n")
        element.insert_after("\n\n")

    return soup.get_text()


def strip_tags(content: str) -> str:
    """Plain text of ``content`` with any markup removed."""
    if "<" not in content:
        return content
    return BeautifulSoup(content, "html.parser").get_text(" ")


def clean_content(content: str) -> str:
    """
    Normalise whitespace before chunking.

    Tabs become spaces, runs of spaces collapse, lines are trimmed and runs
    of blank lines collapse to one blank line, so paragraph breaks survive.
    """
    if looks_like_html(content):
        content = html_to_text(content)

    text = content.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    text = re.sub(r"[ \f\v]+", " ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def overlap_tail(chunk: str, overlap_chars: int) -> str:
    """
    Text carried from the end of ``chunk`` into the next one.

    The raw cut is advanced to the last sentence boundary inside it, so the
    next chunk starts on the trailing whole sentence when there is one.
    """
    if overlap_chars <= 0:
        return ""
    if len(chunk) <= overlap_chars:
        return chunk

    tail = chunk[-overlap_chars:]
    boundaries = list(SENTENCE_BOUNDARY_PATTERN.finditer(tail))
    if boundaries:
        return tail[boundaries[-1].end():]
    return tail


def _pack(units: List[str], separator: str, budget: int, overlap_chars: int) -> List[str]:
    """Greedily pack units into chunks of at most ``budget`` characters."""
    chunks: List[str] = []
    current = ""

    for unit in units:
        candidate = f"{current}{separator}{unit}" if current else unit
        if current and len(candidate) > budget:
            chunks.append(current)
            tail = overlap_tail(current, overlap_chars)
            current = f"{tail}{separator}{unit}" if tail else unit
        else:
            current = candidate

    if current:
        chunks.append(current)
    return chunks


def chunk_by_tokens(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    """Fixed windows of words with a word overlap."""
    words = text.split()
    if not words:
        return []

    window = max(1, int(chunk_size / TOKENS_PER_WORD))
    overlap = int(chunk_overlap / TOKENS_PER_WORD)
    step = max(1, window - overlap)

    chunks: List[str] = []
    for start in range(0, len(words), step):
        piece = words[start:start + window]
        # A tiny trailing window adds nothing the previous one lacks
        if chunks and len(piece) < window / 4:
            break
        chunks.append(" ".join(piece))
        if start + window >= len(words):
            break
    return chunks


def split_sentences(text: str) -> List[str]:
    sentences = []
    for sentence in SENTENCE_SPLIT_PATTERN.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        if sentence[-1] not in ".!?":
            sentence += "."
        sentences.append(sentence)
    return sentences


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in PARAGRAPH_SPLIT_PATTERN.split(text) if p.strip()]


def chunk_by_sentences(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    return _pack(
        split_sentences(text),
        separator=" ",
        budget=chunk_size * CHARS_PER_TOKEN,
        overlap_chars=chunk_overlap * CHARS_PER_TOKEN,
    )


def chunk_by_paragraphs(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    return _pack(
        split_paragraphs(text),
        separator="\n\n",
        budget=chunk_size * CHARS_PER_TOKEN,
        overlap_chars=chunk_overlap * CHARS_PER_TOKEN,
    )


def select_smart_strategy(text: str) -> ChunkStrategy:
    """Paragraphs for long, well-structured text; sentences otherwise."""
    paragraph_breaks = len(PARAGRAPH_SPLIT_PATTERN.findall(text))
    if paragraph_breaks > SMART_MIN_PARAGRAPH_BREAKS and len(text) > SMART_MIN_LENGTH:
        return ChunkStrategy.PARAGRAPHS
    return ChunkStrategy.SENTENCES


def resolve_strategy(strategy) -> ChunkStrategy:
    if isinstance(strategy, ChunkStrategy):
        return strategy
    try:
        return ChunkStrategy(str(strategy).lower())
    except ValueError:
        logger.debug(f"Unknown chunk strategy {strategy!r}, using smart")
        return ChunkStrategy.SMART


class ContentChunker:
    """Splits entry content into overlapping chunks."""

    def generate_chunks(
        self,
        content: str,
        chunk_size: int = 512,
        chunk_overlap: int = 50,
        strategy="smart",
    ) -> List[str]:
        """
        Split ``content`` into chunks.

        Args:
            content: Raw entry content, plain text or HTML
            chunk_size: Target chunk size in tokens
            chunk_overlap: Overlap between neighbouring chunks in tokens
            strategy: tokens, sentences, paragraphs or smart (unknown values mean smart)

        Returns:
            A new list of chunk texts; empty when the content is too short to chunk
        """
        text = clean_content(content or "")
        if len(text) < chunk_size * MIN_CONTENT_FACTOR:
            return []

        resolved = resolve_strategy(strategy)
        if resolved == ChunkStrategy.SMART:
            resolved = select_smart_strategy(text)

        if resolved == ChunkStrategy.TOKENS:
            chunks = chunk_by_tokens(text, chunk_size, chunk_overlap)
        elif resolved == ChunkStrategy.PARAGRAPHS:
            chunks = chunk_by_paragraphs(text, chunk_size, chunk_overlap)
        else:
            chunks = chunk_by_sentences(text, chunk_size, chunk_overlap)

        logger.info(
            f"Chunked content into {len(chunks)} chunks",
            extra={"strategy": resolved.value, "content_length": len(text)},
        )
        return chunks
