"""Unit tests for document chunking."""

import re
import threading

import pytest

from docingest.errors import ChunkingError
from docingest.processing.chunker import (
    DocumentChunker,
    get_chunking_stats,
    slice_span,
    split_sections,
    split_sentences,
)
from docingest.processing.models import TextChunk
from docingest.processing.tokens import TokenCounter


def squash(text: str) -> str:
    return re.sub(r"\s+", "", text)


def long_single_paragraph(sentences: int) -> str:
    return " ".join(
        f"Sentence number {i} describes the quarterly audit finding in plain words."
        for i in range(sentences)
    )


@pytest.fixture(scope="module")
def chunker() -> DocumentChunker:
    return DocumentChunker(TokenCounter())


@pytest.fixture(scope="module")
def large_document() -> str:
    return long_single_paragraph(2000)


class TestSmallInputs:
    """Inputs that fit in one chunk."""

    def test_fifty_characters_single_chunk(self, chunker) -> None:
        text = "A short note about the audit. Nothing else here."
        result = chunker.chunk_document(text, max_tokens_per_chunk=6000)

        assert result.total_chunks == 1
        chunk = result.chunks[0]
        assert chunk.index == 1
        assert chunk.text == text
        assert not chunk.has_overlap
        assert chunk.sentence_count == 2
        assert not result.truncated

    def test_preview_truncated(self, chunker) -> None:
        text = "word " * 100
        chunk = chunker.chunk_document(text, max_tokens_per_chunk=6000).chunks[0]

        assert chunk.preview == chunk.text[:200] + "..."


class TestParameterValidation:
    """Invalid parameters are rejected before any splitting happens."""

    @pytest.mark.parametrize("budget", [50, 99, 32001, 0, -1, 6000.5, "6000", True])
    def test_invalid_budget(self, chunker, budget) -> None:
        with pytest.raises(ChunkingError, match="max_tokens_per_chunk"):
            chunker.chunk_document("Some text.", max_tokens_per_chunk=budget)

    def test_budget_checked_before_chunking(self, monkeypatch) -> None:
        chunker = DocumentChunker(TokenCounter())

        def fail(*args, **kwargs):
            raise AssertionError("chunking should not start")

        monkeypatch.setattr("docingest.processing.chunker._PackingRun.run", fail)
        with pytest.raises(ChunkingError):
            chunker.chunk_document("Some text.", max_tokens_per_chunk=50)

    def test_empty_text(self, chunker) -> None:
        with pytest.raises(ChunkingError, match="empty"):
            chunker.chunk_document("  \n ", max_tokens_per_chunk=1000)

    def test_missing_model(self, chunker) -> None:
        with pytest.raises(ChunkingError, match="Model"):
            chunker.chunk_document("Some text.", max_tokens_per_chunk=1000, model="")


class TestLargeDocument:
    """A 20,000+ token document without paragraph breaks."""

    @pytest.fixture(scope="class")
    def result(self, chunker, large_document):
        return chunker.chunk_document(large_document, max_tokens_per_chunk=6000, model="gpt-4")

    def test_document_is_large_enough(self, chunker, large_document) -> None:
        assert chunker.token_counter.count_tokens(large_document, "gpt-4") >= 20000

    def test_at_least_four_chunks(self, result) -> None:
        assert result.total_chunks >= 4
        assert [c.index for c in result.chunks] == list(range(1, result.total_chunks + 1))

    def test_token_limit_respected(self, result) -> None:
        assert all(c.token_count <= 6600 for c in result.chunks)

    def test_every_later_chunk_has_overlap(self, result) -> None:
        assert not result.chunks[0].has_overlap
        for chunk in result.chunks[1:]:
            assert chunk.has_overlap
            assert chunk.overlap_text.strip()
            assert chunk.text.startswith(chunk.overlap_text + "\n\n")

    def test_overlap_comes_from_previous_body(self, result) -> None:
        for previous, chunk in zip(result.chunks, result.chunks[1:]):
            assert previous.body.endswith(chunk.overlap_text)

    def test_bodies_reconstruct_input(self, result, large_document) -> None:
        assert squash("".join(c.body for c in result.chunks)) == squash(large_document)
        for chunk in result.chunks:
            assert chunk.body == large_document[chunk.start:chunk.end]

    def test_token_counts_match_text(self, chunker, result) -> None:
        for chunk in result.chunks:
            assert chunk.token_count == chunker.token_counter.count_tokens(chunk.text, "gpt-4")


class TestPackingAndLimits:
    """Budgets, fallbacks and the chunk cap."""

    def test_paragraphs_reconstruct(self, chunker) -> None:
        paragraphs = [f"Paragraph {i}. " + "Controls were tested and documented. " * 8 for i in range(40)]
        text = "\n\n".join(paragraphs)

        result = chunker.chunk_document(text, max_tokens_per_chunk=300)

        assert squash("".join(c.body for c in result.chunks)) == squash(text)
        assert all(c.token_count <= 330 for c in result.chunks)

    def test_oversized_sentence_is_sliced(self, chunker) -> None:
        text = "audit " * 6000
        result = chunker.chunk_document(text, max_tokens_per_chunk=1000)

        assert result.total_chunks > 1
        assert all(c.token_count <= 1100 for c in result.chunks)
        assert squash("".join(c.body for c in result.chunks)) == squash(text)

    def test_chunk_cap_truncates(self) -> None:
        chunker = DocumentChunker(TokenCounter())
        paragraphs = [
            f"Paragraph {i}. " + "Lorem ipsum dolor sit amet consectetur adipiscing elit. " * 5
            for i in range(300)
        ]

        result = chunker.chunk_document("\n\n".join(paragraphs), max_tokens_per_chunk=100)

        assert result.total_chunks == 100
        assert result.truncated
        assert all(c.token_count <= 110 for c in result.chunks)

    def test_custom_chunk_cap(self) -> None:
        chunker = DocumentChunker(TokenCounter(), max_chunk_count=3)
        result = chunker.chunk_document(long_single_paragraph(200), max_tokens_per_chunk=200)

        assert result.total_chunks == 3
        assert result.truncated

    def test_approximate_model(self, chunker) -> None:
        text = long_single_paragraph(300)
        result = chunker.chunk_document(text, max_tokens_per_chunk=1000, model="claude-3-opus")

        assert result.model == "claude-3-opus"
        assert all(c.token_count <= 1100 for c in result.chunks)

    def test_fits_in_context(self, chunker) -> None:
        result = chunker.chunk_document(long_single_paragraph(600), max_tokens_per_chunk=4000, model="gpt-3.5-turbo")

        assert result.chunks[0].token_count > 4096 * 0.8
        assert not result.chunks[0].fits_in_context

    def test_cancellation(self, chunker) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ChunkingError, match="cancelled"):
            chunker.chunk_document("Some text.", max_tokens_per_chunk=1000, cancel=cancel)


class TestFilterChunks:
    """Post-packing filter."""

    @staticmethod
    def make_chunk(index: int, text: str, tokens: int) -> TextChunk:
        return TextChunk(
            index=index, text=text, start=0, end=len(text), token_count=tokens,
            character_count=len(text), word_count=len(text.split()), sentence_count=1, preview=text,
        )

    def test_drops_over_budget_and_renumbers(self, chunker) -> None:
        chunks = [self.make_chunk(1, "a", 50), self.make_chunk(2, "b", 500), self.make_chunk(3, "c", 60)]

        filtered = chunker.filter_chunks(chunks, 100)

        assert [(c.index, c.text) for c in filtered] == [(1, "a"), (2, "c")]

    def test_keeps_first_chunk_when_all_dropped(self, chunker) -> None:
        chunks = [self.make_chunk(1, "   ", 300), self.make_chunk(2, "big", 500)]

        filtered = chunker.filter_chunks(chunks, 100)

        assert [(c.index, c.text) for c in filtered] == [(1, "big")]


class TestSplitting:
    """Span helpers."""

    def test_split_sentences(self) -> None:
        text = "First one. Second one! Third? yes. Fourth"
        assert [text[a:b] for a, b in split_sentences(text)] == ["First one.", "Second one!", "Third? yes.", "Fourth"]

    def test_split_sections_respects_soft_cap(self) -> None:
        text = long_single_paragraph(100)
        sections = split_sections(text, soft_cap=500)

        assert len(sections) > 1
        assert all(end - start <= 500 for start, end in sections)
        assert squash("".join(text[a:b] for a, b in sections)) == squash(text)

    def test_slice_span_prefers_whitespace(self) -> None:
        text = "alpha beta gamma delta epsilon"
        pieces = [text[a:b] for a, b in slice_span(text, 0, len(text), 12)]

        assert all(len(p) <= 12 for p in pieces)
        assert " ".join(pieces) == text

    def test_slice_span_hard_cut(self) -> None:
        text = "x" * 25
        assert [b - a for a, b in slice_span(text, 0, 25, 10)] == [10, 10, 5]


class TestChunkingStats:
    """Summary figures."""

    def test_empty(self) -> None:
        assert get_chunking_stats([])["total_chunks"] == 0

    def test_totals(self, chunker) -> None:
        result = chunker.chunk_document(long_single_paragraph(300), max_tokens_per_chunk=1000)
        stats = get_chunking_stats(result.chunks)

        assert stats["total_chunks"] == result.total_chunks
        assert stats["total_tokens"] == sum(c.token_count for c in result.chunks)
        assert stats["max_tokens"] <= 1100
        assert 0 < stats["efficiency"] <= 100
