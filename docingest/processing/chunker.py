"""
Document chunking with token-budgeted greedy packing.

Text is cut into paragraph sections, packed into chunks while the running
token count stays within budget, and each new chunk is prefixed with a few
trailing sentences of the previous one so that context survives the split.
Units that are too large on their own fall back to sentence granularity
and finally to character slicing.

Every chunk body is a contiguous span (``start``/``end``) of the input
text, so joining the bodies in order gives back the input minus the
whitespace between chunks.
"""

import logging
import re
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple

from docingest.errors import ChunkingError
from docingest.processing.models import ChunkingResult, TextChunk
from docingest.processing.tokens import DEFAULT_MODEL, TokenCounter

logger = logging.getLogger(__name__)

Span = Tuple[int, int]

MIN_TOKENS_PER_CHUNK = 100
MAX_TOKENS_PER_CHUNK = 32000
DEFAULT_MAX_TOKENS = 6000
DEFAULT_OVERLAP_TOKENS = 200
MAX_CHUNK_COUNT = 100
SECTION_SOFT_CAP = 3000
MAX_SLICE_CHARS = 10_000
CHARS_PER_TOKEN = 3
PREVIEW_LENGTH = 200
TOKEN_TOLERANCE = 1.1
CONTEXT_FIT_FRACTION = 0.8

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(\[])")


def _trim(text: str, start: int, end: int) -> Optional[Span]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _split_on(pattern: re.Pattern, text: str, start: int, end: int) -> List[Span]:
    spans = []
    pos = start
    for match in pattern.finditer(text, start, end):
        span = _trim(text, pos, match.start())
        if span:
            spans.append(span)
        pos = match.end()
    span = _trim(text, pos, end)
    if span:
        spans.append(span)
    return spans


def split_paragraphs(text: str) -> List[Span]:
    """Spans of blank-line separated paragraphs."""
    return _split_on(_PARAGRAPH_BREAK, text, 0, len(text))


def split_sentences(text: str, start: int = 0, end: Optional[int] = None) -> List[Span]:
    """Heuristic sentence spans: terminal punctuation followed by whitespace and a capital."""
    return _split_on(_SENTENCE_BREAK, text, start, len(text) if end is None else end)


def slice_span(text: str, start: int, end: int, max_chars: int) -> List[Span]:
    """
    Cut a span into pieces of at most max_chars.

    Each cut prefers the last sentence-end punctuation in the second half of
    the window, then the last whitespace past 30% of it, then a hard cut.
    """
    spans = []
    pos = start
    while pos < end:
        cut = min(pos + max_chars, end)
        if cut < end:
            window = text[pos:cut]
            punct = max(window.rfind("."), window.rfind("!"), window.rfind("?"))
            if punct >= max_chars * 0.5:
                cut = pos + punct + 1
            else:
                space = max(window.rfind(" "), window.rfind("\n"), window.rfind("\t"))
                if space >= max_chars * 0.3:
                    cut = pos + space
        span = _trim(text, pos, cut)
        if span:
            spans.append(span)
        pos = cut
    return spans


def split_sections(text: str, soft_cap: int = SECTION_SOFT_CAP) -> List[Span]:
    """
    Paragraph sections, with paragraphs over soft_cap characters regrouped
    from their sentences (or character slices of oversized sentences).
    """
    sections = []
    for p_start, p_end in split_paragraphs(text):
        if p_end - p_start <= soft_cap:
            sections.append((p_start, p_end))
            continue

        current: Optional[Span] = None
        for s_start, s_end in split_sentences(text, p_start, p_end):
            if s_end - s_start <= soft_cap:
                pieces = [(s_start, s_end)]
            else:
                pieces = slice_span(text, s_start, s_end, soft_cap)
            for piece in pieces:
                if current and piece[1] - current[0] <= soft_cap:
                    current = (current[0], piece[1])
                else:
                    if current:
                        sections.append(current)
                    current = piece
        if current:
            sections.append(current)
    return sections


class _PackingRun:
    """State for chunking one document; never shared between documents."""

    def __init__(
        self,
        chunker: "DocumentChunker",
        text: str,
        budget: int,
        model: str,
        cancel: Optional[threading.Event],
    ):
        self.text = text
        self.budget = budget
        self.model = model
        self.cancel = cancel
        self.counter = chunker.token_counter
        self.max_chunks = chunker.max_chunk_count
        self.section_soft_cap = chunker.section_soft_cap
        self.overlap_limit = min(chunker.overlap_tokens, budget // 4)
        self.context_window = self.counter.get_context_window(model)

        self.chunks: List[TextChunk] = []
        self.truncated = False

        self.body: Optional[Span] = None
        self.body_tokens = 0
        self.prefix = ""
        self.prefix_tokens = 0
        self.last_body: Optional[Span] = None

    def count(self, text: str) -> int:
        return self.counter.count_tokens(text, self.model)

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ChunkingError("Document chunking cancelled")

    # Units

    def _fit(self, start: int, end: int) -> Iterator[Tuple[int, int, int]]:
        """Yield character slices re-cut until each one is within budget."""
        pending = [(start, end)]
        while pending:
            a, b = pending.pop(0)
            tokens = self.count(self.text[a:b])
            if tokens <= self.budget or b - a <= 1:
                yield a, b, tokens
                continue
            target = max(1, int((b - a) * self.budget / tokens * 0.9))
            pending[0:0] = slice_span(self.text, a, b, target)

    def units(self) -> Iterator[Tuple[int, int, int]]:
        """Packable units, each within the token budget, in text order."""
        max_chars = min(self.budget * CHARS_PER_TOKEN, MAX_SLICE_CHARS)
        for s_start, s_end in split_sections(self.text, self.section_soft_cap):
            self._check_cancel()
            tokens = self.count(self.text[s_start:s_end])
            if tokens <= self.budget:
                yield s_start, s_end, tokens
                continue

            logger.debug(f"Splitting oversized section ({s_end - s_start} chars, {tokens} tokens)")
            for t_start, t_end in split_sentences(self.text, s_start, s_end):
                sentence_tokens = self.count(self.text[t_start:t_end])
                if sentence_tokens <= self.budget:
                    yield t_start, t_end, sentence_tokens
                    continue
                for a, b in slice_span(self.text, t_start, t_end, max_chars):
                    yield from self._fit(a, b)

    # Overlap

    def _overlap(self, limit: int) -> Tuple[str, int]:
        """Trailing whole sentences of the last closed body within limit tokens, else trailing words."""
        if limit <= 0 or self.last_body is None:
            return "", 0

        body_start, body_end = self.last_body
        window_start = max(body_start, body_end - limit * 8)
        sentences = split_sentences(self.text, window_start, body_end)
        if window_start > body_start and len(sentences) > 1:
            sentences = sentences[1:]

        best, best_tokens = "", 0
        for sent_start, _ in reversed(sentences):
            candidate = self.text[sent_start:body_end]
            tokens = self.count(candidate)
            if tokens > limit:
                break
            best, best_tokens = candidate, tokens
        if best:
            return best, best_tokens

        words = self.text[window_start:body_end].split()
        n = max(1, limit * 3 // 4)
        while n > 0:
            candidate = " ".join(words[-n:])
            tokens = self.count(candidate)
            if tokens <= limit:
                return candidate, tokens
            n //= 2
        return "", 0

    # Packing

    def _open(self, start: int, end: int, tokens: int, with_overlap: bool) -> None:
        self.prefix, self.prefix_tokens = "", 0
        if with_overlap:
            self.prefix, self.prefix_tokens = self._overlap(min(self.overlap_limit, self.budget - tokens - 1))
        self.body = (start, end)
        self.body_tokens = tokens

    def _close(self) -> None:
        body_start, body_end = self.body
        body = self.text[body_start:body_end]
        prefix = self.prefix
        chunk_text = f"{prefix}\n\n{body}" if prefix else body
        tokens = self.count(chunk_text)
        if prefix and tokens > self.budget * TOKEN_TOLERANCE:
            prefix, chunk_text = "", body
            tokens = self.count(body)

        self.chunks.append(self._make_chunk(len(self.chunks) + 1, chunk_text, body_start, body_end, len(prefix), tokens))
        self.last_body = self.body
        self.body = None
        self.body_tokens = 0
        self.prefix, self.prefix_tokens = "", 0

    def _make_chunk(self, index: int, chunk_text: str, start: int, end: int, overlap_length: int, tokens: int) -> TextChunk:
        tokens = max(1, tokens)
        preview = chunk_text if len(chunk_text) <= PREVIEW_LENGTH else chunk_text[:PREVIEW_LENGTH] + "..."
        return TextChunk(
            index=index,
            text=chunk_text,
            start=start,
            end=end,
            overlap_length=overlap_length,
            has_overlap=overlap_length > 0,
            token_count=tokens,
            character_count=len(chunk_text),
            word_count=len(chunk_text.split()),
            sentence_count=max(1, len(split_sentences(chunk_text))),
            preview=preview,
            fits_in_context=tokens <= self.context_window * CONTEXT_FIT_FRACTION,
        )

    def run(self) -> List[TextChunk]:
        for start, end, tokens in self.units():
            if self.body is None:
                self._open(start, end, tokens, with_overlap=bool(self.chunks))
                continue

            running = self.prefix_tokens + self.body_tokens
            if running + 1 + tokens <= self.budget:
                self.body = (self.body[0], end)
                self.body_tokens += tokens + 1
                continue

            self._close()
            if len(self.chunks) >= self.max_chunks:
                logger.warning(f"Maximum chunk count reached ({self.max_chunks}), stopping")
                self.truncated = True
                break
            self._open(start, end, tokens, with_overlap=True)

        if self.body is not None:
            self._close()
        return self.chunks


class DocumentChunker:
    """
    Split documents into token-budgeted chunks with sentence overlap.

    A chunker holds configuration only; it can be shared by concurrent jobs.
    """

    def __init__(
        self,
        token_counter: Optional[TokenCounter] = None,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        max_chunk_count: int = MAX_CHUNK_COUNT,
        section_soft_cap: int = SECTION_SOFT_CAP,
    ):
        """
        Initialize document chunker.

        Args:
            token_counter: Counter used for every budget decision
            overlap_tokens: Upper bound on the overlap prefix (default: 200)
            max_chunk_count: Hard ceiling on chunks per document (default: 100)
            section_soft_cap: Character cap for a paragraph section (default: 3000)
        """
        self.token_counter = token_counter or TokenCounter()
        self.overlap_tokens = overlap_tokens
        self.max_chunk_count = max_chunk_count
        self.section_soft_cap = section_soft_cap

        logger.info(
            f"Initialized chunker: overlap={overlap_tokens}, "
            f"max_chunks={max_chunk_count}, section_cap={section_soft_cap}"
        )

    @staticmethod
    def validate_budget(max_tokens_per_chunk: int, model: str) -> None:
        """
        Raises:
            ChunkingError: For an out-of-range budget or a missing model
        """
        if (
            isinstance(max_tokens_per_chunk, bool)
            or not isinstance(max_tokens_per_chunk, int)
            or not MIN_TOKENS_PER_CHUNK <= max_tokens_per_chunk <= MAX_TOKENS_PER_CHUNK
        ):
            raise ChunkingError(
                f"max_tokens_per_chunk must be an integer between "
                f"{MIN_TOKENS_PER_CHUNK} and {MAX_TOKENS_PER_CHUNK}"
            )
        if not model or not isinstance(model, str):
            raise ChunkingError("Model must be specified")

    def validate_parameters(self, text: str, max_tokens_per_chunk: int, model: str) -> None:
        """
        Raises:
            ChunkingError: For an out-of-range budget, empty text or missing model
        """
        self.validate_budget(max_tokens_per_chunk, model)
        if not text or not text.strip():
            raise ChunkingError("Content is empty")

    def chunk_document(
        self,
        text: str,
        max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS,
        model: str = DEFAULT_MODEL,
        cancel: Optional[threading.Event] = None,
    ) -> ChunkingResult:
        """
        Split text into chunks of at most max_tokens_per_chunk tokens.

        Args:
            text: Sanitized document text
            max_tokens_per_chunk: Token budget per chunk, 100..32000
            model: Model whose tokenizer measures the budget
            cancel: Optional event; chunking aborts once set

        Returns:
            ChunkingResult with chunks indexed from 1

        Raises:
            ChunkingError: For invalid parameters or cancellation
        """
        self.validate_parameters(text, max_tokens_per_chunk, model)

        logger.info(f"Chunking {len(text)} chars, max {max_tokens_per_chunk} tokens per chunk ({model})")

        run = _PackingRun(self, text, max_tokens_per_chunk, model, cancel)
        chunks = self.filter_chunks(run.run(), max_tokens_per_chunk)

        logger.info(
            f"Created {len(chunks)} chunks"
            + (" (truncated at chunk limit)" if run.truncated else "")
            + f": {', '.join(str(c.token_count) for c in chunks)} tokens"
        )
        return ChunkingResult(
            chunks=chunks,
            model=model,
            max_tokens_per_chunk=max_tokens_per_chunk,
            truncated=run.truncated,
        )

    def filter_chunks(self, chunks: List[TextChunk], max_tokens_per_chunk: int) -> List[TextChunk]:
        """
        Drop empty or over-budget chunks and renumber the rest from 1.

        If nothing survives, the first non-empty chunk is kept.
        """
        limit = max_tokens_per_chunk * TOKEN_TOLERANCE
        valid = [
            chunk for chunk in chunks
            if chunk is not None and chunk.text.strip() and 0 < chunk.token_count <= limit
        ]
        if not valid and chunks:
            logger.warning("All chunks filtered out, returning best effort chunk")
            valid = [chunk for chunk in chunks if chunk is not None and chunk.text.strip()][:1]

        valid = valid[:self.max_chunk_count]
        return [
            chunk if chunk.index == i else chunk.model_copy(update={"index": i})
            for i, chunk in enumerate(valid, start=1)
        ]


def get_chunking_stats(chunks: List[TextChunk]) -> Dict[str, Any]:
    """Summary figures for a list of chunks."""
    if not chunks:
        return {
            "total_chunks": 0,
            "total_tokens": 0,
            "average_tokens": 0,
            "min_tokens": 0,
            "max_tokens": 0,
            "total_characters": 0,
            "total_words": 0,
            "efficiency": 0,
        }

    token_counts = [chunk.token_count for chunk in chunks]
    total_tokens = sum(token_counts)
    return {
        "total_chunks": len(chunks),
        "total_tokens": total_tokens,
        "average_tokens": round(total_tokens / len(chunks)),
        "min_tokens": min(token_counts),
        "max_tokens": max(token_counts),
        "total_characters": sum(chunk.character_count for chunk in chunks),
        "total_words": sum(chunk.word_count for chunk in chunks),
        "efficiency": round(total_tokens / (len(chunks) * max(token_counts)) * 100),
    }


# Global instance for convenience
default_chunker = DocumentChunker()


def chunk_document(text: str, **kwargs) -> ChunkingResult:
    """
    Convenience function to chunk a document using default settings.

    Args:
        text: Text to chunk
        **kwargs: Additional arguments passed to DocumentChunker.chunk_document

    Returns:
        ChunkingResult
    """
    return default_chunker.chunk_document(text, **kwargs)
