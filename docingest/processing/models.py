"""
Data records passed between pipeline stages.

All records are pydantic models so that results can be dumped to JSON
without extra glue. Chunks are frozen once produced.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SourceDocument(BaseModel):
    """An uploaded document as received from the caller."""

    content: bytes = Field(repr=False)
    mime_type: str
    file_name: str

    @property
    def size(self) -> int:
        return len(self.content)


class ExtractionResult(BaseModel):
    """Normalized text and format metadata produced by an extractor."""

    text: str
    format: str
    unit_count: int = Field(ge=0, description="Pages, sheets or slides actually processed")
    total_units: int = Field(ge=0, description="Pages, sheets or slides present in the file")
    word_count: int = Field(default=0, ge=0)
    truncated: bool = Field(default=False, description="Text was cut at the global length limit")
    processing_limited: bool = Field(default=False, description="Unit cap was hit")
    warnings: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TextChunk(BaseModel):
    """A token-budgeted span of sanitized text, optionally prefixed with overlap."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=1)
    text: str
    start: int = Field(ge=0, description="Offset of the chunk body in the source text")
    end: int = Field(ge=0, description="End offset (exclusive) of the chunk body")
    overlap_length: int = Field(default=0, ge=0, description="Characters of overlap prefix in text")
    has_overlap: bool = False
    token_count: int = Field(ge=1)
    character_count: int = Field(ge=0)
    word_count: int = Field(ge=0)
    sentence_count: int = Field(ge=1)
    preview: str
    fits_in_context: bool = True

    @property
    def body(self) -> str:
        """Chunk text without the overlap prefix."""
        if not self.overlap_length:
            return self.text
        return self.text[self.overlap_length:].lstrip("\n")

    @property
    def overlap_text(self) -> str:
        return self.text[:self.overlap_length]


class ChunkingResult(BaseModel):
    """Ordered chunks for one document."""

    chunks: List[TextChunk]
    model: str
    max_tokens_per_chunk: int
    truncated: bool = Field(default=False, description="Chunk cap was hit before the end of the text")

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


class TokenAnalysis(BaseModel):
    """Token count, cost and context fit of a text for one model."""

    token_count: int = Field(ge=0)
    character_count: int = Field(ge=0)
    word_count: int = Field(ge=0)
    model: str
    provider: str
    context_window: int
    exceeds_context: bool
    utilization_percent: float
    input_cost: float
    estimated_output_cost: float
    total_cost: float
    accuracy: Literal["exact", "approximation", "fallback"]
    category: str
    recommended_chunk_size: int
    chunks_needed: int


class ProcessingResult(BaseModel):
    """Everything produced for one processed document."""

    processing_id: str
    file_name: str
    file_size: int
    mime_type: str
    fingerprint: str
    extraction: ExtractionResult
    token_analysis: TokenAnalysis
    chunking: ChunkingResult
    processing_time_ms: int
    cache_hit: bool = False
    stored_result: bool = Field(default=False, description="Served from the analysis store")

    @property
    def chunks(self) -> List[TextChunk]:
        return self.chunking.chunks


class ProcessingStats(BaseModel):
    """Read-only coordinator snapshot."""

    active_jobs: int
    max_concurrent: int
    uptime_seconds: float
    memory_peak_kb: int
    jobs_completed: int
    jobs_failed: int
    jobs_rejected: int
    cache: Optional[Dict[str, Any]] = None
