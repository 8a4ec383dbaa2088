"""
Document processing modules.

Provides functionality for:
- Upload validation (name, size, MIME type, signature, script scan)
- Text extraction from PDF, DOCX, XLSX, PPTX and plain text
- Content sanitization
- Token counting and cost estimation
- Sentence-aware chunking with overlap
"""

from .chunker import DocumentChunker, get_chunking_stats
from .extractors import ExtractionLimits, TextExtractor, extract_document
from .formats import DocumentFormat
from .sanitizer import ContentSanitizer, sanitize_content
from .tokens import TokenCounter
from .validator import FileValidator

__all__ = [
    "ContentSanitizer",
    "DocumentChunker",
    "DocumentFormat",
    "ExtractionLimits",
    "FileValidator",
    "TextExtractor",
    "TokenCounter",
    "extract_document",
    "get_chunking_stats",
    "sanitize_content",
]
