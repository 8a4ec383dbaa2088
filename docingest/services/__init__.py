"""
Job coordination services.

Provides:
- Processing coordination (admission, deadlines, temp files)
- Extraction result caching
"""

from .cache import ExtractionCache, content_fingerprint
from .coordinator import ProcessingCoordinator

__all__ = ["ExtractionCache", "ProcessingCoordinator", "content_fingerprint"]
