"""
Interface to an optional external store of finished analyses.

The pipeline never requires a store. When one is configured, finished
results are written under a key derived from the content fingerprint and
the chunking options, and later requests with the same key are served
from it.
"""

from typing import Optional, Protocol, runtime_checkable

from docingest.processing.models import ProcessingResult


def analysis_key(fingerprint: str, model: str, max_tokens_per_chunk: int) -> str:
    return f"{fingerprint}:{model}:{max_tokens_per_chunk}"


@runtime_checkable
class AnalysisStore(Protocol):
    """Async key-value store for ProcessingResult objects."""

    async def get(self, key: str) -> Optional[ProcessingResult]:
        ...

    async def put(self, key: str, result: ProcessingResult) -> None:
        ...
