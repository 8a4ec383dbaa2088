"""
Processing coordinator for untrusted document uploads.

Handles:
- Admission control (fixed concurrency ceiling, no queueing)
- Per-job and per-step deadlines with cooperative cancellation
- One owner-only temp file per job, plus a TTL sweeper as crash backstop
- The validate → extract → sanitize → analyze → chunk pipeline
"""

import asyncio
import os
import resource
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import structlog

from docingest.config import Settings, get_settings
from docingest.errors import (
    CapacityError,
    ExtractionError,
    ExtractionTimeoutError,
    ProcessingError,
    ProcessingTimeoutError,
)
from docingest.integrations.analysis_store import AnalysisStore, analysis_key
from docingest.processing.chunker import DocumentChunker
from docingest.processing.extractors import ExtractionLimits, extract_document
from docingest.processing.formats import DocumentFormat
from docingest.processing.models import (
    ExtractionResult,
    ProcessingResult,
    ProcessingStats,
    SourceDocument,
)
from docingest.processing.sanitizer import ContentSanitizer
from docingest.processing.tokens import TokenCounter
from docingest.processing.validator import FileValidator, sanitize_file_name
from docingest.services.cache import ExtractionCache, content_fingerprint

logger = structlog.get_logger()


@dataclass
class ProcessingJob:
    """Book-keeping for one in-flight document."""

    id: str
    file_name: str
    started_at: float
    deadline: float
    temp_path: Optional[Path] = None
    cancel: threading.Event = field(default_factory=threading.Event)


class ProcessingCoordinator:
    """
    Runs documents through the ingestion pipeline under resource bounds.

    Jobs are independent: a failure, timeout or rejection of one job never
    affects another. Shared state is limited to the read-only model
    registry, the extraction cache and the active-job table, all of which
    are only mutated on the event loop thread.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[AnalysisStore] = None,
        token_counter: Optional[TokenCounter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the coordinator.

        Args:
            settings: Configuration (defaults to environment settings)
            store: Optional external store for finished analyses
            token_counter: Shared token counter (built from settings if omitted)
            clock: Monotonic clock used for deadlines, uptime and the cache
        """
        self.settings = settings or get_settings()
        self.max_concurrent = self.settings.MAX_CONCURRENT_JOBS
        self.job_timeout = self.settings.JOB_TIMEOUT_SECONDS
        self.extraction_timeout = self.settings.EXTRACTION_TIMEOUT_SECONDS
        self.chunking_timeout = self.settings.CHUNKING_TIMEOUT_SECONDS
        self.temp_dir = Path(self.settings.TEMP_DIR)
        self.temp_file_ttl = self.settings.TEMP_FILE_TTL_SECONDS
        self.cleanup_interval = self.settings.CLEANUP_INTERVAL_SECONDS

        self.validator = FileValidator(
            max_file_size=self.settings.MAX_FILE_SIZE,
            scan_bytes=self.settings.MALWARE_SCAN_BYTES,
        )
        self.limits = ExtractionLimits.from_settings(self.settings)
        self.sanitizer = ContentSanitizer()
        self.token_counter = token_counter or TokenCounter(self.settings.MODEL_RATIO_OVERRIDES)
        self.chunker = DocumentChunker(
            token_counter=self.token_counter,
            overlap_tokens=self.settings.CHUNK_OVERLAP_TOKENS,
            max_chunk_count=self.settings.MAX_CHUNK_COUNT,
        )
        self.cache = ExtractionCache(
            max_size=self.settings.EXTRACTION_CACHE_SIZE,
            ttl_seconds=self.settings.EXTRACTION_CACHE_TTL_SECONDS,
            clock=clock,
        )
        self.store = store

        self._clock = clock
        self._started_at = clock()
        self._active: Dict[str, ProcessingJob] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.jobs_rejected = 0

        self._init_temp_dir()
        logger.info(
            "Initialized ProcessingCoordinator",
            max_concurrent=self.max_concurrent,
            temp_dir=str(self.temp_dir),
        )

    # Lifecycle

    def _init_temp_dir(self) -> None:
        """Create the temp directory readable by the owner only."""
        self.temp_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(self.temp_dir, 0o700)

    async def start(self) -> None:
        """Start the periodic temp-file sweeper."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        """Stop the sweeper, signal in-flight jobs and remove every temp file."""
        logger.info("Shutting down processing coordinator", active_jobs=len(self._active))
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        for job in self._active.values():
            job.cancel.set()

        removed = await asyncio.to_thread(self._remove_temp_files, None)
        logger.info("Temp files cleaned up", removed=removed)

    async def __aenter__(self) -> "ProcessingCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # Public API

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    async def process_document(
        self,
        document: SourceDocument,
        model: Optional[str] = None,
        max_tokens_per_chunk: Optional[int] = None,
    ) -> ProcessingResult:
        return await self.process_file(
            document.content,
            document.file_name,
            document.mime_type,
            model=model,
            max_tokens_per_chunk=max_tokens_per_chunk,
        )

    async def process_file(
        self,
        content: bytes,
        file_name: str,
        mime_type: str,
        model: Optional[str] = None,
        max_tokens_per_chunk: Optional[int] = None,
    ) -> ProcessingResult:
        """
        Process one uploaded document end to end.

        Args:
            content: Raw file bytes
            file_name: Name declared by the uploader
            mime_type: MIME type declared by the uploader
            model: Tokenizer/pricing profile (default: settings.DEFAULT_MODEL)
            max_tokens_per_chunk: Chunk budget, 100..32000 (default: 6000)

        Returns:
            ProcessingResult with extraction, token analysis and chunks

        Raises:
            CapacityError: If the concurrency ceiling is reached (retriable)
            ValidationError: If the file is rejected before extraction
            ExtractionError: If no text can be extracted
            ChunkingError: For invalid chunking parameters
            ProcessingTimeoutError: If a step or the job deadline is exceeded
        """
        job_id = str(uuid.uuid4())
        if len(self._active) >= self.max_concurrent:
            self.jobs_rejected += 1
            logger.warning(
                "Processing capacity reached",
                processing_id=job_id,
                active_jobs=len(self._active),
                max_concurrent=self.max_concurrent,
            )
            raise CapacityError(
                "Server busy. Too many files being processed. Please try again later.", job_id=job_id
            )

        now = self._clock()
        job = ProcessingJob(
            id=job_id,
            file_name=sanitize_file_name(file_name),
            started_at=now,
            deadline=now + self.job_timeout,
        )
        self._active[job.id] = job
        log = logger.bind(processing_id=job.id, file_name=job.file_name)
        log.info("Starting secure processing", mime_type=mime_type, size=len(content or b""))

        try:
            result = await asyncio.wait_for(
                self._run_pipeline(
                    job,
                    content,
                    file_name,
                    mime_type,
                    model or self.settings.DEFAULT_MODEL,
                    self.settings.DEFAULT_MAX_TOKENS_PER_CHUNK if max_tokens_per_chunk is None else max_tokens_per_chunk,
                ),
                timeout=self.job_timeout,
            )
        except asyncio.TimeoutError:
            job.cancel.set()
            self.jobs_failed += 1
            log.error("Processing timed out", timeout=self.job_timeout)
            raise ProcessingTimeoutError(
                f"Processing exceeded the {self.job_timeout}s deadline", job_id=job.id, step="job"
            ) from None
        except ProcessingError as e:
            job.cancel.set()
            self.jobs_failed += 1
            if e.job_id is None:
                e.job_id = job.id
            log.error("Processing failed", error=e.message, error_type=type(e).__name__)
            raise
        except Exception as e:
            job.cancel.set()
            self.jobs_failed += 1
            log.exception("Unexpected processing failure")
            raise ProcessingError(f"File processing failed: {e}", job_id=job.id) from e
        finally:
            await self._cleanup_job(job)

        self.jobs_completed += 1
        log.info(
            "Processing completed",
            chunks=result.chunking.total_chunks,
            tokens=result.token_analysis.token_count,
            cache_hit=result.cache_hit,
            duration_ms=result.processing_time_ms,
        )
        return result

    def get_stats(self) -> ProcessingStats:
        """Read-only snapshot for monitoring."""
        return ProcessingStats(
            active_jobs=len(self._active),
            max_concurrent=self.max_concurrent,
            uptime_seconds=round(self._clock() - self._started_at, 3),
            memory_peak_kb=resource.getrusage(resource.RUSAGE_SELF).ru_maxrss,
            jobs_completed=self.jobs_completed,
            jobs_failed=self.jobs_failed,
            jobs_rejected=self.jobs_rejected,
            cache=self.cache.stats(),
        )

    # Pipeline

    async def _run_pipeline(
        self,
        job: ProcessingJob,
        content: bytes,
        file_name: str,
        mime_type: str,
        model: str,
        max_tokens_per_chunk: int,
    ) -> ProcessingResult:
        fmt = self.validator.validate(content, file_name, mime_type)
        self.chunker.validate_budget(max_tokens_per_chunk, model)

        fingerprint = content_fingerprint(content)
        store_key = analysis_key(fingerprint, model, max_tokens_per_chunk)
        stored = await self._store_get(store_key)
        if stored is not None:
            return stored.model_copy(update={"processing_id": job.id, "stored_result": True})

        job.temp_path = await asyncio.to_thread(self._write_temp_file, job.id, content)

        cache_key = f"{fingerprint}:{fmt.value}"
        extraction = self.cache.get(cache_key)
        cache_hit = extraction is not None
        if extraction is None:
            extraction = await self._run_step(
                job, "extraction", self.extraction_timeout,
                self._extract_from_temp, job.temp_path, fmt, job.cancel,
            )
            self.cache.put(cache_key, extraction)

        sanitized = await self._run_step(
            job, "sanitize", self.chunking_timeout,
            self.sanitizer.sanitize, extraction.text,
        )
        if not sanitized:
            raise ExtractionError("No extractable content found in file")
        extraction = extraction.model_copy(update={"text": sanitized, "word_count": len(sanitized.split())})

        analysis = await self._run_step(
            job, "analysis", self.chunking_timeout,
            self.token_counter.analyze, sanitized, model,
        )
        chunking = await self._run_step(
            job, "chunking", self.chunking_timeout,
            self.chunker.chunk_document, sanitized, max_tokens_per_chunk, model, job.cancel,
        )

        result = ProcessingResult(
            processing_id=job.id,
            file_name=job.file_name,
            file_size=len(content),
            mime_type=fmt.mime_type,
            fingerprint=fingerprint,
            extraction=extraction,
            token_analysis=analysis,
            chunking=chunking,
            processing_time_ms=int((self._clock() - job.started_at) * 1000),
            cache_hit=cache_hit,
        )
        await self._store_put(store_key, result)
        return result

    async def _run_step(self, job: ProcessingJob, step: str, timeout: float, func: Callable, *args: Any) -> Any:
        """Run a blocking stage in a worker thread, racing it against its deadline."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError:
            job.cancel.set()
            if step == "extraction":
                raise ExtractionTimeoutError(
                    f"File extraction timed out after {timeout}s", job_id=job.id
                ) from None
            raise ProcessingTimeoutError(
                f"{step.capitalize()} timed out after {timeout}s", job_id=job.id, step=step
            ) from None

    def _extract_from_temp(self, path: Path, fmt: DocumentFormat, cancel: threading.Event) -> ExtractionResult:
        return extract_document(path.read_bytes(), fmt, self.limits, cancel)

    # Analysis store

    async def _store_get(self, key: str):
        if self.store is None:
            return None
        try:
            return await self.store.get(key)
        except Exception as e:
            logger.warning("Analysis store lookup failed", error=str(e))
            return None

    async def _store_put(self, key: str, result: ProcessingResult) -> None:
        if self.store is None:
            return
        try:
            await self.store.put(key, result)
        except Exception as e:
            logger.warning("Analysis store write failed", error=str(e))

    # Temp files

    def _write_temp_file(self, job_id: str, content: bytes) -> Path:
        """Create the job's temp file with owner read/write permissions only."""
        path = self.temp_dir / f"secure_{job_id}_{int(time.time() * 1000)}.tmp"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
        return path

    async def _cleanup_job(self, job: ProcessingJob) -> None:
        self._active.pop(job.id, None)
        if job.temp_path is None:
            return
        try:
            await asyncio.to_thread(job.temp_path.unlink, True)
            logger.debug("Cleaned up temp file", processing_id=job.id)
        except OSError as e:
            logger.warning("Failed to cleanup temp file", processing_id=job.id, error=str(e))

    def _active_temp_paths(self) -> frozenset:
        """Snapshot of in-flight temp files, taken on the event loop thread."""
        return frozenset(job.temp_path for job in self._active.values() if job.temp_path)

    def _remove_temp_files(self, max_age: Optional[float], active_paths: frozenset = frozenset()) -> int:
        """Delete temp files older than max_age seconds (all files when None)."""
        if not self.temp_dir.exists():
            return 0
        now = time.time()
        removed = 0
        for path in self.temp_dir.iterdir():
            try:
                if not path.is_file():
                    continue
                if max_age is not None and (path in active_paths or now - path.stat().st_mtime <= max_age):
                    continue
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to delete temp file", file=path.name, error=str(e))
        return removed

    def sweep_expired_files(self, active_paths: Optional[frozenset] = None) -> int:
        """Delete temp files older than the TTL; returns how many were removed."""
        if active_paths is None:
            active_paths = self._active_temp_paths()
        removed = self._remove_temp_files(self.temp_file_ttl, active_paths)
        if removed:
            logger.info("Cleaned up expired temp files", removed=removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await asyncio.to_thread(self.sweep_expired_files, self._active_temp_paths())
                self.cache.purge_expired()
            except Exception:
                logger.exception("Temp file sweep failed")
