"""
Job handlers for the document processing pipeline.

Each handler implements the JobHandler protocol and is registered in the job
registry under the job types it serves. The parsing, chunking and embedding
algorithms themselves live behind collaborator protocols.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from docworker.config.settings import Settings
from docworker.v1.core.exceptions import HandlerError, JobFatalError
from docworker.v1.core.registries import ChunkEmbedder, DocumentChunker, DocumentParser
from docworker.v1.infra.workers.context import JobContext

logger = logging.getLogger(__name__)


class ParseDocumentHandler:
    """
    Job handler for parse_pdf, parse_markdown and parse_text.

    Job row expected:
    - file_path: path of the uploaded source document
    - input_params: parser options, passed through unmodified
    """

    def __init__(self, settings: Settings, parser: DocumentParser):
        self.settings = settings
        self.parser = parser

    async def handle(self, context: JobContext) -> dict[str, Any] | None:
        if not context.file_path:
            raise JobFatalError(
                "file_path is required for parsing", error_code="missing_file_path"
            )

        await context.report_progress(0, 100, "Parsing document")
        context.raise_if_cancelled()

        parsed = await self.parser.parse(
            context.file_path, context.job_type, context.input_params
        )

        context.raise_if_cancelled()
        await context.report_progress(100, 100, "Document parsed")

        logger.info(
            "Document parsed",
            extra={
                "job_id": context.job_id,
                "doc_id": context.doc_id,
                "job_type": context.job_type,
            },
        )

        return {
            "status": "completed",
            "doc_id": context.doc_id,
            "pages": parsed.get("pages"),
            "text_length": len(parsed.get("text") or ""),
            "metadata": parsed.get("metadata", {}),
        }


class ChunkDocumentHandler:
    """Job handler for chunk_document."""

    def __init__(self, settings: Settings, chunker: DocumentChunker):
        self.settings = settings
        self.chunker = chunker

    async def handle(self, context: JobContext) -> dict[str, Any] | None:
        if not context.doc_id:
            raise JobFatalError("doc_id is required for chunking", error_code="missing_doc_id")

        await context.report_progress(0, 100, "Chunking document")
        context.raise_if_cancelled()

        summary = await self.chunker.chunk(context.doc_id, context.input_params)

        context.raise_if_cancelled()
        await context.report_progress(100, 100, "Document chunked")

        return {"status": "completed", "doc_id": context.doc_id, **summary}


class EmbedChunksHandler:
    """Job handler for embed_chunks."""

    def __init__(self, settings: Settings, embedder: ChunkEmbedder):
        self.settings = settings
        self.embedder = embedder

    async def handle(self, context: JobContext) -> dict[str, Any] | None:
        if not context.doc_id:
            raise JobFatalError(
                "doc_id is required for embedding", error_code="missing_doc_id"
            )

        await context.report_progress(0, 100, "Embedding chunks")
        context.raise_if_cancelled()

        summary = await self.embedder.embed(context.doc_id, context.input_params)

        context.raise_if_cancelled()
        await context.report_progress(100, 100, "Chunks embedded")

        return {"status": "completed", "doc_id": context.doc_id, **summary}


_SWEEP_BATCH = 50


def _list_files(temp_dir: Path) -> list[Path]:
    return [p for p in temp_dir.rglob("*") if p.is_file()]


def _sweep_files(paths: list[Path], cutoff: float, dry_run: bool) -> tuple[list[str], int]:
    """Remove files last modified before cutoff. Runs in a worker thread."""
    removed: list[str] = []
    freed_bytes = 0
    for path in paths:
        try:
            stat = path.stat()
        except FileNotFoundError:
            continue
        if stat.st_mtime < cutoff:
            if not dry_run:
                path.unlink(missing_ok=True)
            removed.append(str(path))
            freed_bytes += stat.st_size
    return removed, freed_bytes


class CleanupTempHandler:
    """
    Job handler for cleanup_temp: removes stale files from the temp directory.

    input_params (all optional):
    {
        "max_age_hours": 24,
        "dry_run": false
    }
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(self, context: JobContext) -> dict[str, Any] | None:
        params = context.input_params
        max_age_hours = float(
            params.get("max_age_hours", self.settings.temp_file_max_age_hours)
        )
        dry_run = bool(params.get("dry_run", False))
        temp_dir = Path(params.get("temp_dir", self.settings.temp_dir))

        if not temp_dir.is_dir():
            return {"status": "skipped", "reason": "temp_dir_missing", "temp_dir": str(temp_dir)}

        cutoff = time.time() - max_age_hours * 3600
        candidates = await asyncio.to_thread(_list_files, temp_dir)
        removed: list[str] = []
        freed_bytes = 0

        for start in range(0, len(candidates), _SWEEP_BATCH):
            context.raise_if_cancelled()
            batch = candidates[start : start + _SWEEP_BATCH]
            batch_removed, batch_freed = await asyncio.to_thread(
                _sweep_files, batch, cutoff, dry_run
            )
            removed.extend(batch_removed)
            freed_bytes += batch_freed
            await context.report_progress(
                start + len(batch), len(candidates), "Sweeping temp files"
            )

        await context.report_progress(len(candidates), len(candidates), "Temp sweep finished")

        logger.info(
            "Temp directory cleaned",
            extra={
                "temp_dir": str(temp_dir),
                "removed": len(removed),
                "freed_bytes": freed_bytes,
                "dry_run": dry_run,
            },
        )

        return {
            "status": "dry_run" if dry_run else "completed",
            "scanned": len(candidates),
            "removed": len(removed),
            "freed_bytes": freed_bytes,
        }


class SimulatedProcessingHandler:
    """
    Stand-in handler that walks through weighted processing steps.

    Used for the worker self-test and for job types whose real collaborator
    is not configured. input_params may carry ``step_delay_ms`` to change the
    pace and ``fail_at_step`` (1-based) or ``fatal`` to simulate failures.
    """

    STEPS: list[tuple[str, int]] = [
        ("initialize", 10),
        ("read", 20),
        ("process", 40),
        ("validate", 20),
        ("save", 10),
    ]

    def __init__(self, settings: Settings, step_delay_s: float = 0.5):
        self.settings = settings
        self.step_delay_s = step_delay_s

    async def handle(self, context: JobContext) -> dict[str, Any] | None:
        params = context.input_params
        step_delay_s = params.get("step_delay_ms", self.step_delay_s * 1000) / 1000
        fail_at_step = params.get("fail_at_step")

        if params.get("fatal"):
            raise JobFatalError("Simulated fatal failure", error_code="simulated_fatal")

        started = time.monotonic()
        progress = 0
        for number, (step_name, weight) in enumerate(self.STEPS, start=1):
            context.raise_if_cancelled()

            progress += weight
            await context.report_progress(
                progress,
                100,
                f"Running {step_name}",
                {
                    "step": number,
                    "total_steps": len(self.STEPS),
                    "step_name": step_name,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )

            await asyncio.sleep(step_delay_s)

            if fail_at_step == number:
                raise HandlerError(
                    f"Simulated failure in step '{step_name}'", error_code="simulated_error"
                )

        return {
            "status": "completed",
            "job_id": context.job_id,
            "doc_id": context.doc_id,
            "job_type": context.job_type,
            "steps": [name for name, _ in self.STEPS],
            "duration_ms": int((time.monotonic() - started) * 1000),
            "simulated": True,
        }
