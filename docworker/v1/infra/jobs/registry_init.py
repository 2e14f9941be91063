"""
Job registry initialization.

Registers a handler for every job type with a job registry. Stages whose
collaborator is not supplied fall back to the simulated handler.
"""

import logging

from docworker.config.settings import Settings
from docworker.v1.core.registries import (
    ChunkEmbedder,
    DocumentChunker,
    DocumentParser,
    JobHandler,
    JobRegistry,
)
from docworker.v1.infra.jobs.handlers import (
    ChunkDocumentHandler,
    CleanupTempHandler,
    EmbedChunksHandler,
    ParseDocumentHandler,
    SimulatedProcessingHandler,
)
from docworker.v1.infra.jobs.models import JobType

logger = logging.getLogger(__name__)

PARSE_JOB_TYPES = (
    JobType.PARSE_PDF.value,
    JobType.PARSE_MARKDOWN.value,
    JobType.PARSE_TEXT.value,
)


def register_job_handlers(
    registry: JobRegistry,
    settings: Settings,
    parser: DocumentParser | None = None,
    chunker: DocumentChunker | None = None,
    embedder: ChunkEmbedder | None = None,
) -> JobRegistry:
    """Register all job handlers with the given registry."""

    logger.info("Registering job handlers")

    simulated = SimulatedProcessingHandler(settings)

    parse_handler: JobHandler = (
        ParseDocumentHandler(settings, parser) if parser else simulated
    )
    for job_type in PARSE_JOB_TYPES:
        registry.register(job_type, parse_handler)

    registry.register(
        JobType.CHUNK_DOCUMENT.value,
        ChunkDocumentHandler(settings, chunker) if chunker else simulated,
    )
    registry.register(
        JobType.EMBED_CHUNKS.value,
        EmbedChunksHandler(settings, embedder) if embedder else simulated,
    )

    # Maintenance job handlers
    registry.register(JobType.CLEANUP_TEMP.value, CleanupTempHandler(settings))

    simulated_stages = [
        name
        for name, collaborator in (
            ("parse", parser),
            ("chunk", chunker),
            ("embed", embedder),
        )
        if collaborator is None
    ]
    if simulated_stages:
        logger.warning(
            "Using simulated handlers for stages without a collaborator",
            extra={"stages": simulated_stages},
        )

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
    return registry
