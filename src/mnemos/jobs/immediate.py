"""Entity writer that processes embedding jobs right after creation.

Wrapping the protocol layer's entity writer keeps newly created entities
searchable by vector without waiting for the next scheduled processing pass.
"""

from __future__ import annotations

import structlog

from mnemos.embeddings.types import Entity, EntityWriter
from mnemos.jobs.manager import EmbeddingJobManager

logger = structlog.get_logger(__name__)


class ImmediateEmbeddingWriter:
    """EntityWriter decorator that triggers a processing pass after each write.

    The write result is returned even when the processing pass fails; the
    jobs stay queued and the background loop picks them up later.

    Attributes:
        writer: The wrapped entity writer
        manager: Job manager used to process the new jobs
    """

    def __init__(self, writer: EntityWriter, manager: EmbeddingJobManager) -> None:
        self.writer = writer
        self.manager = manager

    async def create_entities(self, entities: list[Entity]) -> list[Entity]:
        """Create entities through the wrapped writer, then process their jobs."""
        created = await self.writer.create_entities(entities)

        if not entities:
            return created

        try:
            results = await self.manager.process_jobs(batch_size=len(entities))
            logger.info(
                "immediate_embedding_processed",
                entities=len(entities),
                successful=results.successful,
                failed=results.failed,
            )
        except Exception as e:
            logger.error(
                "immediate_embedding_failed",
                entities=len(entities),
                error=str(e),
                exc_info=True,
            )

        return created
