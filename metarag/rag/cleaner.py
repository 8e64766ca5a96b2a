"""LLM cleaning pass that filters and de-duplicates chunk text."""
from typing import Optional, Sequence

import structlog

from metarag.errors import IntegrationError
from metarag.llm_client import TextCompletionProvider
from metarag.rag.chunker import Chunk
from metarag.rag.document import Document

logger = structlog.get_logger()

CLEANING_INSTRUCTIONS = (
    "Filter out irrelevant information and remove duplicates from the text "
    "below. Keep every distinct fact. Return only the revised text, with no "
    "commentary."
)


class Cleaner:
    """Sends chunk text through a completion call and returns revised text."""

    def __init__(
        self,
        completion: TextCompletionProvider,
        instructions: str = CLEANING_INSTRUCTIONS,
    ):
        self.completion = completion
        self.instructions = instructions

    def build_prompt(self, chunks: Sequence[Chunk], instructions: Optional[str] = None) -> str:
        """Assemble the instruction prompt around the chunk bodies."""
        # Bodies avoid repeating overlap text the model would then dedupe
        text = "".join(chunk.body for chunk in chunks)
        return f"{instructions or self.instructions}\n\nTEXT:\n{text}"

    async def clean(
        self,
        chunks: Sequence[Chunk],
        instructions: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> str:
        """Return the revised text for a chunk sequence.

        Provider errors propagate unchanged.

        Raises:
            IntegrationError: If the provider returns something other than text
        """
        if not chunks:
            return ""

        prompt = self.build_prompt(chunks, instructions)
        logger.info("cleaning_started", chunk_count=len(chunks), prompt_length=len(prompt))

        revised = await self.completion.complete(prompt)
        if not isinstance(revised, str):
            raise IntegrationError(
                f"Cleaner expected text, got {type(revised).__name__}",
                step="clean",
                document_id=document_id,
            )

        revised = revised.strip()
        logger.info("cleaning_completed", revised_length=len(revised))
        return revised

    async def clean_document(
        self,
        document: Document,
        chunks: Sequence[Chunk],
        instructions: Optional[str] = None,
    ) -> Document:
        """Clean a document's chunks and wrap the result as a new Document."""
        revised = await self.clean(chunks, instructions, document_id=document.doc_id)
        return document.revised(revised)
