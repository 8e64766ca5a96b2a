"""Query planning: filter construction, retrieval and answer synthesis.

Each query moves through
``Received -> FilterConstructed -> Retrieved -> Synthesized -> Done``;
any exception from a step moves it to ``Failed`` and is surfaced to the
caller unchanged. Nothing is retried.
"""
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional

import structlog

from metarag import config
from metarag.errors import FilterError, IntegrationError
from metarag.llm_client import TextCompletionProvider
from metarag.rag.filters import (
    Predicate,
    parse_filter,
    parse_filter_expression,
    to_dict,
    validate_filter,
)
from metarag.rag.retriever import Retriever
from metarag.rag.store_faiss import ENTRY_FIELDS, QueryResult

logger = structlog.get_logger()

INSUFFICIENT_CONTEXT_ANSWER = "The provided context does not contain enough information to answer this question."

SYNTHESIS_PROMPT = """You answer questions strictly from the context below.

INSTRUCTIONS:
- Use only the information in the context; do not use outside knowledge
- If the context does not contain enough information, reply exactly:
  "{insufficient}"
- Mention the source numbers you relied on

CONTEXT:
{context}

QUESTION:
{query}
"""

FILTER_PROMPT = """Translate the question into a metadata filter for a vector search.

Known metadata fields: {fields}

Use MongoDB-style operators ($eq, $ne, $gt, $gte, $lt, $lte, $in, $nin,
$regex, $exists, $and, $or, $not) and dotted paths for nested fields.
Reply with a single JSON object and nothing else. Reply {{}} if the question
does not restrict any metadata field.

QUESTION:
{query}
"""


class QueryState(str, Enum):
    RECEIVED = "received"
    FILTER_CONSTRUCTED = "filter_constructed"
    RETRIEVED = "retrieved"
    SYNTHESIZED = "synthesized"
    DONE = "done"
    FAILED = "failed"


@dataclass
class QueryOutcome:
    """Record of one query run."""

    query: str
    state: QueryState = QueryState.RECEIVED
    transitions: List[QueryState] = field(default_factory=lambda: [QueryState.RECEIVED])
    filter: Optional[Predicate] = None
    results: List[QueryResult] = field(default_factory=list)
    answer: Optional[str] = None
    error: Optional[Exception] = None

    def advance(self, state: QueryState) -> None:
        self.state = state
        self.transitions.append(state)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "state": self.state.value,
            "filter": to_dict(self.filter),
            "answer": self.answer,
            "results": [
                {"id": r.id, "score": r.score, "text": r.text, "metadata": r.metadata}
                for r in self.results
            ],
            "error": str(self.error) if self.error else None,
        }


def extract_json_object(text: str) -> Optional[dict]:
    """Find the first balanced JSON object in an LLM reply.

    Handles markdown code blocks (```json ... ```). Returns None if no
    object can be decoded.
    """
    code_block_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if code_block_match:
        text = code_block_match.group(1).strip()

    start_idx = text.find("{")
    if start_idx == -1:
        return None

    # Match braces from the first '{'
    brace_count = 0
    end_idx = start_idx
    for i in range(start_idx, len(text)):
        if text[i] == "{":
            brace_count += 1
        elif text[i] == "}":
            brace_count -= 1
            if brace_count == 0:
                end_idx = i + 1
                break

    if brace_count != 0:
        return None

    try:
        value = json.loads(text[start_idx:end_idx])
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class QueryPlanner:
    """Turns a natural-language query into a filtered search and an answer."""

    def __init__(
        self,
        retriever: Retriever,
        completion: TextCompletionProvider,
        enable_filter: bool = None,
        filter_mode: str = None,
        top_k: int = None,
        metadata_fields: Optional[Iterable[str]] = None,
        max_context_chars: int = None,
    ):
        """Initialize the planner.

        Args:
            retriever: Retriever bound to the target index
            completion: Provider used for synthesis (and "llm" filter mode)
            enable_filter: Construct metadata filters at all (default from config)
            filter_mode: "rules" or "llm" (default from config)
            top_k: Result bound for retrieval (default from config)
            metadata_fields: Known schema; read from the index when None
            max_context_chars: Context budget for synthesis
        """
        self.retriever = retriever
        self.completion = completion
        self.enable_filter = config.ENABLE_FILTER if enable_filter is None else enable_filter
        self.filter_mode = filter_mode or config.FILTER_MODE
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.metadata_fields = list(metadata_fields) if metadata_fields is not None else None
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS

    async def known_fields(self) -> List[str]:
        """Metadata schema used to recognise field references."""
        if self.metadata_fields is not None:
            return self.metadata_fields
        stats = await self.retriever.vector_store.describe_index(self.retriever.index_name)
        return stats.metadata_fields

    async def construct_filter(self, query: str) -> Optional[Predicate]:
        """Build a filter from the query, or None for pure semantic search.

        Raises:
            IntegrationError: If the LLM returns an unusable filter
        """
        if not self.enable_filter:
            return None

        fields = await self.known_fields()

        if self.filter_mode == "llm":
            return await self._llm_filter(query, fields)

        predicate = parse_filter_expression(
            query, fields, phrase_fields=[f for f in fields if f not in ENTRY_FIELDS]
        )
        if predicate is not None:
            validate_filter(predicate, fields)
        return predicate

    async def _llm_filter(self, query: str, fields: List[str]) -> Optional[Predicate]:
        reply = await self.completion.complete(
            FILTER_PROMPT.format(fields=", ".join(fields) or "(none)", query=query)
        )
        raw = extract_json_object(reply) if isinstance(reply, str) else None
        if raw is None:
            raise IntegrationError("LLM did not return a JSON filter object", step="filter")
        try:
            predicate = parse_filter(raw)
            validate_filter(predicate, fields)
        except FilterError as e:
            raise IntegrationError(f"LLM returned an invalid filter: {e}", step="filter") from e
        return predicate

    def build_prompt(self, query: str, results: List[QueryResult]) -> str:
        context = self.retriever.format_context(results, self.max_context_chars)
        return SYNTHESIS_PROMPT.format(
            insufficient=INSUFFICIENT_CONTEXT_ANSWER,
            context=context or "(no context retrieved)",
            query=query,
        )

    async def run(
        self,
        query: str,
        filter: Optional[Mapping[str, Any]] = None,
        top_k: Optional[int] = None,
    ) -> QueryOutcome:
        """Plan, retrieve and synthesize; failures are recorded, not raised.

        Args:
            query: Natural-language question
            filter: Explicit MongoDB-style filter; skips filter construction
            top_k: Overrides the configured result bound
        """
        outcome = QueryOutcome(query=query)
        logger.info("query_received", query_preview=query[:100])

        try:
            if filter is not None:
                outcome.filter = parse_filter(filter)
                validate_filter(outcome.filter)
            else:
                outcome.filter = await self.construct_filter(query)
            outcome.advance(QueryState.FILTER_CONSTRUCTED)
            logger.info("query_filter_constructed", filter=to_dict(outcome.filter))

            outcome.results = await self.retriever.retrieve(
                query, filter=outcome.filter, top_k=top_k or self.top_k
            )
            outcome.advance(QueryState.RETRIEVED)

            answer = await self.completion.complete(self.build_prompt(query, outcome.results))
            if not isinstance(answer, str):
                raise IntegrationError("Completion provider returned no text", step="synthesize")
            outcome.answer = answer.strip()
            outcome.advance(QueryState.SYNTHESIZED)

            outcome.advance(QueryState.DONE)
            logger.info(
                "query_completed",
                results=len(outcome.results),
                answer_length=len(outcome.answer),
            )
        except Exception as e:
            outcome.error = e
            failed_after = outcome.state.value
            outcome.advance(QueryState.FAILED)
            logger.error(
                "query_failed",
                failed_after=failed_after,
                error=str(e),
                error_type=type(e).__name__,
            )

        return outcome

    async def answer(
        self,
        query: str,
        filter: Optional[Mapping[str, Any]] = None,
        top_k: Optional[int] = None,
    ) -> str:
        """Answer a query, re-raising the failure of any step unchanged."""
        outcome = await self.run(query, filter=filter, top_k=top_k)
        if outcome.error is not None:
            raise outcome.error
        return outcome.answer
