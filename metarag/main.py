"""Quart application exposing index management, ingestion and querying."""
import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request

from metarag import config
from metarag.config import PipelineConfig
from metarag.errors import (
    ConfigurationError,
    ExternalServiceError,
    FilterError,
    IndexNotFoundError,
    IntegrationError,
)
from metarag.llm_client import EmbeddingProvider, OllamaClient, TextCompletionProvider
from metarag.log import configure_logging
from metarag.rag.document import Document
from metarag.rag.embedder import Embedder
from metarag.rag.ingest import IngestPipeline
from metarag.rag.planner import QueryPlanner
from metarag.rag.retriever import Retriever
from metarag.rag.store_faiss import FAISSVectorStore, VectorStore

logger = structlog.get_logger()


class CreateIndexRequest(BaseModel):
    name: str = Field(min_length=1)
    dimension: Optional[int] = Field(default=None, gt=0)
    metric: Optional[str] = None


class DocumentPayload(BaseModel):
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class IngestRequest(BaseModel):
    documents: List[DocumentPayload] = Field(min_length=1)
    index: Optional[str] = None
    options: Optional[Dict[str, Any]] = None
    clean: Optional[bool] = None


class QueryRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    index: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    top_k: Optional[int] = Field(default=None, gt=0)
    enable_filter: Optional[bool] = None


def _model_available(name: str, models: List[str]) -> bool:
    # Ollama reports "nomic-embed-text:latest" for "nomic-embed-text"
    return any(m == name or m.split(":")[0] == name for m in models)


def create_app(
    store: Optional[VectorStore] = None,
    embedding: Optional[EmbeddingProvider] = None,
    completion: Optional[TextCompletionProvider] = None,
    pipeline_config: Optional[PipelineConfig] = None,
    persist_dir: Optional[Path] = None,
) -> Quart:
    """Build the application around caller-supplied collaborators.

    Args:
        store: Vector store (default: FAISS store persisted under DATA_DIR)
        embedding: Embedding provider (default: a shared OllamaClient)
        completion: Completion provider (default: the same OllamaClient)
        pipeline_config: Base pipeline options (default from env)
        persist_dir: Directory the store is loaded from and saved to
    """
    app = Quart(__name__)

    base_config = pipeline_config or PipelineConfig.from_env()

    ollama = None
    if embedding is None or completion is None:
        ollama = OllamaClient()
        embedding = embedding or ollama
        completion = completion or ollama

    if store is None:
        persist_dir = persist_dir or config.DATA_DIR / "vectors"
        store = FAISSVectorStore(persist_dir=persist_dir)

    embedder = Embedder(embedding, dimension=base_config.dimension)

    @app.before_serving
    async def startup():
        configure_logging()
        if ollama is not None:
            await ollama.__aenter__()
        if persist_dir is not None and isinstance(store, FAISSVectorStore):
            await store.load(persist_dir)
        logger.info("app_started", indexes=await store.list_indexes())

    @app.after_serving
    async def shutdown():
        if persist_dir is not None and isinstance(store, FAISSVectorStore):
            await store.save(persist_dir)
        await store.close()
        if ollama is not None:
            await ollama.close()
        logger.info("app_stopped")

    async def _json_body() -> Dict[str, Any]:
        data = await request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ConfigurationError("Request body must be a JSON object")
        return data

    @app.route("/api/indexes", methods=["POST"])
    async def create_index():
        """Create a named index.

        Expects JSON body:
        {
            "name": "embeddings",
            "dimension": 768,      // optional, defaults to EMBEDDING_DIMENSION
            "metric": "cosine"     // optional
        }
        """
        body = CreateIndexRequest.model_validate(await _json_body())
        created = await store.create_index(
            body.name,
            body.dimension or base_config.dimension,
            body.metric or base_config.metric,
        )
        stats = await store.describe_index(body.name)
        return jsonify({"created": created, "index": dataclasses.asdict(stats)}), 201 if created else 200

    @app.route("/api/indexes", methods=["GET"])
    async def list_indexes():
        names = await store.list_indexes()
        return jsonify({"indexes": names})

    @app.route("/api/indexes/<name>", methods=["GET"])
    async def describe_index(name: str):
        stats = await store.describe_index(name)
        return jsonify(dataclasses.asdict(stats))

    @app.route("/api/indexes/<name>", methods=["DELETE"])
    async def delete_index(name: str):
        await store.delete_index(name)
        return "", 204

    @app.route("/api/ingest", methods=["POST"])
    async def ingest():
        """Chunk, embed and upsert documents.

        Expects JSON body:
        {
            "documents": [{"text": "...", "metadata": {...}, "id": "optional"}],
            "index": "optional index name",
            "options": {"size": 512, "overlap": 50, ...},  // optional
            "clean": false  // optional, run the LLM cleaning pass
        }

        Returns JSON:
        {
            "results": [{"document_id": "...", "state": "done", ...}]
        }
        """
        body = IngestRequest.model_validate(await _json_body())

        overrides = {
            "index_name": body.index or base_config.index_name,
            "dimension": base_config.dimension,
            "metric": base_config.metric,
            "filter_mode": base_config.filter_mode,
            "clean": base_config.clean if body.clean is None else body.clean,
            "max_context_chars": base_config.max_context_chars,
        }
        if body.options is not None:
            run_config = PipelineConfig.from_options(body.options, **overrides)
        else:
            run_config = dataclasses.replace(base_config, **overrides)

        pipeline = IngestPipeline(store, embedder, run_config, completion=completion)
        documents = [Document(text=d.text, metadata=d.metadata, id=d.id) for d in body.documents]

        logger.info("ingest_request_received", documents=len(documents), index=run_config.index_name)
        results = await pipeline.ingest_many(documents)

        return jsonify({"results": [r.to_dict() for r in results]})

    @app.route("/api/query", methods=["POST"])
    async def query():
        """Answer a question from the index.

        Expects JSON body:
        {
            "query": "user question",
            "index": "optional index name",
            "filter": {"nested.id": {"$gt": 2}},  // optional, skips filter construction
            "top_k": 5,                           // optional
            "enable_filter": true                 // optional
        }
        """
        body = QueryRequest.model_validate(await _json_body())

        retriever = Retriever(store, embedder, index_name=body.index or base_config.index_name)
        planner = QueryPlanner(
            retriever,
            completion,
            enable_filter=base_config.enable_filter if body.enable_filter is None else body.enable_filter,
            filter_mode=base_config.filter_mode,
            top_k=base_config.top_k,
            max_context_chars=base_config.max_context_chars,
        )

        outcome = await planner.run(body.query, filter=body.filter, top_k=body.top_k)
        if outcome.error is not None:
            raise outcome.error

        return jsonify(outcome.to_dict())

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check if app can serve requests.

        Checks:
        - Vector store answers
        - Ollama service is reachable and has the models (when used)
        """
        checks = {
            "status": "healthy",
            "store": False,
        }

        try:
            checks["indexes"] = len(await store.list_indexes())
            checks["store"] = True

            if ollama is not None:
                models = await ollama.list_models()
                checks["ollama"] = True
                missing = [
                    name
                    for name in (ollama.chat_model, ollama.embedding_model)
                    if not _model_available(name, models)
                ]
                if missing:
                    checks["status"] = "unhealthy"
                    checks["error"] = f"Missing model(s): {', '.join(missing)}"

            status_code = 200 if checks["status"] == "healthy" else 503
            return jsonify(checks), status_code

        except ExternalServiceError as e:
            logger.error("health_check_failed", error=str(e))
            checks["status"] = "unhealthy"
            checks["error"] = str(e)
            return jsonify(checks), 503

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(ValidationError)
    async def validation_error(error):
        return jsonify({"error": "Invalid request body", "details": json.loads(error.json())}), 400

    @app.errorhandler(ConfigurationError)
    async def configuration_error(error):
        logger.warning("request_rejected", error=str(error))
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(FilterError)
    async def filter_error(error):
        logger.warning("invalid_filter", error=str(error))
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(IndexNotFoundError)
    async def index_not_found(error):
        return jsonify({"error": str(error), "index": error.index_name}), 404

    @app.errorhandler(IntegrationError)
    async def integration_error(error):
        logger.error("integration_error", error=str(error), step=error.step)
        return jsonify({"error": str(error), "step": error.step, "document_id": error.document_id}), 502

    @app.errorhandler(ExternalServiceError)
    async def external_service_error(error):
        logger.error("external_service_error", error=str(error), provider=error.provider)
        return jsonify({"error": str(error), "provider": error.provider}), 503

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        """Handle 500 errors."""
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn metarag.main:app in production
    app.run(host="0.0.0.0", port=5000, debug=True)
