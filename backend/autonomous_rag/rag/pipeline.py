"""
LlamaIndex semantic search — the production vector_search provider.

Retrieval strategy:
  1. Vector search via pgvector (limit * 2 candidates)
  2. BM25 re-ranking over those candidates (reduces to limit)
  3. Metadata filters: user_id for multi-tenancy, collection for the
     entity's backing table

Records are expected to be indexed with "collection" and "user_id"
metadata by whatever ingestion job feeds the table.
"""

from functools import lru_cache
from typing import Any
from urllib.parse import urlparse

from llama_index.core import Settings as LlamaSettings
from llama_index.core import StorageContext, VectorStoreIndex
from llama_index.core.vector_stores import FilterCondition, MetadataFilter, MetadataFilters
from llama_index.embeddings.openai import OpenAIEmbedding
from llama_index.vector_stores.postgres import PGVectorStore
from rank_bm25 import BM25Okapi

from autonomous_rag.core.config import Settings
from autonomous_rag.core.logging import get_logger
from autonomous_rag.rag.semantic import SemanticSearchResponse

log = get_logger(__name__)


def configure_llamaindex(settings: Settings) -> None:
    """Configure the LlamaIndex embedding model. Call once before the first search."""
    embed_kwargs: dict = {"model": settings.embedding_model, "embed_batch_size": 100}
    if settings.litellm_mode == "proxy":
        embed_kwargs["api_base"] = settings.litellm_base_url
        embed_kwargs["api_key"] = settings.litellm_master_key

    LlamaSettings.embed_model = OpenAIEmbedding(**embed_kwargs)


@lru_cache
def get_vector_store(database_url: str) -> PGVectorStore:
    db_url = urlparse(database_url)
    return PGVectorStore.from_params(
        database=db_url.path.lstrip("/"),
        host=db_url.hostname,
        password=db_url.password,
        port=db_url.port or 5432,
        user=db_url.username,
        table_name="llamaindex_records",
        embed_dim=1536,
        hnsw_kwargs={"hnsw_m": 16, "hnsw_ef_construction": 64},
    )


@lru_cache
def get_index(database_url: str) -> VectorStoreIndex:
    vector_store = get_vector_store(database_url)
    storage_context = StorageContext.from_defaults(vector_store=vector_store)
    return VectorStoreIndex.from_vector_store(vector_store, storage_context=storage_context)


def _metadata_filters(collections: list[str] | None, user_id: Any) -> MetadataFilters | None:
    filters: list[MetadataFilter | MetadataFilters] = []

    if user_id:
        filters.append(MetadataFilter(key="user_id", value=str(user_id)))

    if collections:
        filters.append(MetadataFilters(
            filters=[MetadataFilter(key="collection", value=c) for c in collections],
            condition=FilterCondition.OR,
        ))

    if not filters:
        return None
    return MetadataFilters(filters=filters, condition=FilterCondition.AND)


def bm25_rerank(query: str, nodes: list, top_k: int) -> list:
    """Re-rank retrieved nodes by BM25 keyword score and return top_k."""
    if len(nodes) <= top_k:
        return nodes
    corpus = [node.get_content().lower().split() for node in nodes]
    bm25 = BM25Okapi(corpus)
    scores = bm25.get_scores(query.lower().split())
    ranked = sorted(range(len(nodes)), key=lambda i: scores[i], reverse=True)
    return [nodes[i] for i in ranked[:top_k]]


class LlamaIndexSemanticSearch:
    """SemanticSearch over the pgvector index."""

    def __init__(self, settings: Settings):
        self.settings = settings
        configure_llamaindex(settings)

    async def search(
        self,
        query: str,
        *,
        collections: list[str] | None = None,
        user_id: Any = None,
        limit: int = 5,
    ) -> SemanticSearchResponse:
        kwargs: dict = {"similarity_top_k": limit * 2}
        filters = _metadata_filters(collections, user_id)
        if filters is not None:
            kwargs["filters"] = filters

        retriever = get_index(self.settings.database_url).as_retriever(**kwargs)
        nodes = await retriever.aretrieve(query)
        nodes = bm25_rerank(query, nodes, top_k=limit)
        log.debug("retrieval_done", user_id=user_id, collections=collections, returned=len(nodes))

        return SemanticSearchResponse(
            content="\n\n---\n\n".join(node.get_content() for node in nodes),
            metadata={
                "context_count": len(nodes),
                "collections": collections or [],
                "sources": [node.node.metadata for node in nodes],
            },
        )
