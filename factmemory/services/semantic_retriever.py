"""Advisory context from a semantic retrieval (RAG) service.

Retrieved passages are never treated as facts: the prompt injector renders
them in a separate, lower-trust section below the verified facts.
"""

from typing import List, Protocol

import httpx

from factmemory.core.config import RetrieverSettings
from factmemory.schemas.facts import AdvisoryContext
from factmemory.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SemanticRetriever(Protocol):
    async def search(self, user_id: str, query: str, k: int) -> List[AdvisoryContext]: ...


class NullRetriever:
    """Used when no retrieval service is configured."""

    async def search(self, user_id: str, query: str, k: int) -> List[AdvisoryContext]:
        return []


class RagServiceRetriever:
    """Client for the RAG service ``/query`` endpoint."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.query_url = f"{base_url.rstrip('/')}/query"
        self.timeout = timeout

    async def search(self, user_id: str, query: str, k: int) -> List[AdvisoryContext]:
        """Return up to ``k`` passages for ``query``.

        Retrieval is best-effort: any transport or HTTP failure is logged and
        yields no context, so prompt generation never depends on it.
        """
        if not query or not query.strip():
            return []

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.query_url,
                    json={"query": query, "k": k, "filters": {"user_id": user_id}},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            LOGGER.warning(
                f"Semantic retrieval failed: {e}",
                extra={"user_id": user_id, "url": self.query_url},
            )
            return []

        contexts = []
        for item in (data.get("context") or [])[:k]:
            chunk = item.get("chunk") or {}
            content = (chunk.get("content") or "").strip()
            if not content:
                continue
            contexts.append(
                AdvisoryContext(
                    content=content,
                    source=item.get("source_uri") or chunk.get("section"),
                    score=float(item.get("score") or 0.0),
                )
            )
        LOGGER.debug("Advisory context retrieved", extra={"user_id": user_id, "passages": len(contexts)})
        return contexts


def create_retriever(retriever_settings: RetrieverSettings) -> SemanticRetriever:
    if not retriever_settings.enabled:
        return NullRetriever()
    return RagServiceRetriever(retriever_settings.base_url, timeout=retriever_settings.timeout)
