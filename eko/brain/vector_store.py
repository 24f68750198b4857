"""Embedding + vector store client (OpenAI-compatible embeddings, Qdrant REST).

One embedding call per write: upsert reuses the vector it just computed for
the dedup search. A missing collection reads as empty, never as an error.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

import httpx

from config import (
    DEDUP_THRESHOLD,
    EMBEDDING_MODEL,
    EMBEDDING_URL,
    HTTP_TIMEOUT,
    OPENAI_API_KEY,
    QDRANT_API_KEY,
    QDRANT_URL,
)

logger = logging.getLogger("eko.vector")


class UpstreamError(Exception):
    """Embedding / vector store / chat backend transport or server failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class SearchHit:
    id: str
    score: float
    payload: dict = field(default_factory=dict)


def match_filter(key: str, value) -> dict:
    """Server-side exact-match filter on a payload field."""
    return {"must": [{"key": key, "match": {"value": value}}]}


def _raise_for_status(response: httpx.Response, what: str) -> None:
    if response.is_success:
        return
    body = response.text[:200]
    raise UpstreamError(f"{what} failed: {response.status_code} {body}", status_code=response.status_code)


class EmbeddingClient:
    """Turns text into a vector via an OpenAI-compatible /v1/embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: str = EMBEDDING_URL,
        model: str = EMBEDDING_MODEL,
        client: Optional[httpx.Client] = None,
    ):
        self._api_key = api_key if api_key is not None else (OPENAI_API_KEY or "")
        self._url = url
        self._model = model
        self._client = client or httpx.Client(timeout=HTTP_TIMEOUT)

    def embed(self, text: str) -> list[float]:
        logger.debug("Embedding: %.50s", text)
        try:
            response = self._client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self._model, "input": text},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Embedding request failed: {e}") from e
        _raise_for_status(response, "Embedding")
        try:
            return response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError) as e:
            raise UpstreamError(f"Malformed embedding response: {e}") from e


class VectorStore:
    """Qdrant collections addressed by name: search, scroll, deduplicating upsert, delete."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        url: str = QDRANT_URL,
        api_key: str = QDRANT_API_KEY,
        client: Optional[httpx.Client] = None,
        dedup_threshold: float = DEDUP_THRESHOLD,
    ):
        self._embedder = embedder
        self._url = url.rstrip("/")
        self._headers = {"api-key": api_key} if api_key else {}
        self._client = client or httpx.Client(timeout=HTTP_TIMEOUT)
        self._dedup_threshold = dedup_threshold

    def embed(self, text: str) -> list[float]:
        return self._embedder.embed(text)

    def _request(self, method: str, path: str, body: dict) -> httpx.Response:
        try:
            return self._client.request(method, f"{self._url}{path}", headers=self._headers, json=body)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Vector store {method} {path} failed: {e}") from e

    def search(
        self,
        collection: str,
        query: Union[str, list[float], None] = None,
        limit: int = 10,
        filter: Optional[dict] = None,
        vector: Optional[list[float]] = None,
    ) -> list[SearchHit]:
        """Similarity search, best match first. `query` may be text or a vector."""
        if vector is None:
            if isinstance(query, str):
                vector = self.embed(query)
            elif query is not None:
                vector = list(query)
            else:
                raise ValueError("search needs a query text or a vector")

        body = {"vector": vector, "limit": limit, "with_payload": True}
        if filter:
            body["filter"] = filter

        response = self._request("POST", f"/collections/{collection}/points/search", body)
        if response.status_code == 404:
            logger.debug("Collection %s not found, empty search", collection)
            return []
        _raise_for_status(response, f"Search in {collection}")

        hits = [
            SearchHit(id=str(item["id"]), score=float(item.get("score", 0.0)), payload=item.get("payload") or {})
            for item in response.json().get("result", [])
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def scroll(self, collection: str, limit: int, filter: Optional[dict] = None) -> list[SearchHit]:
        """List points without vectors (server order, score 0)."""
        body = {"limit": limit, "with_payload": True, "with_vector": False}
        if filter:
            body["filter"] = filter

        response = self._request("POST", f"/collections/{collection}/points/scroll", body)
        if response.status_code == 404:
            logger.debug("Collection %s not found, empty scroll", collection)
            return []
        _raise_for_status(response, f"Scroll in {collection}")

        points = (response.json().get("result") or {}).get("points", [])
        return [SearchHit(id=str(p["id"]), score=0.0, payload=p.get("payload") or {}) for p in points]

    def upsert(self, collection: str, payload: dict) -> str:
        """Store payload["content"] under a fresh id, replacing a near-duplicate if one exists."""
        content = payload["content"]
        vector = self.embed(content)

        similar = self.search(collection, limit=1, vector=vector)
        if similar and similar[0].score >= self._dedup_threshold:
            logger.info(
                "Found similar in %s (score %.2f), replacing %s", collection, similar[0].score, similar[0].id
            )
            self.delete(collection, similar[0].id)

        point_id = str(uuid.uuid4())
        response = self._request(
            "PUT",
            f"/collections/{collection}/points",
            {"points": [{"id": point_id, "vector": vector, "payload": payload}]},
        )
        _raise_for_status(response, f"Upsert in {collection}")
        logger.info("Stored in %s: %.50s", collection, content)
        return point_id

    def delete(self, collection: str, point_id: str) -> None:
        """Delete one point. Deleting something that is not there is not an error."""
        response = self._request("POST", f"/collections/{collection}/points/delete", {"points": [point_id]})
        if response.status_code == 404:
            logger.debug("Delete in %s: collection not found", collection)
            return
        _raise_for_status(response, f"Delete in {collection}")
        logger.info("Deleted %s from %s", point_id, collection)

    def close(self) -> None:
        self._client.close()
