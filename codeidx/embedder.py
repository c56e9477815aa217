"""Clients for an embeddings endpoint and a reranking endpoint."""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from codeidx.types import CodeChunk, SemanticFileItem

_log = logging.getLogger(__name__)

_RETRY_STATUSES = frozenset({408, 409, 429})
_BASE_DELAY = 0.5
_MAX_DELAY = 8.0
_RERANK_TIMEOUT = 30.0


class EmptyResponseError(ValueError):
    """Raised when an endpoint answered without any data."""

    def __init__(self, message: str = "response is empty") -> None:
        super().__init__(message)


@dataclass
class EmbedderConfig:
    model: str = ""
    api_base: str = ""
    api_key: str = ""
    batch_size: int = 10
    strip_new_lines: bool = False
    max_retries: int = 2
    timeout: float | timedelta | None = 30.0


@dataclass
class RerankerConfig:
    model: str = ""
    api_base: str = ""
    api_key: str = ""


@dataclass
class CodeChunkEmbedding:
    """A code chunk together with its embedding vector."""

    chunk: CodeChunk
    embedding: list[float]


def _seconds(value: float | timedelta | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _text(value: bytes | str) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


def _retryable(status: int) -> bool:
    return status in _RETRY_STATUSES or status >= 500


class Embedder:
    """Turns code chunks and queries into vectors through an embeddings API."""

    def __init__(self, config: EmbedderConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client if client is not None else httpx.Client()

    def embed_code_chunks(self, chunks: Sequence[CodeChunk]) -> list[CodeChunkEmbedding]:
        """Embed chunks in batches of the configured size, keeping their order."""
        chunks = list(chunks)
        if not chunks:
            return []
        size = self._config.batch_size
        if size <= 0:
            raise ValueError("batch size must be positive")
        _log.info("start to embedding %d chunks for codebase:%s, batchSize: %d",
                  len(chunks), chunks[0].codebase_path, size)
        result: list[CodeChunkEmbedding] = []
        for start in range(0, len(chunks), size):
            batch = chunks[start:start + size]
            vectors = self._embed([chunk.content for chunk in batch])
            result.extend(CodeChunkEmbedding(chunk, vector) for chunk, vector in zip(batch, vectors))
        _log.info("embedding %d chunks for codebase:%s successfully", len(chunks), chunks[0].codebase_path)
        return result

    def embed_query(self, query: str) -> list[float]:
        """Embed a single query string."""
        if self._config.strip_new_lines:
            query = query.replace("\n", " ")
        vectors = self._embed([query])
        if not vectors or not vectors[0]:
            raise EmptyResponseError()
        return vectors[0]

    def _embed(self, texts: Sequence[bytes | str]) -> list[list[float]]:
        inputs = [_text(text) for text in texts]
        payload = {"input": inputs, "model": self._config.model, "encoding_format": "float"}
        response = self._post(payload)
        body = response.json()
        data = body.get("data") if isinstance(body, dict) else None
        vectors: list[list[float]] = [[] for _ in inputs]
        for item in data or []:
            index = int(item.get("index", 0))
            if not 0 <= index < len(vectors):
                raise ValueError(f"invalid index {index} in embedding response")
            vectors[index] = [float(v) for v in item.get("embedding") or []]
        return vectors

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        url = self._config.api_base.rstrip("/") + "/embeddings"
        headers = {"Authorization": f"Bearer {self._config.api_key}"} if self._config.api_key else {}
        retries = max(0, self._config.max_retries)
        timeout = _seconds(self._config.timeout)
        for attempt in itertools.count():
            try:
                response = self._client.post(url, json=payload, headers=headers, timeout=timeout)
            except httpx.TransportError:
                if attempt >= retries:
                    raise
            else:
                if not _retryable(response.status_code) or attempt >= retries:
                    response.raise_for_status()
                    return response
            time.sleep(min(_MAX_DELAY, _BASE_DELAY * 2**attempt))
        raise AssertionError("unreachable")


class Reranker:
    """Reorders search results by relevance through a rerank API."""

    def __init__(self, config: RerankerConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client if client is not None else httpx.Client()

    def rerank(self, query: str, docs: Sequence[SemanticFileItem]) -> list[SemanticFileItem]:
        """Return docs in the order the service ranks them, with scores updated."""
        if not docs:
            return list(docs)
        docs = list(docs)
        body = {
            "model": self._config.model,
            "query": query,
            "documents": [doc.content for doc in docs],
            "top_n": len(docs),
        }
        endpoint = self._config.api_base
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._config.api_key}",
        }
        try:
            response = self._client.post(endpoint, json=body, headers=headers, timeout=_RERANK_TIMEOUT)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"failed to send customReranker request to {endpoint}: {exc}") from exc

        if response.status_code != 200:
            raise RuntimeError(
                f"customReranker API returned non-OK status {response.status_code}: "
                f"{response.status_code} {response.reason_phrase}, body: {response.text}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RuntimeError(f"failed to decode customReranker response body: {exc}") from exc
        if not isinstance(payload, dict):
            raise RuntimeError("failed to decode customReranker response body: not an object")

        results = payload.get("results")
        if not results:
            raise ValueError("reranker returned empty results")

        reranked: list[SemanticFileItem] = []
        for result in results:
            if not isinstance(result, dict):
                raise RuntimeError("failed to decode customReranker response body: bad result")
            index = int(result.get("index", 0))
            if not 0 <= index < len(docs):
                raise ValueError(f"invalid index {index} in reranker response")
            doc = docs[index]
            doc.score = float(result.get("relevance_score", 0.0))
            reranked.append(doc)
        return reranked