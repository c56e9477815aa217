"""Vector storage of code chunks in a Weaviate instance over its REST and GraphQL API."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from codeidx.types import SemanticFileItem

_log = logging.getLogger(__name__)

METADATA_CODEBASE_ID = "codebase_id"
METADATA_CODEBASE_NAME = "codebase_name"
METADATA_SYNC_ID = "sync_id"
METADATA_CODEBASE_PATH = "codebase_path"
METADATA_FILE_PATH = "file_path"
METADATA_LANGUAGE = "language"
METADATA_RANGE = "range"
METADATA_TOKEN_COUNT = "token_count"
CONTENT = "content"

SCHEME_HTTP = "http"
SCHEME_HTTPS = "https"
VERBOSE = "verbose"
NORMAL = "normal"

VECTOR_WEAVIATE = "weaviate"

_STATUS_FAILED = "FAILED"

_CLASS_PROPERTIES: tuple[dict[str, Any], ...] = (
    {"name": METADATA_FILE_PATH, "dataType": ["text"], "indexFilterable": True},
    {"name": METADATA_LANGUAGE, "dataType": ["text"]},
    {"name": METADATA_CODEBASE_ID, "dataType": ["int"], "indexFilterable": True},
    {"name": METADATA_CODEBASE_PATH, "dataType": ["text"], "indexFilterable": True},
    {"name": METADATA_CODEBASE_NAME, "dataType": ["text"]},
    {"name": METADATA_SYNC_ID, "dataType": ["int"]},
    {"name": METADATA_TOKEN_COUNT, "dataType": ["int"]},
    {"name": METADATA_RANGE, "dataType": ["int[]"]},
    {"name": CONTENT, "dataType": ["text"], "indexSearchable": True},
)

_SEARCH_FIELDS = (
    METADATA_CODEBASE_ID,
    METADATA_CODEBASE_NAME,
    METADATA_SYNC_ID,
    METADATA_CODEBASE_PATH,
    METADATA_FILE_PATH,
    METADATA_LANGUAGE,
    METADATA_RANGE,
    METADATA_TOKEN_COUNT,
    CONTENT,
)


class VectorStoreError(RuntimeError):
    """Raised when the vector database reports a failure."""


class InvalidCodebasePathError(VectorStoreError, ValueError):
    """Raised when a codebase path is needed but empty."""

    def __init__(self, message: str = "invalid codebasePath") -> None:
        super().__init__(message)


@dataclass
class VectorOptions:
    """Identifies the codebase and sync run an operation belongs to."""

    codebase_id: int = 0
    sync_id: int = 0
    codebase_path: str = ""
    codebase_name: str = ""


@dataclass
class WeaviateConfig:
    """Connection settings for a Weaviate instance."""

    endpoint: str = ""
    api_key: str = ""
    class_name: str = ""
    max_documents: int = 20
    timeout: float = 30.0


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _format_path(path: Sequence[Any]) -> str:
    return "[" + " ".join(str(part) for part in path) + "]"


def check_batch_errors(responses: Sequence[Mapping[str, Any]] | None) -> None:
    """Raise VectorStoreError for the first error found in a batch write response."""
    for resp in responses or []:
        resp = _mapping(resp)
        errors = _mapping(_mapping(resp.get("result")).get("errors")).get("error") or []
        for item in errors:
            message = _mapping(item).get("message")
            if not message:
                continue
            obj_id = resp.get("id") or ""
            if obj_id:
                raise VectorStoreError(f"object {obj_id}: {message}")
            raise VectorStoreError(f"batch error: {message}")


def check_graphql_response_error(response: Mapping[str, Any] | None) -> None:
    """Raise VectorStoreError describing the first error of a GraphQL response."""
    if response is None:
        return
    errors = response.get("errors") or []
    if not errors:
        return
    first = errors[0]
    message = _mapping(first).get("message") if first else None
    if not message:
        raise VectorStoreError("graphql error (no message provided)")
    path = _mapping(first).get("path") or []
    if path:
        raise VectorStoreError(f"graphql error at path {_format_path(path)}: {message}")
    raise VectorStoreError(f"graphql error: {message}")


def check_batch_delete_errors(response: Mapping[str, Any] | None) -> None:
    """Raise VectorStoreError if a batch delete response reports failed objects."""
    if response is None or response.get("results") is None:
        raise VectorStoreError("invalid batch delete response")
    results = _mapping(response.get("results"))
    failed = int(results.get("failed") or 0)
    if failed == 0:
        return
    for obj in results.get("objects") or []:
        obj = _mapping(obj)
        if obj.get("status") != _STATUS_FAILED:
            continue
        errors = _mapping(obj.get("errors")).get("error") or []
        if not errors:
            continue
        message = _mapping(errors[0]).get("message")
        if message:
            raise VectorStoreError(f"batch delete failed for object {obj.get('id')}: {message}")
    raise VectorStoreError(f"batch delete failed: {failed} objects failed")


def generate_tenant_name(codebase_path: str) -> str:
    """Return a valid tenant name: the MD5 hex digest of the codebase path."""
    if not codebase_path:
        raise InvalidCodebasePathError()
    return hashlib.md5(codebase_path.encode("utf-8")).hexdigest()


def class_schema(class_name: str) -> dict[str, Any]:
    """Return the class definition for code chunks, with automatic tenant creation."""
    return {
        "class": class_name,
        "properties": [dict(prop) for prop in _CLASS_PROPERTIES],
        "multiTenancyConfig": {"enabled": True, "autoTenantCreation": True},
        "vectorIndexType": "dynamic",
    }


def new_vector_store(
    store_type: str,
    config: WeaviateConfig,
    embedder: Any,
    reranker: Any,
    client: httpx.Client | None = None,
) -> WeaviateStore:
    """Create the vector store of the given type."""
    if store_type == VECTOR_WEAVIATE:
        if not config.endpoint:
            raise ValueError("vector conf weaviate is required for weaviate type")
        return WeaviateStore(config, embedder, reranker, client)
    raise ValueError(f"unsupported vector type: {store_type}")


def _float(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _string(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    return value if isinstance(value, str) else ""


def _content_text(content: Any) -> str:
    if isinstance(content, (bytes, bytearray)):
        return bytes(content).decode("utf-8", errors="replace")
    return str(content)


class WeaviateStore:
    """Stores embedded code chunks per codebase tenant and answers similarity queries."""

    def __init__(
        self,
        config: WeaviateConfig,
        embedder: Any,
        reranker: Any,
        client: httpx.Client | None = None,
    ) -> None:
        self._config = config
        self._class_name = config.class_name
        self._embedder = embedder
        self._reranker = reranker
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(
            base_url=f"{SCHEME_HTTP}://{config.endpoint}", timeout=config.timeout
        )
        self._headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        try:
            self.ensure_class()
        except (VectorStoreError, httpx.HTTPError) as exc:
            raise VectorStoreError(f"failed to create class: {exc}") from exc

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return self._client.request(method, path, headers=self._headers, **kwargs)

    def ensure_class(self) -> None:
        """Create the chunk class unless it already exists."""
        _log.info("start to create weaviate class %s", self._class_name)
        try:
            response = self._send("GET", f"/v1/schema/{self._class_name}")
        except httpx.HTTPError as exc:
            _log.error("check weaviate class exists err:%s", exc)
        else:
            if response.status_code == 200:
                _log.info("weaviate class %s already exists, not create.", self._class_name)
                return
            if response.status_code != 404:
                _log.error("check weaviate class exists status:%d", response.status_code)

        response = self._send("POST", "/v1/schema", json=class_schema(self._class_name))
        if response.is_success:
            return
        text = response.text
        if "already exists" in text:
            _log.info("weaviate class %s already exists, not create.", self._class_name)
            return
        raise VectorStoreError(f"status code: {response.status_code}, error: {text}")

    def delete_code_chunks(self, chunks: Sequence[Any], options: VectorOptions | None = None) -> None:
        """Delete every stored chunk of the files the given chunks come from."""
        chunks = list(chunks)
        if not chunks:
            return
        tenant = generate_tenant_name(chunks[0].codebase_path)
        operands = []
        for chunk in chunks:
            if not chunk.codebase_id or not chunk.file_path:
                raise ValueError("invalid chunk to delete: required codebaseId and filePath")
            operands.append({
                "operator": "And",
                "operands": [
                    {"path": [METADATA_CODEBASE_ID], "operator": "Equal", "valueInt": int(chunk.codebase_id)},
                    {"path": [METADATA_FILE_PATH], "operator": "Equal", "valueText": chunk.file_path},
                ],
            })
        body = {"match": {"class": self._class_name, "where": {"operator": "Or", "operands": operands}}}
        try:
            response = self._send("DELETE", "/v1/batch/objects", params={"tenant": tenant}, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise VectorStoreError(f"failed to send delete chunks request:{exc}") from exc
        check_batch_delete_errors(payload if isinstance(payload, Mapping) else None)

    def upsert_code_chunks(self, chunks: Sequence[Any], options: VectorOptions | None = None) -> None:
        """Embed chunks and store them, replacing earlier chunks of the same files."""
        docs = list(chunks)
        if not docs:
            return
        options = options or VectorOptions()
        tenant = generate_tenant_name(docs[0].codebase_path)
        embedded = self._embedder.embed_code_chunks(docs)
        _log.info("embedded %d chunks for codebase %s successfully", len(docs), docs[0].codebase_name)

        try:
            self.delete_code_chunks(docs, options)
        except (VectorStoreError, ValueError) as exc:
            _log.error("failed to delete existing code chunks before upsert: %s", exc)

        objects = []
        for item in embedded:
            chunk = item.chunk
            if not chunk.file_path or not chunk.codebase_id or not chunk.codebase_path:
                raise ValueError(
                    "invalid chunk to write: required fields: CodebaseId, CodebasePath, FilePath"
                )
            objects.append({
                "id": str(uuid.uuid4()),
                "class": self._class_name,
                "tenant": tenant,
                "vector": list(item.embedding),
                "properties": {
                    METADATA_FILE_PATH: chunk.file_path,
                    METADATA_LANGUAGE: chunk.language,
                    METADATA_CODEBASE_ID: chunk.codebase_id,
                    METADATA_CODEBASE_PATH: chunk.codebase_path,
                    METADATA_CODEBASE_NAME: chunk.codebase_name,
                    METADATA_SYNC_ID: options.sync_id,
                    METADATA_RANGE: list(getattr(chunk, "range", None) or []),
                    METADATA_TOKEN_COUNT: chunk.token_count,
                    CONTENT: _content_text(chunk.content),
                },
            })

        _log.info("start to save %d chunks for codebase %s", len(docs), docs[0].codebase_name)
        try:
            response = self._send("POST", "/v1/batch/objects", json={"objects": objects})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise VectorStoreError(f"failed to send batch to Weaviate: {exc}") from exc
        try:
            check_batch_errors(payload if isinstance(payload, list) else [])
        except VectorStoreError as exc:
            raise VectorStoreError(f"failed to send batch to Weaviate: {exc}") from exc
        _log.info("save %d chunks for codebase %s successfully", len(docs), docs[0].codebase_name)

    def similarity_search(
        self, query: str, num_documents: int, options: VectorOptions
    ) -> list[SemanticFileItem]:
        """Return the stored chunks nearest to the query in the codebase's tenant."""
        try:
            vector = self._embedder.embed_query(query)
        except Exception as exc:
            raise VectorStoreError(f"failed to embed query: {exc}") from exc
        try:
            tenant = generate_tenant_name(options.codebase_path)
        except InvalidCodebasePathError as exc:
            raise InvalidCodebasePathError(f"failed to generate tenant name: {exc}") from exc

        fields = " ".join([*_SEARCH_FIELDS, "_additional{certainty distance id}"])
        graphql = "{Get{%s(nearVector:{vector:%s} limit:%d tenant:%s){%s}}}" % (
            self._class_name,
            json.dumps([float(v) for v in vector]),
            num_documents,
            json.dumps(tenant),
            fields,
        )
        try:
            response = self._send("POST", "/v1/graphql", json={"query": graphql})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise VectorStoreError(f"failed to execute similarity search: {exc}") from exc

        if not isinstance(payload, Mapping) or payload.get("data") is None:
            raise VectorStoreError("received empty response from Weaviate")
        try:
            check_graphql_response_error(payload)
        except VectorStoreError as exc:
            raise VectorStoreError(f"query weaviate failed: {exc}") from exc
        try:
            return self.unmarshal_response(payload)
        except VectorStoreError as exc:
            raise VectorStoreError(f"failed to unmarshal response: {exc}") from exc

    def unmarshal_response(self, response: Mapping[str, Any]) -> list[SemanticFileItem]:
        """Turn a GraphQL Get response into search results."""
        data = _mapping(response).get("data")
        get = data.get("Get") if isinstance(data, Mapping) else None
        if not isinstance(get, Mapping):
            raise VectorStoreError("invalid response format: 'Get' field not found or has wrong type")
        results = get.get(self._class_name)
        if not isinstance(results, list):
            raise VectorStoreError("invalid response format: class data not found or has wrong type")
        items = []
        for result in results:
            if not isinstance(result, Mapping):
                continue
            additional = result.get("_additional")
            if not isinstance(additional, Mapping):
                continue
            items.append(SemanticFileItem(
                content=_string(result, CONTENT),
                file_path=_string(result, METADATA_FILE_PATH),
                score=_float(additional.get("certainty")),
            ))
        return items

    def query(self, query: str, top_k: int, options: VectorOptions) -> list[SemanticFileItem]:
        """Search, rerank when the reranker succeeds, and keep the best top_k."""
        documents = self.similarity_search(query, self._config.max_documents, options)
        try:
            reranked = self._reranker.rerank(query, documents)
        except Exception as exc:
            _log.error("failed customReranker docs: %s", exc)
            reranked = []
        if not reranked:
            reranked = documents
        return list(reranked)[: max(0, top_k)]

    def close(self) -> None:
        """Release the HTTP client if this store created it."""
        if self._owns_client:
            self._client.close()