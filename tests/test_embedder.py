import json
from unittest import mock

import httpx
import pytest

from codeidx.embedder import (
    Embedder,
    EmbedderConfig,
    EmptyResponseError,
    Reranker,
    RerankerConfig,
)
from codeidx.types import CodeChunk, SemanticFileItem

API_BASE = "http://embed.test/v1"
RERANK_URL = "http://rerank.test/rerank"


def _embedding_handler(calls):
    def handler(request):
        body = json.loads(request.content)
        calls.append((request, body))
        data = [
            {"object": "embedding", "index": i, "embedding": [float(len(text)), float(i)]}
            for i, text in enumerate(body["input"])
        ]
        data.reverse()
        return httpx.Response(200, json={"object": "list", "data": data, "model": body["model"]})

    return handler


def _embedder(handler, **overrides):
    settings = dict(model="embed-model", api_base=API_BASE, api_key="placeholder", batch_size=2, max_retries=0)
    settings.update(overrides)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return Embedder(EmbedderConfig(**settings), client=client)


def _chunks():
    return [
        CodeChunk(codebase_id=1, codebase_path="/repo", file_path=f"f{n}.go", content=b"x" * (n + 1))
        for n in range(5)
    ]


def test_embed_code_chunks_batches_and_keeps_order():
    calls = []
    embedder = _embedder(_embedding_handler(calls))
    chunks = _chunks()
    result = embedder.embed_code_chunks(chunks)

    assert [item.chunk for item in result] == chunks
    for item in result:
        assert item.embedding[0] == float(len(item.chunk.content))
    sizes = [len(body["input"]) for _, body in calls]
    assert sum(sizes) == len(chunks)
    assert max(sizes) <= 2
    sent = [text for _, body in calls for text in body["input"]]
    assert sent == [chunk.content.decode() for chunk in chunks]


def test_embed_request_format():
    calls = []
    embedder = _embedder(_embedding_handler(calls))
    embedder.embed_query("hello")
    request, body = calls[0]
    assert str(request.url) == API_BASE + "/embeddings"
    assert request.headers["Authorization"] == "Bearer placeholder"
    assert body["model"] == "embed-model"
    assert body["encoding_format"] == "float"


def test_embed_code_chunks_empty_makes_no_request():
    calls = []
    embedder = _embedder(_embedding_handler(calls))
    assert embedder.embed_code_chunks([]) == []
    assert calls == []


def test_embed_code_chunks_rejects_non_positive_batch():
    embedder = _embedder(_embedding_handler([]), batch_size=0)
    with pytest.raises(ValueError):
        embedder.embed_code_chunks(_chunks())


def test_embed_query_strips_newlines():
    calls = []
    embedder = _embedder(_embedding_handler(calls), strip_new_lines=True)
    vector = embedder.embed_query("a\nb\nc")
    assert calls[0][1]["input"] == ["a b c"]
    assert vector[0] == float(len(calls[0][1]["input"][0]))


def test_embed_query_keeps_newlines_by_default():
    calls = []
    embedder = _embedder(_embedding_handler(calls))
    query = "line one\nline two"
    embedder.embed_query(query)
    assert calls[0][1]["input"] == [query]


def test_embed_query_empty_response():
    embedder = _embedder(lambda request: httpx.Response(200, json={"data": []}))
    with pytest.raises(EmptyResponseError):
        embedder.embed_query("q")


@mock.patch("time.sleep")
def test_retries_server_error_then_succeeds(sleep):
    statuses = iter([503, 200])
    calls = []

    def handler(request):
        calls.append(request)
        status = next(statuses)
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.5]}]})

    embedder = _embedder(handler, max_retries=1)
    assert embedder.embed_query("q") == [1.5]
    assert len(calls) == 2
    assert sleep.call_count == 1


@mock.patch("time.sleep")
def test_client_error_is_not_retried(sleep):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400)

    embedder = _embedder(handler, max_retries=3)
    with pytest.raises(httpx.HTTPStatusError):
        embedder.embed_query("q")
    assert len(calls) == 1
    assert sleep.call_count == 0


@mock.patch("time.sleep")
def test_retries_exhausted(sleep):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    embedder = _embedder(handler, max_retries=2)
    with pytest.raises(httpx.HTTPStatusError):
        embedder.embed_query("q")
    assert len(calls) == 2 + 1


def _reranker(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return Reranker(RerankerConfig(model="rerank-model", api_base=RERANK_URL, api_key="placeholder"), client=client)


def test_rerank_empty_docs_makes_no_request():
    calls = []
    reranker = _reranker(lambda request: calls.append(request) or httpx.Response(200))
    assert reranker.rerank("q", []) == []
    assert calls == []


def test_rerank_reorders_and_scores():
    captured = []

    def handler(request):
        captured.append((request, json.loads(request.content)))
        return httpx.Response(200, json={
            "model": "rerank-model",
            "results": [
                {"index": 1, "document": {"text": "second"}, "relevance_score": 0.8},
                {"index": 0, "document": {"text": "first"}, "relevance_score": 0.5},
            ],
        })

    docs = [SemanticFileItem(content="first", file_path="a.go"), SemanticFileItem(content="second", file_path="b.go")]
    result = _reranker(handler).rerank("capital", docs)

    assert result == [docs[1], docs[0]]
    assert result[0].score == pytest.approx(0.8)
    assert result[1].score == pytest.approx(0.5)
    request, body = captured[0]
    assert str(request.url) == RERANK_URL
    assert request.headers["Authorization"] == "Bearer placeholder"
    assert body == {"model": "rerank-model", "query": "capital", "documents": ["first", "second"], "top_n": len(docs)}


def test_rerank_non_ok_status():
    reranker = _reranker(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(RuntimeError, match="non-OK status 500"):
        reranker.rerank("q", [SemanticFileItem(content="c")])


def test_rerank_empty_results():
    reranker = _reranker(lambda request: httpx.Response(200, json={"results": []}))
    with pytest.raises(ValueError, match="empty results"):
        reranker.rerank("q", [SemanticFileItem(content="c")])


def test_rerank_invalid_index():
    reranker = _reranker(
        lambda request: httpx.Response(200, json={"results": [{"index": 5, "relevance_score": 0.1}]})
    )
    with pytest.raises(ValueError, match="invalid index"):
        reranker.rerank("q", [SemanticFileItem(content="c")])


def test_rerank_transport_error():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(RuntimeError, match="failed to send"):
        _reranker(handler).rerank("q", [SemanticFileItem(content="c")])