"""Tests for the embedding client."""

import json

import httpx
import numpy as np
import pytest

from service_search.app.retrievers.embedding import EmbeddingError, HttpEmbeddingClient


def _client(handler, **kwargs):
    return HttpEmbeddingClient(
        "http://embedding.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs
    )


@pytest.mark.asyncio
async def test_embed_returns_float32_vector():
    requests = []

    def handler(request):
        requests.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"vectors": [[0.1, 0.2, 0.3]]})

    vector = await _client(handler, model="bge-small").embed("nvidia ai regulation")

    assert vector.dtype == np.float32
    assert vector.tolist() == pytest.approx([0.1, 0.2, 0.3])
    assert requests == [("/api/v1/embed", {"items": [{"text": "nvidia ai regulation"}], "model": "bge-small"})]


@pytest.mark.asyncio
async def test_http_error_raises():
    with pytest.raises(EmbeddingError):
        await _client(lambda request: httpx.Response(503)).embed("query")


@pytest.mark.asyncio
async def test_empty_response_raises():
    with pytest.raises(EmbeddingError):
        await _client(lambda request: httpx.Response(200, json={"vectors": []})).embed("query")


@pytest.mark.asyncio
async def test_close_leaves_injected_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    embedder = HttpEmbeddingClient("http://embedding.test", client=client)
    await embedder.close()
    assert not client.is_closed
    await client.aclose()
