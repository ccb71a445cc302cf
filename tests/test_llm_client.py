from types import SimpleNamespace

import httpx
import openai
import pytest

from storefront import llm_client
from storefront.runtime import embeddings
from storefront.runtime.errors import UpstreamUnavailable
from storefront.runtime.models import SparseVector


class _FakeClient:
    def __init__(self, content="{}", error=None, vectors=None):
        self.kwargs = None
        self._content = content
        self._error = error
        self._vectors = vectors or []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self.embeddings = SimpleNamespace(create=self._embed)

    def _create(self, **kwargs):
        self.kwargs = kwargs
        if self._error:
            raise self._error
        message = SimpleNamespace(content=self._content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    def _embed(self, input, model):
        if self._error:
            raise self._error
        return SimpleNamespace(data=[SimpleNamespace(embedding=self._vectors[i]) for i in range(len(input))])


def test_complete_returns_raw_text_in_json_mode(monkeypatch):
    fake = _FakeClient(content='{"answer": "hi"}')
    monkeypatch.setattr(llm_client, "get_client", lambda: fake)
    monkeypatch.delenv("AZURE_OPENAI_DEPLOYMENT", raising=False)

    out = llm_client.complete("system", "user", model="gpt-test")
    assert out == '{"answer": "hi"}'
    assert fake.kwargs["model"] == "gpt-test"
    assert fake.kwargs["response_format"] == {"type": "json_object"}
    assert [m["role"] for m in fake.kwargs["messages"]] == ["system", "user"]


def test_connection_error_becomes_upstream_unavailable(monkeypatch):
    error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    monkeypatch.setattr(llm_client, "get_client", lambda: _FakeClient(error=error))
    with pytest.raises(UpstreamUnavailable):
        llm_client.complete("system", "user")


def test_missing_credentials(monkeypatch):
    for var in ("AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    with pytest.raises(UpstreamUnavailable):
        llm_client.get_client()


def test_embed_fn_batches_and_normalizes(monkeypatch):
    fake = _FakeClient(vectors=[[3.0, 4.0], [0.0, 2.0], [1.0, 0.0]])
    monkeypatch.setattr(llm_client, "get_client", lambda: fake)
    embed = embeddings.get_embed_fn(model="text-embedding-3-small", batch_size=2)
    vecs = embed(["a", "b", "c"])
    assert len(vecs) == 3
    assert vecs[0] == pytest.approx([0.6, 0.8])
    assert embed([]) == []


def test_scale_hybrid():
    dense, sparse = embeddings.scale_hybrid([1.0, 0.5], SparseVector([3, 9], [1.0, 0.5]), 0.25)
    assert dense == [0.75, 0.375]
    assert sparse.indices == [3, 9]
    assert sparse.values == [0.25, 0.125]
    with pytest.raises(ValueError):
        embeddings.scale_hybrid([1.0], SparseVector([1], [1.0]), 1.5)
