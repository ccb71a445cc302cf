import json

from fastapi.testclient import TestClient

from storefront.main import app, get_indexer, get_memory, get_pipeline
from storefront.runtime.errors import UpstreamUnavailable
from storefront.runtime.indexer import ContentIndexer
from storefront.runtime.memory import ConversationMemory
from storefront.runtime.models import PermissionSet
from storefront.runtime.pipeline import AssistantPipeline
from storefront.runtime.retrieval import RetrievalEngine
from storefront.runtime.site_config import DictSiteConfigStore, SiteConfig
from storefront.runtime.vector_index import InMemoryVectorIndex

client = TestClient(app)


def _embed(texts):
    return [[1.0, 0.0] for _ in texts]


def _complete(system_prompt, user_prompt):
    if "classify shopper messages" in system_prompt:
        return json.dumps({"type": "page", "category": "discovery", "interaction_type": "support"})
    if "decide which action" in system_prompt:
        return json.dumps({"action_intent": "none"})
    return json.dumps({"action": "none", "answer": "We ship worldwide."})


def _install(complete=_complete, memory=None, index=None):
    index = index or InMemoryVectorIndex()
    store = DictSiteConfigStore({"demo": SiteConfig(site_id="demo", permissions=PermissionSet())})
    pipeline = AssistantPipeline(
        complete=complete,
        retrieval=RetrievalEngine(index, _embed),
        site_store=store,
    )
    memory = memory or ConversationMemory()
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_memory] = lambda: memory
    app.dependency_overrides[get_indexer] = lambda: ContentIndexer(index, _embed)
    return memory


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body.get("status") == "ok"
    assert "version" in body


def test_version():
    r = client.get("/version")
    assert r.status_code == 200
    body = r.json()
    assert "version" in body


def test_chat_returns_resolved_action_and_records_thread():
    memory = _install()
    try:
        r = client.post("/chat", json={"message": "do you ship to Norway?", "site_id": "demo", "thread_id": "t1"})
        assert r.status_code == 200
        body = r.json()
        assert body["action"] == "none"
        assert body["answer"] == "We ship worldwide."
        assert body["type"] == "page"
        assert [t.role for t in memory.get_turns("t1")] == ["user", "assistant"]
    finally:
        app.dependency_overrides.clear()


def test_chat_cancel_hands_off_to_contact():
    _install()
    try:
        r = client.post("/chat", json={"message": "cancel my order", "site_id": "demo"})
        body = r.json()
        assert body["action"] == "contact"
        assert body["action_context"]["contact_help_form"] is True
    finally:
        app.dependency_overrides.clear()


def test_chat_upstream_unavailable_is_503_and_not_persisted():
    def down(system_prompt, user_prompt):
        raise UpstreamUnavailable("timeout")

    memory = _install(complete=down)
    try:
        r = client.post("/chat", json={"message": "do you ship to Norway?", "site_id": "demo", "thread_id": "t2"})
        assert r.status_code == 503
        assert memory.get_turns("t2") == []
    finally:
        app.dependency_overrides.clear()


def _shopping_complete(system_prompt, user_prompt):
    if "classify shopper messages" in system_prompt:
        return json.dumps({"type": "product", "category": "discovery", "interaction_type": "sales"})
    if "decide which action" in system_prompt:
        return json.dumps({"action_intent": "redirect"})
    return json.dumps(
        {"action": "redirect", "url": "/products/alpine-jacket", "answer": "Here is the Alpine Jacket."}
    )


def test_indexed_content_is_retrieved_by_chat():
    _install(complete=_shopping_complete)
    try:
        r = client.post(
            "/sites/demo/content",
            json={"content": [{"id": "p1", "type": "product", "handle": "alpine-jacket", "title": "Alpine Jacket"}]},
        )
        assert r.status_code == 200
        assert r.json()["added"] == 1
        assert r.json()["namespaces"] == ["demo-sales"]

        r = client.post("/chat", json={"message": "show me the alpine jacket", "site_id": "demo"})
        body = r.json()
        assert [c["id"] for c in body["diagnostics"]["main_results"]] == ["p1"]
        assert body["action"] == "redirect"
        assert body["url"] == "/products/alpine-jacket"
    finally:
        app.dependency_overrides.clear()


def test_path_like_site_id_rejected():
    _install()
    try:
        r = client.post("/chat", json={"message": "hello there friend", "site_id": "../etc"})
        assert r.status_code == 422
    finally:
        app.dependency_overrides.clear()
