from functools import lru_cache
from typing import Any, Dict, List, Optional
import logging
import os

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from storefront.runtime.embeddings import EmbedFn, get_embed_fn
from storefront.runtime.errors import UpstreamUnavailable
from storefront.runtime.indexer import ContentIndexer
from storefront.runtime.memory import ConversationMemory
from storefront.runtime.models import ConversationContext, PageSnapshot, Turn, TurnRequest
from storefront.runtime.pipeline import AssistantPipeline
from storefront.runtime.retrieval import RetrievalEngine
from storefront.runtime.site_config import YamlSiteConfigStore, is_valid_site_id
from storefront.runtime.trace import JsonlTraceWriter
from storefront.runtime.vector_index import InMemoryVectorIndex, VectorIndex

APP_VERSION = os.getenv("APP_VERSION", "0.1.0")

logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Assistant API", version=APP_VERSION)


class HealthResponse(BaseModel):
    status: str
    version: str


class ContextTurn(BaseModel):
    role: str
    content: str = ""
    action: Optional[str] = None


class ChatRequest(BaseModel):
    message: str
    site_id: str
    thread_id: Optional[str] = None
    type: str = "text"
    conversation_context: Optional[List[ContextTurn]] = None
    current_page_url: Optional[str] = None
    page_data: Optional[Dict[str, Any]] = None


class ChatResponse(BaseModel):
    action: str
    answer: str
    category: Optional[str] = None
    sub_category: Optional[str] = None
    page_reference: Optional[str] = None
    scroll_text: Optional[str] = None
    type: Optional[str] = None
    url: Optional[str] = None
    action_context: Dict[str, Any] = Field(default_factory=dict)
    diagnostics: Dict[str, Any] = Field(default_factory=dict)


class ContentRequest(BaseModel):
    content: List[Dict[str, Any]] = Field(default_factory=list)
    qas: List[Dict[str, Any]] = Field(default_factory=list)
    replace: bool = True


class ContentResponse(BaseModel):
    site_id: str
    added: int
    errors: int
    namespaces: List[str] = Field(default_factory=list)
    details: List[str] = Field(default_factory=list)


@lru_cache(maxsize=1)
def get_index() -> VectorIndex:
    return InMemoryVectorIndex()


@lru_cache(maxsize=1)
def get_embedder() -> EmbedFn:
    return get_embed_fn()


@lru_cache(maxsize=1)
def get_pipeline() -> AssistantPipeline:
    """Production wiring: OpenAI completion + embeddings, YAML site configs."""
    from storefront.llm_client import complete

    return AssistantPipeline(
        complete=complete,
        retrieval=RetrievalEngine(get_index(), get_embedder()),
        site_store=YamlSiteConfigStore(),
        trace_writer=JsonlTraceWriter(),
    )


@lru_cache(maxsize=1)
def get_indexer() -> ContentIndexer:
    return ContentIndexer(get_index(), get_embedder())


@lru_cache(maxsize=1)
def get_memory() -> ConversationMemory:
    return ConversationMemory()


@app.get("/health", response_model=HealthResponse, tags=["Meta"])
def health():
    return HealthResponse(status="ok", version=APP_VERSION)


@app.get("/version", response_model=HealthResponse, tags=["Meta"])
def version():
    return HealthResponse(status="ok", version=APP_VERSION)


@app.post("/chat", response_model=ChatResponse, tags=["Chat"])
def chat(
    req: ChatRequest,
    pipeline: AssistantPipeline = Depends(get_pipeline),
    memory: ConversationMemory = Depends(get_memory),
):
    if not is_valid_site_id(req.site_id):
        raise HTTPException(status_code=422, detail="site_id may only contain letters, digits, '_' and '-'.")
    if req.conversation_context is not None:
        context = ConversationContext.from_turns(
            [Turn(role=t.role, content=t.content, recorded_action=t.action) for t in req.conversation_context]
        )
    elif req.thread_id:
        context = memory.get_context(req.thread_id)
    else:
        context = ConversationContext()

    turn = TurnRequest(
        utterance=req.message,
        site_id=req.site_id,
        thread_id=req.thread_id,
        turn_type=req.type,
        conversation_context=context,
        current_page_url=req.current_page_url,
        page_snapshot=PageSnapshot.from_dict(req.page_data),
    )
    try:
        result = pipeline.handle_turn(turn)
    except UpstreamUnavailable as e:
        logger.error("[CHAT] upstream unavailable for site %s: %s", req.site_id, e)
        raise HTTPException(status_code=503, detail="The assistant is temporarily unavailable. Please try again.")

    if req.thread_id:
        memory.record_exchange(req.thread_id, req.message, result.action)
    return ChatResponse(**result.to_dict())


@app.post("/sites/{site_id}/content", response_model=ContentResponse, tags=["Content"])
def index_content(
    site_id: str,
    req: ContentRequest,
    indexer: ContentIndexer = Depends(get_indexer),
):
    if not is_valid_site_id(site_id):
        raise HTTPException(status_code=422, detail="site_id may only contain letters, digits, '_' and '-'.")
    stats = indexer.index_site(site_id, req.content, req.qas, replace=req.replace)
    return ContentResponse(
        site_id=site_id,
        added=stats.added,
        errors=stats.errors,
        namespaces=stats.namespaces,
        details=stats.details,
    )
