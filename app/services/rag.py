import json
import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ProviderError
from app.db.models import Document
from app.db.session import SessionLocal
from app.services.llm import get_provider_registry

logger = logging.getLogger("uvicorn.error")

EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "openai")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
RAG_MAX_DOCS = int(os.getenv("RAG_MAX_DOCS", "6"))
RAG_MIN_SIMILARITY = float(os.getenv("RAG_MIN_SIMILARITY", "0.2"))
SLEEP_SOURCE = "sleep_masterclass"

SLEEP_QUERY_PATTERNS = [
    r"sleep",
    r"insomnia",
    r"night shift",
    r"chronotype",
    r"wake up",
    r"fall asleep",
    r"can'?t sleep",
    r"dream",
    r"nightmare",
    r"caffeine",
    r"coffee",
    r"nap(?:s|ping)?\b",
    r"jet lag",
    r"circadian",
    r"melatonin",
    r"bedtime",
    r"wake time",
]

# Leading word boundary only: "sleep" still matches "sleeping", "nap" never matches "snap".
_SLEEP_QUERY_RE = re.compile(r"\b(?:" + "|".join(SLEEP_QUERY_PATTERNS) + r")", re.IGNORECASE)


def is_sleep_query(message: str) -> bool:
    return _SLEEP_QUERY_RE.search(message) is not None


@dataclass(frozen=True)
class RagSource:
    id: int
    title: str
    similarity: float

    def as_dict(self) -> dict[str, object]:
        return {"id": self.id, "title": self.title, "similarity": round(self.similarity, 4)}


@dataclass(frozen=True)
class ScoredDocument:
    id: int
    source: str
    title: str
    chunk: str
    similarity: float


@dataclass(frozen=True)
class RagBundle:
    context: str = ""
    sources: tuple[RagSource, ...] = ()


class Embedder(Protocol):
    async def embed(self, model: str, text: str) -> list[float]:
        ...


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if not left or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if norm == 0:
        return 0.0
    return dot / norm


def parse_embedding(raw: Optional[str]) -> list[float]:
    """Decode a stored embedding; raises ValueError unless it is a JSON list of numbers."""
    try:
        value = json.loads(raw or "")
    except json.JSONDecodeError as exc:
        raise ValueError("embedding is not valid JSON") from exc
    if not isinstance(value, list) or not value:
        raise ValueError("embedding is not a non-empty list")
    if any(isinstance(item, bool) or not isinstance(item, (int, float)) for item in value):
        raise ValueError("embedding contains non-numeric values")
    return [float(item) for item in value]


def search_documents(
    db: Session,
    query_embedding: Sequence[float],
    *,
    user_id: Optional[int],
    source: Optional[str] = None,
    min_similarity: float = RAG_MIN_SIMILARITY,
    max_docs: int = RAG_MAX_DOCS,
) -> list[ScoredDocument]:
    query = db.query(Document)
    if user_id is not None:
        query = query.filter(or_(Document.user_id.is_(None), Document.user_id == user_id))
    else:
        query = query.filter(Document.user_id.is_(None))
    if source:
        query = query.filter(or_(Document.source == source, Document.user_id == user_id))

    scored = []
    for row in query.all():
        try:
            embedding = parse_embedding(row.embedding_json)
        except ValueError as exc:
            logger.debug("rag_document_skipped document_id=%s detail=%s", row.id, exc)
            continue
        similarity = cosine_similarity(query_embedding, embedding)
        if similarity >= min_similarity:
            scored.append(
                ScoredDocument(
                    id=row.id,
                    source=row.source,
                    title=row.title,
                    chunk=row.chunk,
                    similarity=similarity,
                )
            )
    scored.sort(key=lambda doc: doc.similarity, reverse=True)
    return scored[:max_docs]


def format_rag_context(documents: Sequence[ScoredDocument]) -> str:
    return "\n\n".join(
        f"[Doc {doc.id} | Source: {doc.source} | Section: {doc.title} | similarity: {doc.similarity:.2f}]\n"
        f"{doc.chunk}"
        for doc in documents
    )


class RagRetriever:
    def __init__(
        self,
        embedder: Optional[Embedder],
        model: str = EMBEDDING_MODEL,
        session_factory: Optional[Callable[[], Session]] = None,
        max_docs: int = RAG_MAX_DOCS,
        min_similarity: float = RAG_MIN_SIMILARITY,
    ) -> None:
        self.embedder = embedder
        self.model = model
        self._session_factory = session_factory
        self.max_docs = max_docs
        self.min_similarity = min_similarity

    def _search(
        self, embedding: Sequence[float], user_id: Optional[int], source: Optional[str]
    ) -> list[ScoredDocument]:
        db = (self._session_factory or SessionLocal)()
        try:
            return search_documents(
                db,
                embedding,
                user_id=user_id,
                source=source,
                min_similarity=self.min_similarity,
                max_docs=self.max_docs,
            )
        finally:
            db.close()

    async def build_bundle(self, message: str, *, user_id: Optional[int], sleep_mode: bool) -> RagBundle:
        if self.embedder is None:
            return RagBundle()
        try:
            embedding = await self.embedder.embed(self.model, message)
            documents: list[ScoredDocument] = []
            if sleep_mode:
                documents = await run_in_threadpool(self._search, embedding, user_id, SLEEP_SOURCE)
            if not documents:
                documents = await run_in_threadpool(self._search, embedding, user_id, None)
        except (ProviderError, SQLAlchemyError) as exc:
            logger.debug("rag_bundle_unavailable user_id=%s detail=%s", user_id, str(exc)[:220])
            return RagBundle()
        return RagBundle(
            context=format_rag_context(documents),
            sources=tuple(RagSource(doc.id, doc.title, doc.similarity) for doc in documents),
        )


def get_rag_retriever() -> RagRetriever:
    registry = get_provider_registry()
    embedder = registry.get(EMBEDDING_PROVIDER) if registry.has(EMBEDDING_PROVIDER) else None
    if embedder is not None and not hasattr(embedder, "embed"):
        embedder = None
    return RagRetriever(embedder)
