import json
from typing import Optional

import pytest

from app.core.errors import ProviderError
from app.db.models import Document
from app.db.session import SessionLocal
from app.services.rag import (
    SLEEP_SOURCE,
    RagRetriever,
    cosine_similarity,
    format_rag_context,
    is_sleep_query,
    parse_embedding,
    search_documents,
)


class FakeEmbedder:
    def __init__(self, vector: list[float], error: Optional[Exception] = None) -> None:
        self.vector = vector
        self.error = error
        self.calls = 0

    async def embed(self, model: str, text: str) -> list[float]:
        self.calls += 1
        if self.error:
            raise self.error
        return self.vector


def _doc(source: str, title: str, embedding: list[float], user_id: Optional[int] = None) -> Document:
    return Document(
        user_id=user_id,
        source=source,
        title=title,
        chunk=f"{title} chunk",
        embedding_json=json.dumps(embedding),
    )


def test_cosine_similarity_edges() -> None:
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0


def test_is_sleep_query() -> None:
    assert is_sleep_query("Does coffee late in the day matter?")
    assert is_sleep_query("Tips for JET LAG")
    assert is_sleep_query("I keep sleeping badly")
    assert is_sleep_query("Is a 20 minute nap ok?")
    assert not is_sleep_query("What is VO2 max?")


@pytest.mark.parametrize(
    "message",
    ["How do I snap out of a slump?", "What does a synapse do?", "I daydream at work", "Pass the napkin"],
)
def test_sleep_words_inside_other_words_do_not_match(message: str) -> None:
    assert not is_sleep_query(message)


def test_search_ranks_filters_and_scopes_documents(create_user, db_session) -> None:
    owner = create_user()
    other = create_user()
    db_session.add_all(
        [
            _doc("general", "Exact", [1.0, 0.0], None),
            _doc("general", "Close", [0.9, 0.3], None),
            _doc("general", "Orthogonal", [0.0, 1.0], None),
            _doc("private", "Mine", [0.95, 0.1], owner.id),
            _doc("private", "Theirs", [1.0, 0.0], other.id),
        ]
    )
    db_session.commit()

    results = search_documents(db_session, [1.0, 0.0], user_id=owner.id, min_similarity=0.5, max_docs=10)
    titles = [doc.title for doc in results]
    assert "Theirs" not in titles
    assert "Orthogonal" not in titles
    assert titles.index("Exact") < titles.index("Mine") < titles.index("Close")
    similarities = [doc.similarity for doc in results]
    assert similarities == sorted(similarities, reverse=True)

    capped = search_documents(db_session, [1.0, 0.0], user_id=owner.id, min_similarity=0.5, max_docs=1)
    assert len(capped) == 1


def test_format_rag_context_line_shape() -> None:
    from app.services.rag import ScoredDocument

    text = format_rag_context([ScoredDocument(id=4, source="kb", title="Zone 2", chunk="Easy cardio.", similarity=0.876)])
    assert text == "[Doc 4 | Source: kb | Section: Zone 2 | similarity: 0.88]\nEasy cardio."


@pytest.mark.anyio
async def test_sleep_mode_prefers_sleep_subset(create_user, db_session) -> None:
    user = create_user()
    db_session.add_all(
        [
            _doc(SLEEP_SOURCE, "Light in the morning", [0.0, 0.0, 1.0]),
            _doc("general_kb", "Morning light general", [0.0, 0.0, 1.0]),
        ]
    )
    db_session.commit()
    retriever = RagRetriever(FakeEmbedder([0.0, 0.0, 1.0]), session_factory=SessionLocal, min_similarity=0.9)
    bundle = await retriever.build_bundle("Morning light and sleep?", user_id=user.id, sleep_mode=True)
    titles = [source.title for source in bundle.sources]
    assert "Light in the morning" in titles
    assert "Morning light general" not in titles
    assert "Source: sleep_masterclass" in bundle.context


@pytest.mark.anyio
async def test_embedding_failure_returns_empty_bundle() -> None:
    retriever = RagRetriever(FakeEmbedder([], error=ProviderError("openai", "emb", "down")), session_factory=SessionLocal)
    bundle = await retriever.build_bundle("anything", user_id=None, sleep_mode=False)
    assert bundle.context == ""
    assert bundle.sources == ()


@pytest.mark.anyio
async def test_no_embedder_returns_empty_bundle() -> None:
    bundle = await RagRetriever(None).build_bundle("anything", user_id=None, sleep_mode=False)
    assert bundle.sources == ()


@pytest.mark.parametrize("raw", ["null", "{}", '"abc"', "[]", '[1, "x"]', "[true, false]", "not json", None])
def test_parse_embedding_rejects_non_numeric_lists(raw: Optional[str]) -> None:
    with pytest.raises(ValueError):
        parse_embedding(raw)


def test_parse_embedding_accepts_numbers() -> None:
    assert parse_embedding("[1, 0.5]") == [1.0, 0.5]


@pytest.mark.anyio
async def test_corrupt_embedding_rows_are_skipped_not_fatal(create_user, db_session) -> None:
    user = create_user()
    query_vector = [0.0, 0.0, 0.0, 0.0, 1.0]
    db_session.add(_doc("general_kb", "Good", query_vector, user.id))
    for index, raw in enumerate(["null", "{}", '"abc"', '[1, "x"]']):
        db_session.add(
            Document(user_id=user.id, source="general_kb", title=f"Broken {index}", chunk="x", embedding_json=raw)
        )
    db_session.commit()

    retriever = RagRetriever(FakeEmbedder(query_vector), session_factory=SessionLocal, min_similarity=0.9)
    bundle = await retriever.build_bundle("q", user_id=user.id, sleep_mode=False)

    assert [source.title for source in bundle.sources] == ["Good"]
    assert "Good chunk" in bundle.context
