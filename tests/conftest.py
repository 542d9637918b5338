import asyncio
import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional, Sequence
from uuid import uuid4

# Engine is built at import time; keep it away from the production path and real providers.
os.environ.setdefault("DB_PATH", str(Path(tempfile.gettempdir()) / f"coach_bootstrap_{uuid4().hex[:8]}.db"))
for _key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY"):
    os.environ[_key] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.classification import Classification, RequestClassifier, get_request_classifier
from app.core.context_builder import BuiltContext, CoachContext, get_context_builder
from app.core.errors import ProviderError
from app.core.security import create_access_token, get_password_hash
from app.db.models import User
from app.db.session import SessionLocal, configure_database, create_tables
from app.services.llm import ProviderRegistry
from app.services.model_router import ModelRouter, get_model_router


class FakeScenario(str, Enum):
    OK = "OK"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TIMEOUT = "TIMEOUT"
    PARTIAL_THEN_ERROR = "PARTIAL_THEN_ERROR"


class FakeProvider:
    def __init__(
        self,
        name: str,
        scenario: FakeScenario = FakeScenario.OK,
        tokens: Sequence[str] = ("VO2 max is ", "the maximum rate ", "of oxygen use."),
        json_response: Optional[dict[str, Any]] = None,
    ) -> None:
        self.name = name
        self.scenario = scenario
        self.tokens = list(tokens)
        self.json_response = json_response
        self.stream_calls = 0
        self.json_calls = 0
        self.models: list[str] = []
        self.last_messages: Sequence[dict[str, str]] = ()

    async def stream_chat(
        self, model: str, system: str, messages: Sequence[dict[str, str]], max_tokens: int
    ) -> AsyncIterator[str]:
        self.stream_calls += 1
        self.models.append(model)
        self.last_messages = messages
        if self.scenario == FakeScenario.PROVIDER_ERROR:
            raise ProviderError(self.name, model, "simulated provider failure", status_code=503)
        if self.scenario == FakeScenario.TIMEOUT:
            await asyncio.sleep(30)
        for index, token in enumerate(self.tokens):
            if self.scenario == FakeScenario.PARTIAL_THEN_ERROR and index == 1:
                raise ProviderError(self.name, model, "simulated stream drop")
            yield token

    async def complete_json(self, model: str, system: str, prompt: str, max_tokens: int) -> dict[str, Any]:
        self.json_calls += 1
        self.models.append(model)
        if self.scenario != FakeScenario.OK or self.json_response is None:
            raise ProviderError(self.name, model, "simulated json failure")
        return dict(self.json_response)


class CountingContextBuilder:
    def __init__(self, context: Optional[CoachContext] = None) -> None:
        self.calls = 0
        self.context = context or CoachContext()

    async def build(
        self, user_id: int, message: str, classification: Classification, domain: Optional[str] = None
    ) -> BuiltContext:
        self.calls += 1
        return BuiltContext(context=self.context)


class CountingModelRouter(ModelRouter):
    def __init__(self, registry: ProviderRegistry, **kwargs: Any) -> None:
        super().__init__(registry, **kwargs)
        self.stream_calls = 0
        self.judge_calls = 0
        self.rewrite_calls = 0

    async def stream_with_fallback(self, *args: Any, **kwargs: Any):
        self.stream_calls += 1
        return await super().stream_with_fallback(*args, **kwargs)

    async def judge(self, *args: Any, **kwargs: Any):
        self.judge_calls += 1
        return await super().judge(*args, **kwargs)

    async def rewrite(self, *args: Any, **kwargs: Any):
        self.rewrite_calls += 1
        return await super().rewrite(*args, **kwargs)


def parse_ndjson(body: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "coach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from app.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(is_pro: bool = True) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=get_password_hash("StrongPass123"), is_pro=is_pro)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}

    return _headers


@pytest.fixture
def counting_context_builder(app) -> CountingContextBuilder:
    builder = CountingContextBuilder()
    app.dependency_overrides[get_context_builder] = lambda: builder
    return builder


@pytest.fixture
def override_classifier(app) -> Callable[..., RequestClassifier]:
    def _override(provider: Optional[FakeProvider] = None) -> RequestClassifier:
        registry = ProviderRegistry([provider] if provider else [])
        classifier = RequestClassifier(registry, provider="openai", model="gpt-4o-mini")
        app.dependency_overrides[get_request_classifier] = lambda: classifier
        return classifier

    return _override


@pytest.fixture
def override_router(app) -> Callable[..., CountingModelRouter]:
    def _override(*providers: FakeProvider, secondary: Optional[str] = "anthropic") -> CountingModelRouter:
        model_router = CountingModelRouter(
            ProviderRegistry(providers), secondary=secondary, judge_provider="anthropic"
        )
        app.dependency_overrides[get_model_router] = lambda: model_router
        return model_router

    return _override
