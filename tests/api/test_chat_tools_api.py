import json
from dataclasses import replace
from uuid import uuid4

import pytest

from conftest import FakeProvider, parse_ndjson

from app.db.models import AnalyticsEvent, ChatMessage
from app.services.tools import TOOL_INPUT_HELP, build_tool_registry, get_tool_registry

MACROS = "Calculate my macros for weight loss, 80 kg, active"


@pytest.fixture
def counting_tools(app):
    registry = build_tool_registry()
    calls: list[str] = []
    for name in registry.names():
        tool = registry.get(name)

        def _counted(data, handler=tool.handler, name=name):
            calls.append(name)
            return handler(data)

        registry.register(replace(tool, handler=_counted))
    app.dependency_overrides[get_tool_registry] = lambda: registry
    return calls


def _post_chat(client, headers: dict, content: str, session_id: str):
    return client.post(
        "/chat",
        headers=headers,
        json={"messages": [{"role": "user", "content": content}], "sessionId": session_id},
    )


def _rows(db_session, user_id: int, session_id: str) -> list[ChatMessage]:
    db_session.expire_all()
    return (
        db_session.query(ChatMessage)
        .filter(ChatMessage.user_id == user_id, ChatMessage.thread_id == session_id)
        .order_by(ChatMessage.id.asc())
        .all()
    )


def _analytics(db_session, session_id: str) -> AnalyticsEvent:
    db_session.expire_all()
    return db_session.query(AnalyticsEvent).filter(AnalyticsEvent.session_id == session_id).one()


def test_tool_request_streams_tool_result_without_model(
    client,
    create_user,
    auth_headers,
    counting_tools,
    counting_context_builder,
    override_classifier,
    override_router,
    db_session,
) -> None:
    user = create_user()
    override_classifier()
    router = override_router(FakeProvider("openai"), FakeProvider("anthropic"))
    session_id = uuid4().hex

    response = _post_chat(client, auth_headers(user), MACROS, session_id)

    assert response.status_code == 200
    events = parse_ndjson(response.text)
    assert events[0]["type"] == "meta"
    assert events[0]["sessionId"] == session_id
    assert events[0]["tool"] == "macro_calculator"
    text = "".join(event["value"] for event in events if event["type"] == "token")
    assert text.startswith("## Daily macro targets (2536 kcal)")
    assert events[-1]["type"] == "done"
    assert counting_tools == ["macro_calculator"]
    assert router.stream_calls == 0
    assert counting_context_builder.calls == 0

    rows = _rows(db_session, user.id, session_id)
    assert [(row.role, row.content) for row in rows] == [("user", MACROS), ("assistant", text)]
    assert json.loads(rows[0].metadata_json) == {"tool": "macro_calculator"}
    event = _analytics(db_session, session_id)
    assert event.event_type == "chat_tool"
    assert event.success is True
    assert json.loads(event.metadata_json) == {"tool": "macro_calculator"}


def test_tool_input_out_of_range_streams_help(
    client, create_user, auth_headers, counting_tools, override_classifier, override_router, db_session
) -> None:
    user = create_user()
    override_classifier()
    override_router(FakeProvider("openai"))
    session_id = uuid4().hex

    response = _post_chat(client, auth_headers(user), "Calculate my macros, I weigh 25 kg", session_id)

    events = parse_ndjson(response.text)
    assert events[0]["tool"] == "macro_calculator"
    assert "".join(event["value"] for event in events if event["type"] == "token") == TOOL_INPUT_HELP
    assert events[-1]["type"] == "done"
    assert counting_tools == []
    event = _analytics(db_session, session_id)
    assert event.success is False
    assert event.error_code == "tool_input_invalid"


def test_dosage_question_never_runs_tool(
    client, create_user, auth_headers, counting_tools, override_router, db_session
) -> None:
    user = create_user()
    override_router(FakeProvider("openai"))
    session_id = uuid4().hex
    message = "How many mg of melatonin should I take for a better sleep schedule?"

    response = _post_chat(client, auth_headers(user), message, session_id)

    events = parse_ndjson(response.text)
    assert events[0]["triage"] is True
    assert "tool" not in events[0]
    assert counting_tools == []
    assert _analytics(db_session, session_id).event_type == "chat_triage"


def test_classifier_block_wins_over_tool(
    client, create_user, auth_headers, counting_tools, override_classifier, override_router, db_session
) -> None:
    user = create_user()
    override_classifier(
        FakeProvider(
            "openai",
            json_response={"topic": "emotional_crisis", "risk": "high", "complexity": "high", "allow_answer": False},
        )
    )
    override_router(FakeProvider("openai"))
    session_id = uuid4().hex

    response = _post_chat(
        client, auth_headers(user), "I need a stress management routine, nothing feels worth it", session_id
    )

    events = parse_ndjson(response.text)
    assert events[0]["triage"] is True
    assert counting_tools == []
