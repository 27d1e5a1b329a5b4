import asyncio
import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from backend import main, plugins
from backend.chat import build_system_prompt, generate_greeting_message, history_messages
from backend.db import Character, File as StoredFile, Message, MessageRole, Persona, db_session
from backend.llm import APIKeyError, OpenAIProvider


def test_system_prompt_includes_character_and_persona() -> None:
    character = Character(
        name="Aria",
        system_prompt="Write in prose.",
        description="A wandering bard.",
        personality="Cheerful",
        scenario="A tavern at dusk.",
        example_dialogues="<START> Aria: Hi!",
    )
    persona = Persona(name="Sam", description="A traveller.", personality_traits="curious")

    prompt = build_system_prompt(character, persona)

    assert prompt.startswith("Write in prose.\n\nYou are roleplaying as Aria.")
    assert "Character Description:\nA wandering bard." in prompt
    assert "Personality:\nCheerful" in prompt
    assert "You are talking to Sam.\nA traveller.\nThey are: curious" in prompt
    assert "Scenario:\nA tavern at dusk." in prompt
    assert "Example Dialogue:\n<START> Aria: Hi!" in prompt
    assert prompt.endswith("Aria's personality and the current scenario.")


def test_system_prompt_scenario_override_and_trim() -> None:
    prompt = build_system_prompt(Character(name="Bo", scenario="Castle"), scenario="Beach")
    assert prompt.startswith("You are roleplaying as Bo.")
    assert "Scenario:\nBeach" in prompt
    assert "Castle" not in prompt


def test_history_skips_system_and_tool_messages() -> None:
    messages = [
        Message(seq=1, role=MessageRole.ASSISTANT, content="Hi"),
        Message(seq=2, role=MessageRole.TOOL, content="{}"),
        Message(seq=3, role=MessageRole.USER, content="Hello"),
    ]
    history = history_messages("prompt", messages)
    assert [(m.role, m.content) for m in history] == [
        ("system", "prompt"),
        ("assistant", "Hi"),
        ("user", "Hello"),
    ]


def test_greeting_uses_factory_and_trims(fake_provider) -> None:
    fake_provider.reply = "  Welcome, traveller!  \n"
    greeting = asyncio.run(
        generate_greeting_message(
            system_prompt="You are roleplaying as Aria.",
            character_name="Aria",
            provider="OPENAI",
            model_name="gpt-4o-mini",
        )
    )

    assert greeting == "Welcome, traveller!"
    params, api_key = fake_provider.calls[0]
    assert api_key == ""
    assert params.max_tokens == 160
    assert params.messages[0].role == "system"
    assert "This is a brand new conversation" in params.messages[0].content
    assert params.messages[1].content.startswith("Greet the user as Aria")


def test_greeting_propagates_provider_errors(fake_provider) -> None:
    fake_provider.error = APIKeyError("OPENAI")
    with pytest.raises(APIKeyError):
        asyncio.run(
            generate_greeting_message("prompt", "Aria", "OPENAI", "gpt-4o-mini", api_key="sk")
        )


def _character(client: TestClient, headers, **values) -> str:
    payload = {"name": "Aria", "description": "A wandering bard."}
    payload.update(values)
    response = client.post("/characters", headers=headers, json=payload)
    assert response.status_code == 201
    return response.json()["id"]


def test_chat_starts_with_character_first_message(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Well met!")

    response = client.post("/chats", headers=headers, json={"character_id": character_id})

    assert response.status_code == 201
    payload = response.json()
    assert payload["chat"]["connection_profile_id"] == profile_id
    assert payload["chat"]["title"] == "Chat with Aria"
    assert [m["content"] for m in payload["messages"]] == ["Well met!"]
    assert fake_provider.calls == []


def test_chat_generates_greeting_without_first_message(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers)
    fake_provider.reply = "Greetings, friend."

    payload = client.post("/chats", headers=headers, json={"character_id": character_id}).json()

    assert payload["messages"][0]["role"] == "ASSISTANT"
    assert payload["messages"][0]["content"] == "Greetings, friend."
    params, api_key = fake_provider.calls[0]
    assert api_key == "sk-test-1234567890"
    assert params.temperature == 0.5
    assert params.max_tokens == 256


def test_chat_without_greeting_when_provider_fails(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers)
    fake_provider.error = APIKeyError("OPENAI")

    response = client.post("/chats", headers=headers, json={"character_id": character_id})

    assert response.status_code == 201
    assert response.json()["messages"] == []


def test_chat_requires_connection_profile(client: TestClient, auth_context) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Hi")
    response = client.post("/chats", headers=headers, json={"character_id": character_id})
    assert response.status_code == 400
    assert response.json()["detail"] == "A connection profile is required."


def test_send_message_stores_reply(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Well met!")
    chat_id = client.post("/chats", headers=headers, json={"character_id": character_id}).json()[
        "chat"
    ]["id"]
    fake_provider.reply = "The road is long."

    response = client.post(
        f"/chats/{chat_id}/messages", headers=headers, json={"content": "Where to?"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["assistant_message"]["content"] == "The road is long."
    assert body["usage"]["total_tokens"] == 14
    params, _ = fake_provider.calls[0]
    assert [m.role for m in params.messages] == ["system", "assistant", "user"]
    assert params.messages[-1].content == "Where to?"

    detail = client.get(f"/chats/{chat_id}", headers=headers).json()
    assert detail["chat"]["message_count"] == 3
    assert [m["role"] for m in detail["messages"]] == ["ASSISTANT", "USER", "ASSISTANT"]


def test_send_message_streams_events(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Hi")
    chat_id = client.post("/chats", headers=headers, json={"character_id": character_id}).json()[
        "chat"
    ]["id"]
    fake_provider.reply = "Streaming reply"

    response = client.post(
        f"/chats/{chat_id}/messages",
        headers=headers,
        json={"content": "Tell me", "stream": True},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert '"content": "Streaming reply"' in response.text
    assert '"done": true' in response.text
    assert client.get(f"/chats/{chat_id}", headers=headers).json()["chat"]["message_count"] == 3


def test_provider_failure_returns_friendly_502(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Hi")
    chat_id = client.post("/chats", headers=headers, json={"character_id": character_id}).json()[
        "chat"
    ]["id"]
    fake_provider.error = APIKeyError("OPENAI")

    response = client.post(f"/chats/{chat_id}/messages", headers=headers, json={"content": "Hey"})

    assert response.status_code == 502
    assert response.json()["detail"] == (
        "Invalid or expired API key for OPENAI. Please check your API key in settings."
    )


def test_empty_message_rejected(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Hi")
    chat_id = client.post("/chats", headers=headers, json={"character_id": character_id}).json()[
        "chat"
    ]["id"]
    response = client.post(f"/chats/{chat_id}/messages", headers=headers, json={"content": "  "})
    assert response.status_code == 400


def test_chats_are_scoped_to_owner(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Hi")
    chat_id = client.post("/chats", headers=headers, json={"character_id": character_id}).json()[
        "chat"
    ]["id"]
    other = client.post(
        "/auth/register", json={"email": "other@example.com", "password": "anotherpass"}
    ).json()["token"]
    other_headers = {"Authorization": f"Bearer {other}"}

    assert client.get(f"/chats/{chat_id}", headers=other_headers).status_code == 404
    assert client.get("/chats", headers=other_headers).json()["chats"] == []
    assert client.delete(f"/chats/{chat_id}", headers=headers).json() == {"status": "deleted"}
    assert client.get(f"/chats/{chat_id}", headers=headers).status_code == 404


def test_profile_connection_and_message_tests(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    profile = client.get("/profiles", headers=headers).json()["profiles"][0]
    connection = client.post(
        "/profiles/test-connection",
        headers=headers,
        json={"provider": "OPENAI", "api_key_id": profile["api_key_id"]},
    ).json()
    assert connection["valid"] is True
    assert connection["models"] == ["fake-large", "fake-small"]

    fake_provider.reply = "Hi!"
    message = client.post(
        "/profiles/test-message",
        headers=headers,
        json={"provider": "OPENAI", "model_name": "gpt-4o-mini", "api_key_id": profile["api_key_id"]},
    ).json()
    assert message["content"] == "Hi!"
    params, _ = fake_provider.calls[-1]
    assert params.messages[0].content == "Hello! Please respond with a brief greeting."


def _chat(client: TestClient, headers, **values) -> str:
    character_id = _character(client, headers, first_message="Hi", **values)
    response = client.post("/chats", headers=headers, json={"character_id": character_id})
    return response.json()["chat"]["id"]


def _sse_events(body: str):
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def test_streaming_provider_failure_emits_error_event(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    chat_id = _chat(client, headers)
    fake_provider.error = APIKeyError("OPENAI")

    response = client.post(
        f"/chats/{chat_id}/messages", headers=headers, json={"content": "Hey", "stream": True}
    )

    assert response.status_code == 200
    events = _sse_events(response.text)
    assert events[0]["user_message"]["content"] == "Hey"
    assert events[-1] == {
        "error": "Invalid or expired API key for OPENAI. Please check your API key in settings.",
        "error_type": "APIKeyError",
    }
    assert not any(event.get("done") for event in events)
    assert client.get(f"/chats/{chat_id}", headers=headers).json()["chat"]["message_count"] == 2


def test_unparseable_provider_reply_is_reported_not_crashed(
    client: TestClient, auth_context, profile_id: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    headers, _ = auth_context
    chat_id = _chat(client, headers)

    def gateway_page(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"data: <html>Bad gateway</html>\n\n")

    transport = httpx.MockTransport(gateway_page)
    monkeypatch.setattr(
        plugins, "create_llm_provider", lambda name, base_url=None: OpenAIProvider(transport=transport)
    )

    plain = client.post(f"/chats/{chat_id}/messages", headers=headers, json={"content": "Hey"})
    assert plain.status_code == 502
    assert plain.json()["error_type"] == "LLMProviderError"
    assert "Invalid response from provider" in plain.json()["detail"]

    streamed = client.post(
        f"/chats/{chat_id}/messages", headers=headers, json={"content": "Again", "stream": True}
    )
    assert streamed.status_code == 200
    last = _sse_events(streamed.text)[-1]
    assert last["error_type"] == "LLMProviderError"
    assert "Invalid response from provider" in last["error"]


def test_send_message_forwards_file_attachments(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    chat_id = _chat(client, headers)
    image = b"\x89PNG\r\n\x1a\nfake-image-bytes"
    file_id = client.post(
        "/files/upload",
        headers=headers,
        data={"category": "ATTACHMENT", "chat_id": chat_id},
        files={"file": ("map.png", image, "image/png")},
    ).json()["id"]

    response = client.post(
        f"/chats/{chat_id}/messages",
        headers=headers,
        json={"content": "What is on this map?", "file_ids": [file_id]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["user_message"]["attachments"] == [file_id]
    assert body["attachment_results"] == {"sent": [file_id], "failed": []}
    params, _ = fake_provider.calls[-1]
    last = params.messages[-1]
    assert last.role == "user"
    assert [a.id for a in last.attachments] == [file_id]
    assert last.attachments[0].mime_type == "image/png"
    assert base64.b64decode(last.attachments[0].data) == image
    assert all(not m.attachments for m in params.messages[:-1])

    with db_session() as session:
        stored = session.get(StoredFile, file_id)
        assert stored.chat_id == chat_id
        assert stored.message_id == body["user_message"]["id"]


def test_attachments_must_belong_to_user_and_chat(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    chat_id = _chat(client, headers)
    other_chat_id = _chat(client, headers)
    file_id = client.post(
        "/files/upload",
        headers=headers,
        data={"category": "ATTACHMENT", "chat_id": other_chat_id},
        files={"file": ("notes.txt", b"remember the lighthouse", "text/plain")},
    ).json()["id"]

    wrong_chat = client.post(
        f"/chats/{chat_id}/messages",
        headers=headers,
        json={"content": "See notes", "file_ids": [file_id]},
    )
    missing = client.post(
        f"/chats/{chat_id}/messages",
        headers=headers,
        json={"content": "See notes", "file_ids": ["0" * 32]},
    )

    assert wrong_chat.status_code == 400
    assert missing.status_code == 404
    assert fake_provider.calls == []
    assert client.get(f"/chats/{chat_id}", headers=headers).json()["chat"]["message_count"] == 1


def test_message_sequence_is_dense_and_unique(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    chat_id = _chat(client, headers)
    for index in range(3):
        response = client.post(
            f"/chats/{chat_id}/messages", headers=headers, json={"content": f"turn {index}"}
        )
        assert response.status_code == 200

    with db_session() as session:
        seqs = list(
            session.scalars(select(Message.seq).where(Message.chat_id == chat_id).order_by(Message.seq))
        )
    assert seqs == [1, 2, 3, 4, 5, 6, 7]

    with pytest.raises(IntegrityError):
        with db_session() as session:
            session.add(Message(chat_id=chat_id, seq=3, role=MessageRole.USER, content="again"))


def test_chat_routes_run_database_work_in_threadpool(
    client: TestClient, auth_context, profile_id: str, fake_provider, monkeypatch: pytest.MonkeyPatch
) -> None:
    headers, _ = auth_context
    dispatched = []
    real_run = main.run_in_threadpool

    async def recording_run(func, *args, **kwargs):
        dispatched.append(func.__name__)
        return await real_run(func, *args, **kwargs)

    monkeypatch.setattr(main, "run_in_threadpool", recording_run)
    chat_id = _chat(client, headers)
    client.post(f"/chats/{chat_id}/messages", headers=headers, json={"content": "Hello"})
    client.post(
        f"/chats/{chat_id}/messages", headers=headers, json={"content": "Hello", "stream": True}
    )

    assert dispatched == [
        "_chat_seed",
        "_create_chat",
        "_prepare_reply",
        "_store_reply",
        "_prepare_reply",
        "_store_reply",
    ]


def _sillytavern_chat() -> dict:
    return {
        "chat_metadata": {"note_prompt": "Keep it short"},
        "character_name": "Aria",
        "user_name": "Sam",
        "messages": [
            {"name": "Sam", "is_user": True, "is_name": True, "send_date": 1700000000000, "mes": "Hello"},
            {
                "name": "Aria",
                "is_user": False,
                "is_name": True,
                "send_date": "November 16, 2025 7:45am",
                "mes": "Hi!",
                "swipes": ["Hi!", "Hey there!"],
                "swipe_id": 0,
                "extra": {"api": "openai"},
            },
        ],
    }


def test_import_and_export_sillytavern_chat(
    client: TestClient, auth_context, profile_id: str, fake_provider
) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers, first_message="Hi")

    response = client.post(
        "/chats/import",
        headers=headers,
        json={"chat_data": _sillytavern_chat(), "character_id": character_id},
    )

    assert response.status_code == 201
    payload = response.json()
    chat_id = payload["chat"]["id"]
    assert payload["chat"]["connection_profile_id"] == profile_id
    assert payload["chat"]["title"] == "Chat with Aria"
    assert payload["chat"]["message_count"] == 3
    assert [(m["role"], m["content"], m["swipe_index"]) for m in payload["messages"]] == [
        ("USER", "Hello", 0),
        ("ASSISTANT", "Hi!", 0),
        ("ASSISTANT", "Hey there!", 1),
    ]

    exported = client.get(f"/chats/{chat_id}/export", headers=headers).json()
    assert exported["chat_metadata"] == {"note_prompt": "Keep it short"}
    assert exported["character_name"] == "Aria"
    assert exported["user_name"] == "Test User"
    assert len(exported["messages"]) == 2
    first, second = exported["messages"]
    assert first["is_user"] is True
    assert first["send_date"] == 1700000000000
    assert second["swipes"] == ["Hi!", "Hey there!"]
    assert second["swipe_id"] == 0
    assert second["extra"] == {"api": "openai"}

    fake_provider.reply = "Still here."
    client.post(f"/chats/{chat_id}/messages", headers=headers, json={"content": "Again"})
    params, _ = fake_provider.calls[-1]
    assert [(m.role, m.content) for m in params.messages[1:]] == [
        ("user", "Hello"),
        ("assistant", "Hi!"),
        ("user", "Again"),
    ]


def test_chat_import_validation(client: TestClient, auth_context, profile_id: str) -> None:
    headers, _ = auth_context
    character_id = _character(client, headers)

    bad = client.post(
        "/chats/import",
        headers=headers,
        json={"chat_data": {"messages": [{"name": "Sam"}]}, "character_id": character_id},
    )
    assert bad.status_code == 400
    assert bad.json()["detail"] == "Chat message 0 is missing its text."

    foreign = client.post(
        "/chats/import",
        headers=headers,
        json={"chat_data": _sillytavern_chat(), "character_id": "0" * 32},
    )
    assert foreign.status_code == 404
