import os
import tempfile
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FILE_STORAGE_ROOT", tempfile.mkdtemp(prefix="inkwell-files-"))
os.environ.setdefault("PLUGINS_DIR", os.path.join(tempfile.mkdtemp(), "plugins.d"))

import pytest
from fastapi.testclient import TestClient

from backend import plugins
from backend.db import reset_db
from backend.llm import AttachmentResults, LLMProvider, LLMResponse, LLMUsage
from backend.main import OAUTH_STATES, RATE_LIMITER, SESSIONS, app, clear_auth_handler_cache


class FakeProvider(LLMProvider):
    name = "FAKE"

    def __init__(self, reply: str = "Hello there!", error: Exception = None) -> None:
        super().__init__()
        self.reply = reply
        self.error = error
        self.calls = []

    async def send_message(self, params, api_key):
        self.calls.append((params, api_key))
        if self.error is not None:
            raise self.error
        attached = [a.id for message in params.messages for a in message.attachments]
        return LLMResponse(
            content=self.reply,
            finish_reason="stop",
            usage=LLMUsage(prompt_tokens=10, completion_tokens=4, total_tokens=14),
            attachment_results=AttachmentResults(sent=attached) if attached else None,
        )

    async def validate_api_key(self, api_key):
        return api_key != "bad-key"

    async def get_available_models(self, api_key):
        return ["fake-large", "fake-small"]


@pytest.fixture(autouse=True)
def reset_state() -> None:
    reset_db()
    SESSIONS.clear()
    OAUTH_STATES.clear()
    RATE_LIMITER.reset()
    plugins.reset_plugin_system()
    clear_auth_handler_cache()


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture()
def fake_provider(monkeypatch: pytest.MonkeyPatch) -> FakeProvider:
    provider = FakeProvider()
    real_factory = plugins.create_llm_provider

    def _create(name, base_url=None):
        real_factory(name, base_url)
        return provider

    monkeypatch.setattr(plugins, "create_llm_provider", _create)
    return provider


@pytest.fixture()
def auth_context(client: TestClient) -> tuple[dict[str, str], str]:
    email = f"user-{uuid.uuid4().hex}@example.com"
    password = "supersecret"
    response = client.post(
        "/auth/register",
        json={"email": email, "password": password, "name": "Test User"},
    )
    assert response.status_code == 200
    token = response.json()["token"]
    headers = {"Authorization": f"Bearer {token}"}
    profile = client.get("/auth/me", headers=headers).json()["user"]
    return headers, profile["user_id"]


@pytest.fixture()
def profile_id(client: TestClient, auth_context: tuple[dict[str, str], str]) -> str:
    headers, _ = auth_context
    key = client.post(
        "/api-keys",
        headers=headers,
        json={"label": "main", "provider": "OPENAI", "api_key": "sk-test-1234567890"},
    )
    assert key.status_code == 201
    response = client.post(
        "/profiles",
        headers=headers,
        json={
            "name": "Default",
            "provider": "OPENAI",
            "model_name": "gpt-4o-mini",
            "api_key_id": key.json()["id"],
            "parameters": {"temperature": 0.5, "max_tokens": 256},
            "is_default": True,
        },
    )
    assert response.status_code == 201
    return response.json()["id"]
