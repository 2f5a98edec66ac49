import os
import tempfile
import uuid

# 在导入应用之前指定数据目录，所有 SQLite 库和存储桶都落在临时目录中
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="accelerator-tests-")
os.environ.pop("STORAGE_DIR", None)
os.environ["COOKIE_SECURE"] = "false"
os.environ["AUTH_REQUIRE_EMAIL_CONFIRMATION"] = "false"

import pytest
from fastapi.testclient import TestClient

from accelerator.api.deps import get_llm
from accelerator.core.config import settings
from accelerator.main import app
from accelerator.services.auth_provider import auth_provider
from accelerator.services.key_store import key_store


class FakeStreamChunk:
    def __init__(self, content: str):
        self._content = content

    def model_dump(self) -> dict:
        return {"content": self._content}


class FakeMessage:
    def __init__(self, content: str, usage_metadata: dict | None = None):
        self.content = content
        self.usage_metadata = usage_metadata or {}


class FakeLLM:
    def __init__(self, reply: str = "fake reply"):
        self.reply = reply
        self.prompts: list = []

    async def astream(self, messages):
        self.prompts.append(messages)
        yield FakeStreamChunk("stream ")
        yield FakeStreamChunk("chunk")

    async def ainvoke(self, messages):
        self.prompts.append(messages)
        return FakeMessage(self.reply, {"input_tokens": 7, "output_tokens": 5, "total_tokens": 12})


class FailingLLM:
    async def astream(self, messages):
        raise RuntimeError("model offline")
        yield  # pragma: no cover

    async def ainvoke(self, messages):
        raise RuntimeError("model offline")


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def client(fake_llm):
    app.dependency_overrides[get_llm] = lambda: fake_llm

    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()


def create_user(full_name: str = "Test User"):
    email = f"user-{uuid.uuid4().hex[:12]}@example.com"
    user, session = auth_provider.sign_up(email, "correct-horse-battery", {"full_name": full_name})
    return user, session


def login(client: TestClient, session) -> TestClient:
    client.cookies.set(settings.ACCESS_COOKIE_NAME, session.access_token)
    client.cookies.set(settings.REFRESH_COOKIE_NAME, session.refresh_token)
    return client


@pytest.fixture
def user_session():
    _, session = create_user()
    return session


@pytest.fixture
def auth_client(client, user_session):
    """已登录用户的 client"""
    return login(client, user_session)


@pytest.fixture
def api_key(user_session):
    created = key_store.create_key(user_session.user.id, "pytest-key", scopes=["*"])
    return created["key"]


@pytest.fixture
def api_headers(api_key):
    return {"Authorization": f"Bearer {api_key}"}


@pytest.fixture
def read_only_headers(user_session):
    created = key_store.create_key(user_session.user.id, "pytest-read-only", scopes=["read"])
    return {"Authorization": f"Bearer {created['key']}"}
