import json

from accelerator.api.deps import get_llm
from accelerator.main import app
from accelerator.services.analytics import get_user_api_stats
from conftest import FailingLLM


def _events(response):
    lines = [
        line.decode() if isinstance(line, bytes) else line
        for line in response.iter_lines()
        if line
    ]
    return [line.replace("data: ", "", 1) for line in lines]


def test_chat_requires_session(client):
    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
    assert response.status_code == 401


def test_chat_validates_messages(auth_client):
    missing = auth_client.post("/api/chat", json={})
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Messages array is required"

    empty = auth_client.post("/api/chat", json={"messages": []})
    assert empty.json()["detail"] == "At least one message is required"

    no_content = auth_client.post("/api/chat", json={"messages": [{"role": "user"}]})
    assert no_content.json()["detail"] == "Each message must have role and content"

    bad_role = auth_client.post("/api/chat", json={"messages": [{"role": "wizard", "content": "abracadabra"}]})
    assert bad_role.json()["detail"] == "Invalid message role"


def test_chat_completion_creates_chat_and_persists_reply(auth_client, user_session, fake_llm):
    response = auth_client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "What is the capital of France?"}]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "fake reply"}
    assert body["usage"]["total_tokens"] == 12

    details = auth_client.get(f"/api/chats/{body['chat_id']}/details").json()
    assert details["chat"]["title"] == "What is the capital of France?"
    assert [(m["role"], m["content"]) for m in details["messages"]] == [
        ("user", "What is the capital of France?"),
        ("assistant", "fake reply"),
    ]

    # 用量在响应之后的后台任务中记录
    stats = get_user_api_stats(user_session.user.id)
    assert stats["total_requests"] == 1
    assert stats["total_tokens"] == 12


def test_chat_completion_keeps_system_prompt_first(auth_client, fake_llm):
    auth_client.post(
        "/api/chat",
        json={
            "messages": [{"role": "user", "content": "Hello"}],
            "system_prompt": "You are terse.",
        },
    )
    prompt = fake_llm.prompts[-1]
    assert prompt[0] == ("system", "You are terse.")
    assert prompt[-1] == ("human", "Hello")


def test_chat_streaming(auth_client):
    with auth_client.stream(
        "POST",
        "/api/chat",
        json={"messages": [{"role": "user", "content": "Stream please"}], "stream": True},
    ) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response)

    assert events[-1] == "[DONE]"
    deltas = [json.loads(e)["choices"][0]["delta"]["content"] for e in events if e.startswith('{"choices"')]
    assert "".join(deltas) == "stream chunk"
    final = json.loads(events[-2])
    assert final["done"] is True

    details = auth_client.get(f"/api/chats/{final['chat_id']}/details").json()
    assert [m["content"] for m in details["messages"]] == ["Stream please", "stream chunk"]


def test_chat_with_unknown_chat_id(auth_client):
    response = auth_client.post(
        "/api/chat",
        json={"messages": [{"role": "user", "content": "Hi"}], "chat_id": "missing"},
    )
    assert response.status_code == 404


def test_chat_completion_upstream_failure(auth_client, user_session):
    app.dependency_overrides[get_llm] = lambda: FailingLLM()

    response = auth_client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
    assert response.status_code == 500
    assert response.json()["detail"] == "AI service temporarily unavailable"

    stats = get_user_api_stats(user_session.user.id)
    assert stats["errors"] == 1
