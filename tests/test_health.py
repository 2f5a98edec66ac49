from accelerator.api.routes import health
from accelerator.core.config import settings


def test_health_reports_version_and_stores(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["code"] == "200"
    assert body["data"]["status"] == "ok"
    assert body["data"]["version"] == settings.APP_VERSION
    assert set(body["data"]["stores"]) == set(health.STORES)
    assert all(body["data"]["stores"].values())


def test_health_degraded_when_store_unavailable(client, monkeypatch):
    monkeypatch.setattr(health.chat_store, "ping", lambda: False)

    body = client.get("/api/health").json()
    # 存储异常时仍返回 200，只在 payload 中标记
    assert body["data"]["status"] == "degraded"
    assert body["data"]["stores"]["chats"] is False
