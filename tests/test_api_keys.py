import re

import pytest

from accelerator.services.key_store import InvalidApiKey, key_store

KEY_FORMAT = re.compile(r"^ska_(live|test)_[0-9a-f]{64}$")


def test_create_key_with_session(auth_client):
    response = auth_client.post("/api/v1/auth/keys", json={"name": "CI key"})
    assert response.status_code == 200
    created = response.json()
    assert KEY_FORMAT.match(created["key"])
    assert created["key"].startswith("ska_live_")
    assert created["scopes"] == ["read", "write"]
    assert created["rate_limit"] == 100

    listed = auth_client.get("/api/v1/auth/keys").json()
    assert listed["meta"]["total"] == 1
    assert listed["data"][0]["name"] == "CI key"
    # 列表中不返回明文和哈希
    assert "key" not in listed["data"][0]
    assert "key_hash" not in listed["data"][0]


def test_create_test_key(auth_client):
    created = auth_client.post("/api/v1/auth/keys", json={"name": "sandbox", "is_test": True}).json()
    assert created["key"].startswith("ska_test_")


def test_create_key_validation(client, api_headers):
    no_name = client.post("/api/v1/auth/keys", json={"name": "  "}, headers=api_headers)
    assert no_name.status_code == 400
    assert no_name.json()["message"] == "Name is required"

    bad_scope = client.post("/api/v1/auth/keys", json={"name": "x", "scopes": ["read", "admin"]}, headers=api_headers)
    assert bad_scope.status_code == 400
    assert bad_scope.json() == {"message": "Invalid scopes: admin", "code": "INVALID_SCOPES"}

    bad_limit = client.post("/api/v1/auth/keys", json={"name": "x", "rate_limit": 20000}, headers=api_headers)
    assert bad_limit.status_code == 400
    assert bad_limit.json()["code"] == "INVALID_RATE_LIMIT"


def test_get_and_update_key(client, api_headers):
    created = client.post(
        "/api/v1/auth/keys",
        json={"name": "worker", "scopes": ["files:read"], "rate_limit": 50},
        headers=api_headers,
    ).json()

    fetched = client.get(f"/api/v1/auth/keys/{created['id']}", headers=api_headers)
    assert fetched.status_code == 200
    assert fetched.json()["scopes"] == ["files:read"]

    updated = client.put(
        f"/api/v1/auth/keys/{created['id']}",
        json={"name": "worker-2", "rate_limit": 75},
        headers=api_headers,
    ).json()
    assert updated["name"] == "worker-2"
    assert updated["rate_limit"] == 75

    empty = client.put(f"/api/v1/auth/keys/{created['id']}", json={}, headers=api_headers)
    assert empty.status_code == 400
    assert empty.json()["code"] == "NO_UPDATE_FIELDS"

    missing = client.get("/api/v1/auth/keys/does-not-exist", headers=api_headers)
    assert missing.status_code == 404
    assert missing.json() == {"message": "API key not found", "code": "KEY_NOT_FOUND"}


def test_get_key_requires_api_key(auth_client):
    response = auth_client.get("/api/v1/auth/keys/anything")
    assert response.status_code == 401


def test_revoke_and_delete_key(auth_client):
    created = auth_client.post("/api/v1/auth/keys", json={"name": "temporary"}).json()

    revoked = auth_client.delete(f"/api/v1/auth/keys/{created['id']}")
    assert revoked.json() == {"deleted": True, "permanent": False}
    with pytest.raises(InvalidApiKey):
        key_store.authenticate_key(created["key"])
    assert auth_client.get("/api/v1/auth/keys").json()["meta"]["total"] == 0

    deleted = auth_client.delete(f"/api/v1/auth/keys/{created['id']}", params={"permanent": "true"})
    assert deleted.json() == {"deleted": True, "permanent": True}
    assert auth_client.delete(f"/api/v1/auth/keys/{created['id']}").status_code == 404


def test_expired_key_is_rejected(client, user_session):
    created = key_store.create_key(user_session.user.id, "old", expires_at="2000-01-01T00:00:00+00:00")
    response = client.get("/api/v1/files", headers={"Authorization": f"Bearer {created['key']}"})
    assert response.status_code == 401
    assert response.json()["message"] == "API key has expired"


def test_authentication_updates_usage_count(client, api_key, api_headers, user_session):
    client.get("/api/v1/files", headers=api_headers)
    client.get("/api/v1/files", headers=api_headers)
    record = next(k for k in key_store.list_keys(user_session.user.id) if k["name"] == "pytest-key")
    assert record["usage_count"] == 2
    assert record["last_used_at"] is not None


def test_usage_stats(client, api_headers):
    client.get("/api/v1/files", headers=api_headers)
    client.get("/api/v1/structured-outputs", headers=api_headers)

    response = client.get("/api/v1/auth/usage", params={"days": 7}, headers=api_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["period"]["days"] == 7
    # 统计的是本次请求之前已记录的调用
    assert body["total_requests"] == 2
    assert body["requests_by_key"] == {"pytest-key": 2}
    assert body["daily_usage"][0]["requests"] == 2

    bad = client.get("/api/v1/auth/usage", params={"days": 400}, headers=api_headers)
    assert bad.status_code == 400
    assert bad.json()["message"] == "Days parameter must be between 1 and 365"
