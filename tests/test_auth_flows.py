from urllib.parse import parse_qs, urlsplit

import pytest

from accelerator.core.auth import safe_redirect_target
from accelerator.core.config import settings
from accelerator.services.auth_provider import AuthProviderError, auth_provider
from conftest import create_user


def _query(location: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(location).query).items()}


def _signup_form(**overrides):
    form = {
        "email": "new-user@example.com",
        "password": "long-enough-password",
        "confirmPassword": "long-enough-password",
        "fullName": "New User",
    }
    form.update(overrides)
    return form


def test_signup_rejects_short_password(client):
    response = client.post("/auth/signup", data=_signup_form(password="short1", confirmPassword="short1"))
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Password must be at least 8 characters long"
    assert body["email"] == "new-user@example.com"
    assert body["fullName"] == "New User"


def test_signup_rejects_mismatched_confirmation(client):
    response = client.post("/auth/signup", data=_signup_form(confirmPassword="something-else"))
    assert response.status_code == 400
    assert response.json()["error"] == "Passwords do not match"


def test_signup_requires_email_first(client):
    response = client.post("/auth/signup", data=_signup_form(email="", password=""))
    assert response.status_code == 400
    assert response.json()["error"] == "Email is required"


def test_signup_with_immediate_session_sets_cookies(client):
    response = client.post(
        "/auth/signup",
        data=_signup_form(email="fresh@example.com", redirectTo="/chat"),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["redirectTo"] == "/chat"
    assert "sb-access-token" in response.cookies
    assert "sb-refresh-token" in response.cookies


def test_signup_duplicate_email_returns_provider_message(client):
    client.post("/auth/signup", data=_signup_form(email="twice@example.com"))
    response = client.post("/auth/signup", data=_signup_form(email="twice@example.com"))
    assert response.status_code == 400
    assert response.json()["error"] == "User already registered"


def test_callback_with_provider_error_redirects_to_login(client):
    response = client.get("/auth/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/auth/login?error=access_denied"


def test_callback_prefers_error_description(client):
    response = client.get(
        "/auth/callback",
        params={"error": "access_denied", "error_description": "User cancelled"},
        follow_redirects=False,
    )
    assert _query(response.headers["location"])["error"] == "User cancelled"


def test_callback_without_code(client):
    response = client.get("/auth/callback", follow_redirects=False)
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith("/auth/login")
    assert _query(location)["error"] == "No authorization code received"


def test_callback_with_invalid_code(client):
    response = client.get("/auth/callback", params={"code": "not-a-code"}, follow_redirects=False)
    assert response.status_code == 302
    assert _query(response.headers["location"])["error"] == "Failed to complete authentication"


def test_callback_with_valid_code_sets_cookies(client):
    user, _ = create_user()
    code = auth_provider.issue_auth_code(user.id, "oauth")

    response = client.get("/auth/callback", params={"code": code}, follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/dashboard"
    assert "sb-access-token" in response.cookies
    assert "sb-refresh-token" in response.cookies

    # 授权码只能使用一次
    reused = client.get("/auth/callback", params={"code": code}, follow_redirects=False)
    assert _query(reused.headers["location"])["error"] == "Failed to complete authentication"


def test_callback_honours_redirect_target(client):
    user, _ = create_user()
    code = auth_provider.issue_auth_code(user.id, "oauth")
    response = client.get(
        "/auth/callback", params={"code": code, "redirectTo": "/developer"}, follow_redirects=False
    )
    assert response.headers["location"] == "/developer"


def test_login_page_state_and_redirect_when_signed_in(client, user_session):
    state = client.get("/auth/login", params={"error": "Oops", "redirectTo": "/chat"})
    assert state.status_code == 200
    assert state.json() == {"redirectTo": "/chat", "success": None, "error": "Oops", "message": None}

    client.cookies.set("sb-access-token", user_session.access_token)
    client.cookies.set("sb-refresh-token", user_session.refresh_token)
    response = client.get("/auth/login", params={"redirectTo": "/chat"}, follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/chat"


def test_login_with_password(client):
    user, _ = create_user()
    bad = client.post("/auth/login", data={"email": user.email, "password": "wrong-password"})
    assert bad.status_code == 400
    assert bad.json()["error"] == "Invalid login credentials"

    response = client.post(
        "/auth/login",
        data={"email": user.email, "password": "correct-horse-battery"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert response.headers["location"] == "/dashboard"
    assert "sb-access-token" in response.cookies


def test_oauth_action_redirects_to_provider(client):
    response = client.post(
        "/auth/login/oauth", data={"provider": "github", "redirectTo": "/chat"}, follow_redirects=False
    )
    assert response.status_code == 302
    assert "provider=github" in response.headers["location"]

    invalid = client.post("/auth/signup/oauth", data={"provider": "myspace"})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Invalid OAuth provider"


def test_page_loader_redirects_without_session(client):
    response = client.get("/dashboard", follow_redirects=False)
    assert response.status_code == 302
    query = _query(response.headers["location"])
    assert query["error"] == "Please sign in to continue"
    assert query["redirectTo"] == "/dashboard"


def test_page_loaders_return_data(auth_client, user_session):
    dashboard = auth_client.get("/dashboard")
    assert dashboard.status_code == 200
    assert dashboard.json()["user"]["id"] == user_session.user.id
    assert dashboard.json()["profile"]["full_name"] == "Test User"

    chat_page = auth_client.get("/chat")
    assert chat_page.json()["models"]

    developer = auth_client.get("/developer")
    assert developer.status_code == 200
    assert developer.json()["stats"]["api_keys"] == {"total": 0, "active": 0}


def test_logout_clears_cookies_and_revokes_session(auth_client, user_session):
    response = auth_client.post("/auth/logout", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/"
    set_cookies = response.headers.get_list("set-cookie")
    assert any(cookie.startswith("sb-access-token=") for cookie in set_cookies)
    assert any(cookie.startswith("sb-refresh-token=") for cookie in set_cookies)

    with pytest.raises(AuthProviderError):
        auth_provider.set_session(user_session.access_token)


def test_reset_password_request(client):
    invalid = client.post("/auth/reset-password", data={"email": "not-an-email"})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Please enter a valid email address"

    response = client.post("/auth/reset-password", data={"email": "nobody@example.com"})
    assert response.status_code == 200
    assert response.json()["message"] == (
        "If an account with that email exists, we've sent you a password reset link."
    )


def test_reset_confirm_requires_session(client):
    response = client.get("/auth/reset-password/confirm", follow_redirects=False)
    assert response.status_code == 302
    assert _query(response.headers["location"])["error"] == "Invalid or expired reset link"

    posted = client.post(
        "/auth/reset-password/confirm",
        data={"password": "new-password-123", "confirmPassword": "new-password-123"},
        follow_redirects=False,
    )
    assert posted.status_code == 302
    assert _query(posted.headers["location"])["error"] == "Invalid or expired reset link"


def test_reset_confirm_updates_password(auth_client, user_session):
    short = auth_client.post("/auth/reset-password/confirm", data={"password": "short", "confirmPassword": "short"})
    assert short.status_code == 400
    assert short.json()["error"] == "Password must be at least 8 characters long"

    mismatch = auth_client.post(
        "/auth/reset-password/confirm",
        data={"password": "new-password-123", "confirmPassword": "other-password-123"},
    )
    assert mismatch.json()["error"] == "Passwords do not match"

    response = auth_client.post(
        "/auth/reset-password/confirm",
        data={"password": "new-password-123", "confirmPassword": "new-password-123"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert _query(response.headers["location"])["success"] == (
        "Password updated successfully. Please sign in with your new password."
    )
    assert auth_provider.sign_in_with_password(user_session.user.email, "new-password-123")


def _expire_access_token(access_token: str) -> None:
    with auth_provider._lock, auth_provider._conn:
        auth_provider._conn.execute(
            "UPDATE sessions SET access_expires_at = 0 WHERE access_token = ?", (access_token,)
        )


def test_refresh_with_same_token_pair_twice(user_session, monkeypatch):
    _expire_access_token(user_session.access_token)

    first = auth_provider.set_session(user_session.access_token, user_session.refresh_token)
    assert first.access_token != user_session.access_token
    # 同一对旧 token 再次刷新时拿到同一个轮换后的会话
    second = auth_provider.set_session(user_session.access_token, user_session.refresh_token)
    assert second.access_token == first.access_token
    assert second.refresh_token == first.refresh_token

    monkeypatch.setattr(settings, "REFRESH_REUSE_SECONDS", -1)
    with pytest.raises(AuthProviderError):
        auth_provider.set_session(user_session.access_token, user_session.refresh_token)
    assert auth_provider.set_session(first.access_token).user.id == user_session.user.id


def test_concurrent_refresh_keeps_user_signed_in(client, user_session):
    _expire_access_token(user_session.access_token)

    responses = []
    for _ in range(2):
        client.cookies.clear()
        client.cookies.set("sb-access-token", user_session.access_token)
        client.cookies.set("sb-refresh-token", user_session.refresh_token)
        responses.append(client.get("/dashboard", follow_redirects=False))

    first, second = responses
    assert first.status_code == second.status_code == 200
    assert first.cookies.get("sb-access-token")
    assert second.cookies.get("sb-access-token") == first.cookies.get("sb-access-token")


@pytest.mark.parametrize(
    "target, expected",
    [
        ("/chat", "/chat"),
        ("/developer/schemas?search=x", "/developer/schemas?search=x"),
        ("https://evil.example", "/dashboard"),
        ("//evil.example", "/dashboard"),
        ("/\\evil.example", "/dashboard"),
        ("dashboard", "/dashboard"),
        (None, "/dashboard"),
    ],
)
def test_safe_redirect_target(target, expected):
    assert safe_redirect_target(target) == expected


def test_external_redirect_targets_are_ignored(client):
    user, _ = create_user()
    code = auth_provider.issue_auth_code(user.id, "oauth")
    callback = client.get(
        "/auth/callback", params={"code": code, "redirectTo": "https://evil.example"}, follow_redirects=False
    )
    assert callback.headers["location"] == "/dashboard"

    client.cookies.clear()
    login = client.post(
        "/auth/login",
        data={"email": user.email, "password": "correct-horse-battery", "redirectTo": "//evil.example"},
        follow_redirects=False,
    )
    assert login.headers["location"] == "/dashboard"

    client.cookies.clear()
    signup = client.post(
        "/auth/signup", data=_signup_form(email="elsewhere@example.com", redirectTo="https://evil.example")
    )
    assert signup.json()["redirectTo"] == "/dashboard"
