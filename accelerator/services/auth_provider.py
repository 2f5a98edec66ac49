"""
本地认证服务：用户、资料、会话（access/refresh token）和一次性授权码。

对外接口保持"认证服务"的形状（sign_up / sign_in_with_password / set_session /
exchange_code_for_session ...），路由层只依赖这些方法。
"""

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional
from urllib.parse import urlencode

import bcrypt
from loguru import logger

from accelerator.core.config import settings
from accelerator.services.sqlite_store import SQLiteStore, dump_json, new_id, utc_now

CodeKind = Literal["oauth", "recovery", "signup"]

OAUTH_PROVIDERS = ("google", "github")


class AuthProviderError(Exception):
    """认证服务返回的业务错误，message 可直接展示给用户。"""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    email_confirmed: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "user_metadata": self.user_metadata,
            "email_confirmed": self.email_confirmed,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AuthSession:
    user: AuthUser
    access_token: str
    refresh_token: str
    expires_at: int


class LocalAuthProvider(SQLiteStore):
    json_columns = ("user_metadata",)
    bool_columns = ("email_confirmed",)

    def _setup(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    user_metadata TEXT,
                    email_confirmed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    full_name TEXT,
                    username TEXT,
                    avatar_url TEXT,
                    bio TEXT,
                    website TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    access_token TEXT NOT NULL UNIQUE,
                    refresh_token TEXT NOT NULL UNIQUE,
                    access_expires_at INTEGER NOT NULL,
                    refresh_expires_at INTEGER NOT NULL,
                    replaced_by TEXT,
                    rotated_at INTEGER,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_codes (
                    code TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    expires_at INTEGER NOT NULL,
                    used INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )

    # --- helpers ---

    @staticmethod
    def _hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    @staticmethod
    def _check_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    def _user_from_row(self, row) -> Optional[AuthUser]:
        record = self._row(row)
        if not record:
            return None
        return AuthUser(
            id=record["id"],
            email=record["email"],
            user_metadata=record["user_metadata"] or {},
            email_confirmed=record["email_confirmed"],
            created_at=record["created_at"],
        )

    def _find_user_row(self, email: str):
        cursor = self._conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),))
        return cursor.fetchone()

    def get_user(self, user_id: str) -> Optional[AuthUser]:
        with self._lock:
            cursor = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            return self._user_from_row(cursor.fetchone())

    def _create_session(self, user: AuthUser) -> AuthSession:
        now = int(time.time())
        session = AuthSession(
            user=user,
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            expires_at=now + settings.ACCESS_TOKEN_TTL_SECONDS,
        )
        with self._conn:
            self._conn.execute(
                "INSERT INTO sessions (id, user_id, access_token, refresh_token, access_expires_at, "
                "refresh_expires_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (new_id(), user.id, session.access_token, session.refresh_token, session.expires_at,
                 now + settings.REFRESH_TOKEN_TTL_SECONDS, utc_now()),
            )
        return session

    def issue_auth_code(self, user_id: str, kind: CodeKind) -> str:
        """签发一次性授权码，供 /auth/callback 换取会话。"""
        code = secrets.token_urlsafe(24)
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO auth_codes (code, user_id, kind, expires_at) VALUES (?, ?, ?, ?)",
                    (code, user_id, kind, int(time.time()) + settings.AUTH_CODE_TTL_SECONDS),
                )
        return code

    # --- auth operations ---

    def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[Dict[str, Any]] = None,
        email_redirect_to: Optional[str] = None,
    ) -> tuple[AuthUser, Optional[AuthSession]]:
        """
        注册用户。需要邮箱确认时只返回用户（session 为 None），确认链接写入日志。
        """
        email = email.strip().lower()
        metadata = metadata or {}
        with self._lock:
            if self._find_user_row(email):
                raise AuthProviderError("User already registered")

            now = utc_now()
            confirmed = not settings.AUTH_REQUIRE_EMAIL_CONFIRMATION
            user = AuthUser(
                id=new_id(),
                email=email,
                user_metadata=metadata,
                email_confirmed=confirmed,
                created_at=now,
            )
            with self._conn:
                self._conn.execute(
                    "INSERT INTO users (id, email, password_hash, user_metadata, email_confirmed, "
                    "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (user.id, email, self._hash_password(password), dump_json(metadata), int(confirmed), now, now),
                )
                self._conn.execute(
                    "INSERT INTO profiles (id, full_name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (user.id, metadata.get("full_name"), now, now),
                )

            if confirmed:
                return user, self._create_session(user)

        code = self.issue_auth_code(user.id, "signup")
        link = f"{settings.PUBLIC_APP_URL}/auth/callback?" + urlencode(
            {"code": code, "redirectTo": email_redirect_to or "/dashboard"}
        )
        logger.info("Signup confirmation link for {}: {}", email, link)
        return user, None

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        with self._lock:
            row = self._find_user_row(email)
            if not row or not self._check_password(password, row["password_hash"]):
                raise AuthProviderError("Invalid login credentials")
            user = self._user_from_row(row)
            if not user.email_confirmed:
                raise AuthProviderError("Email not confirmed")
            return self._create_session(user)

    def set_session(self, access_token: str, refresh_token: Optional[str] = None) -> AuthSession:
        """
        根据 cookie 中的 token 恢复会话。

        access token 有效时原样返回；过期但 refresh token 有效时轮换出一对新 token。
        旧会话保留 REFRESH_REUSE_SECONDS 秒，期间带着同一个旧 refresh token 的并发请求
        拿到的是轮换后的会话。调用方通过比较 token 判断是否需要回写 cookie。
        """
        now = int(time.time())
        with self._lock:
            cursor = self._conn.execute("SELECT * FROM sessions WHERE access_token = ?", (access_token,))
            row = cursor.fetchone()
            if row is None and refresh_token:
                cursor = self._conn.execute("SELECT * FROM sessions WHERE refresh_token = ?", (refresh_token,))
                row = cursor.fetchone()
            if row is None:
                raise AuthProviderError("Invalid session", status=401)

            user = self.get_user(row["user_id"])
            if user is None:
                raise AuthProviderError("User not found", status=401)

            if row["replaced_by"]:
                return self._reuse_rotated(row, user, refresh_token, now)

            if row["access_expires_at"] > now and row["access_token"] == access_token:
                return self._session_from_row(row, user)

            # Refresh token rotation
            if not refresh_token or refresh_token != row["refresh_token"] or row["refresh_expires_at"] <= now:
                raise AuthProviderError("Session expired", status=401)
            session = self._create_session(user)
            with self._conn:
                self._conn.execute(
                    "DELETE FROM sessions WHERE replaced_by IS NOT NULL AND rotated_at <= ?",
                    (now - settings.REFRESH_REUSE_SECONDS,),
                )
                self._conn.execute(
                    "UPDATE sessions SET replaced_by = ?, rotated_at = ? WHERE id = ?",
                    (session.access_token, now, row["id"]),
                )
            return session

    @staticmethod
    def _session_from_row(row, user: AuthUser) -> AuthSession:
        return AuthSession(
            user=user,
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["access_expires_at"],
        )

    def _reuse_rotated(self, row, user: AuthUser, refresh_token: Optional[str], now: int) -> AuthSession:
        """已轮换的旧会话：窗口内用原 refresh token 访问时返回替代会话，否则作废。"""
        if refresh_token != row["refresh_token"] or now - row["rotated_at"] > settings.REFRESH_REUSE_SECONDS:
            raise AuthProviderError("Session expired", status=401)
        cursor = self._conn.execute("SELECT * FROM sessions WHERE access_token = ?", (row["replaced_by"],))
        replacement = cursor.fetchone()
        if replacement is None:
            raise AuthProviderError("Session expired", status=401)
        return self._session_from_row(replacement, user)

    def exchange_code_for_session(self, code: str) -> AuthSession:
        now = int(time.time())
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM auth_codes WHERE code = ? AND used = 0 AND expires_at > ?",
                (code, now),
            )
            row = cursor.fetchone()
            if row is None:
                raise AuthProviderError("Invalid or expired authorization code")
            with self._conn:
                self._conn.execute("UPDATE auth_codes SET used = 1 WHERE code = ?", (code,))
                if row["kind"] == "signup":
                    self._conn.execute(
                        "UPDATE users SET email_confirmed = 1, updated_at = ? WHERE id = ?",
                        (utc_now(), row["user_id"]),
                    )
            user = self.get_user(row["user_id"])
            if user is None:
                raise AuthProviderError("User not found")
            return self._create_session(user)

    def get_oauth_sign_in_url(self, provider: str, redirect_to: str) -> str:
        if provider not in OAUTH_PROVIDERS:
            raise AuthProviderError("Invalid OAuth provider")
        query = urlencode({"provider": provider, "redirect_to": redirect_to})
        return f"{settings.AUTH_PROVIDER_URL}/authorize?{query}"

    def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        """
        未注册的邮箱静默返回，避免泄露账号是否存在。重置链接写入日志。
        """
        with self._lock:
            row = self._find_user_row(email)
        if row is None:
            logger.info("Password reset requested for unknown email")
            return
        code = self.issue_auth_code(row["id"], "recovery")
        link = f"{settings.PUBLIC_APP_URL}/auth/callback?" + urlencode({"code": code, "redirectTo": redirect_to})
        logger.info("Password reset link for {}: {}", row["email"], link)

    def update_user_password(self, user_id: str, password: str) -> AuthUser:
        if len(password) < 8:
            raise AuthProviderError("Password should be at least 8 characters")
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                    (self._hash_password(password), utc_now(), user_id),
                )
            if cursor.rowcount == 0:
                raise AuthProviderError("User not found")
            return self.get_user(user_id)

    def sign_out(self, access_token: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM sessions WHERE access_token = ?", (access_token,))

    # --- profiles ---

    def get_profile(self, user_id: str) -> Optional[Dict]:
        with self._lock:
            cursor = self._conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,))
            return self._row(cursor.fetchone())


auth_provider = LocalAuthProvider(f"{settings.DATA_DIR}/auth.db")
