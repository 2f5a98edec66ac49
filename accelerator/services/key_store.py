"""API Key 存储与校验服务，使用 SQLite 持久化，只保存 key 的哈希。"""

import hashlib
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypedDict

from accelerator.core.config import settings
from accelerator.services.sqlite_store import (
    SQLiteStore,
    dump_json,
    new_id,
    parse_timestamp,
    utc_now,
)

LIVE_PREFIX = "ska_live_"
TEST_PREFIX = "ska_test_"
KEY_PATTERN = re.compile(r"^ska_(live|test)_[0-9a-f]{64}$")

DEFAULT_SCOPES = ["read", "write"]
DEFAULT_RATE_LIMIT = 100

VALID_SCOPES = (
    # Legacy scopes
    "read", "write", "delete", "*",
    # Resource-specific scopes
    "system-prompts:read", "system-prompts:write",
    "structured-outputs:read", "structured-outputs:write",
    "api-keys:read", "api-keys:write",
    "files:read", "files:write",
    "conversations:read", "conversations:write",
)

UPDATABLE_FIELDS = ("name", "scopes", "rate_limit", "expires_at", "is_active")

# 对外返回的列，不含 key_hash
PUBLIC_COLUMNS = (
    "id, user_id, name, key_prefix, scopes, rate_limit, usage_count, "
    "last_used_at, expires_at, is_active, created_at, updated_at"
)


class APIKeyCreateResult(TypedDict):
    id: str
    name: str
    key: str
    scopes: List[str]
    rate_limit: int
    expires_at: Optional[str]
    created_at: str


class InvalidApiKey(Exception):
    """Key 格式错误、不存在、已停用或已过期。"""


def validate_key_format(raw_key: str) -> bool:
    return bool(KEY_PATTERN.match(raw_key))


def invalid_scopes(scopes: List[str]) -> List[str]:
    return [scope for scope in scopes if scope not in VALID_SCOPES]


class APIKeyStore(SQLiteStore):
    json_columns = ("scopes",)
    bool_columns = ("is_active",)

    def _setup(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    key_prefix TEXT NOT NULL,
                    key_hash TEXT NOT NULL UNIQUE,
                    scopes TEXT NOT NULL,
                    rate_limit INTEGER NOT NULL DEFAULT 100,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    last_used_at TEXT,
                    expires_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_user_id ON api_keys(user_id)")

    @staticmethod
    def _hash_key(raw_key: str) -> str:
        return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()

    def create_key(
        self,
        user_id: str,
        name: str,
        scopes: Optional[List[str]] = None,
        rate_limit: Optional[int] = None,
        expires_at: Optional[str] = None,
        is_test: bool = False,
    ) -> APIKeyCreateResult:
        """
        生成随机 API Key，存储哈希，返回明文 key 及基础信息（明文只返回这一次）。
        """
        prefix = TEST_PREFIX if is_test else LIVE_PREFIX
        raw_key = prefix + secrets.token_hex(32)
        key_id = new_id()
        now = utc_now()
        scopes = scopes or list(DEFAULT_SCOPES)
        rate_limit = rate_limit or DEFAULT_RATE_LIMIT
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO api_keys (id, user_id, name, key_prefix, key_hash, scopes, rate_limit, "
                    "expires_at, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (key_id, user_id, name, prefix, self._hash_key(raw_key), dump_json(scopes),
                     rate_limit, expires_at, now, now),
                )
        return {
            "id": key_id,
            "name": name,
            "key": raw_key,
            "scopes": scopes,
            "rate_limit": rate_limit,
            "expires_at": expires_at,
            "created_at": now,
        }

    def authenticate_key(self, raw_key: str) -> Dict[str, Any]:
        """
        校验明文 key，成功时更新 last_used_at / usage_count 并返回记录（不含哈希）。
        """
        if not validate_key_format(raw_key):
            raise InvalidApiKey("Invalid API key format")

        with self._lock:
            cursor = self._conn.execute(
                f"SELECT {PUBLIC_COLUMNS} FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(raw_key),),
            )
            record = self._row(cursor.fetchone())
            if not record:
                raise InvalidApiKey("Invalid API key")

            expires_at = parse_timestamp(record["expires_at"])
            if expires_at and expires_at < datetime.now(timezone.utc):
                raise InvalidApiKey("API key has expired")

            now = utc_now()
            with self._conn:
                self._conn.execute(
                    "UPDATE api_keys SET last_used_at = ?, usage_count = usage_count + 1 WHERE id = ?",
                    (now, record["id"]),
                )
            record["last_used_at"] = now
            record["usage_count"] += 1
            return record

    def list_keys(self, user_id: str) -> List[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                f"SELECT {PUBLIC_COLUMNS} FROM api_keys WHERE user_id = ? AND is_active = 1 "
                "ORDER BY created_at DESC",
                (user_id,),
            )
            return [self._row(row) for row in cursor.fetchall()]

    def key_names(self, user_id: str) -> Dict[str, str]:
        """包含已停用的 key，用于用量统计中按名称归类。"""
        with self._lock:
            cursor = self._conn.execute("SELECT id, name FROM api_keys WHERE user_id = ?", (user_id,))
            return {row["id"]: row["name"] for row in cursor.fetchall()}

    def get_key(self, user_id: str, key_id: str) -> Optional[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                f"SELECT {PUBLIC_COLUMNS} FROM api_keys WHERE id = ? AND user_id = ?",
                (key_id, user_id),
            )
            return self._row(cursor.fetchone())

    def update_key(self, user_id: str, key_id: str, updates: Dict[str, Any]) -> Optional[Dict]:
        fields = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        if "scopes" in fields:
            fields["scopes"] = dump_json(fields["scopes"])
        if "is_active" in fields:
            fields["is_active"] = int(bool(fields["is_active"]))
        fields["updated_at"] = utc_now()
        assignments = ", ".join(f"{column} = :{column}" for column in fields)
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    f"UPDATE api_keys SET {assignments} WHERE id = :key_id AND user_id = :user_id",
                    {**fields, "key_id": key_id, "user_id": user_id},
                )
            if cursor.rowcount == 0:
                return None
            return self.get_key(user_id, key_id)

    def revoke_key(self, user_id: str, key_id: str) -> bool:
        return self.update_key(user_id, key_id, {"is_active": False}) is not None

    def delete_key(self, user_id: str, key_id: str) -> bool:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM api_keys WHERE id = ? AND user_id = ?",
                    (key_id, user_id),
                )
                return cursor.rowcount > 0


key_store = APIKeyStore(f"{settings.DATA_DIR}/api_keys.db")
