"""
用量与活动统计。

track_* 写入失败只记日志，不向调用方抛出；统计查询直接返回 dict。
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from loguru import logger

from accelerator.core.config import settings
from accelerator.services.sqlite_store import SQLiteStore, dump_json, new_id, utc_now


class AnalyticsStore(SQLiteStore):
    json_columns = ("details",)

    def _setup(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_usage (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    api_key_id TEXT,
                    endpoint TEXT NOT NULL,
                    method TEXT NOT NULL,
                    model TEXT,
                    tokens_used INTEGER,
                    response_time INTEGER,
                    status_code INTEGER,
                    error_message TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_activity (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    details TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS storage_usage (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    mime_type TEXT,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_user ON api_usage(user_id, created_at)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_key ON api_usage(api_key_id, created_at)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_user ON user_activity(user_id, created_at)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_storage_user ON storage_usage(user_id)")

    def _insert(self, table: str, record: Dict[str, Any]) -> None:
        record = {"id": new_id(), **record, "created_at": utc_now()}
        columns = ", ".join(record)
        placeholders = ", ".join(f":{column}" for column in record)
        with self._lock:
            with self._conn:
                self._conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", record)

    def insert_api_usage(self, record: Dict[str, Any]) -> None:
        self._insert("api_usage", record)

    def insert_activity(self, record: Dict[str, Any]) -> None:
        if "details" in record:
            record = {**record, "details": dump_json(record["details"])}
        self._insert("user_activity", record)

    def insert_storage_usage(self, record: Dict[str, Any]) -> None:
        self._insert("storage_usage", record)

    def count_key_usage_since(self, api_key_id: str, since: str) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM api_usage WHERE api_key_id = ? AND created_at >= ?",
                (api_key_id, since),
            )
            return cursor.fetchone()[0]

    def api_usage_rows(
        self,
        user_id: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[Dict]:
        query = "SELECT * FROM api_usage WHERE user_id = ?"
        params: list[Any] = [user_id]
        if start:
            query += " AND created_at >= ?"
            params.append(start)
        if end:
            query += " AND created_at <= ?"
            params.append(end)
        query += " ORDER BY created_at DESC"
        with self._lock:
            cursor = self._conn.execute(query, params)
            return [self._row(row) for row in cursor.fetchall()]

    def storage_rows(self, user_id: str) -> List[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM storage_usage WHERE user_id = ? AND deleted_at IS NULL ORDER BY created_at DESC",
                (user_id,),
            )
            return [self._row(row) for row in cursor.fetchall()]

    def activity_rows(self, user_id: str, limit: int, offset: int) -> List[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM user_activity WHERE user_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            )
            return [self._row(row) for row in cursor.fetchall()]


analytics_store = AnalyticsStore(f"{settings.DATA_DIR}/analytics.db")


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


# --- tracking (never raises) ---


def track_api_usage(
    user_id: str,
    endpoint: str,
    method: str,
    api_key_id: Optional[str] = None,
    model: Optional[str] = None,
    tokens_used: Optional[int] = None,
    response_time: Optional[int] = None,
    status_code: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    try:
        analytics_store.insert_api_usage(
            {
                "user_id": user_id,
                "api_key_id": api_key_id,
                "endpoint": endpoint,
                "method": method,
                "model": model,
                "tokens_used": tokens_used,
                "response_time": response_time,
                "status_code": status_code,
                "error_message": error_message,
            }
        )
    except Exception:
        logger.exception("Failed to track API usage")


def track_user_activity(
    user_id: str,
    action: str,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> None:
    try:
        analytics_store.insert_activity(
            {
                "user_id": user_id,
                "action": action,
                "details": details,
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
        )
    except Exception:
        logger.exception("Failed to track user activity")


def track_storage_usage(
    user_id: str,
    bucket: str,
    file_path: str,
    file_size: int,
    mime_type: Optional[str] = None,
) -> None:
    try:
        analytics_store.insert_storage_usage(
            {
                "user_id": user_id,
                "bucket": bucket,
                "file_path": file_path,
                "file_size": file_size,
                "mime_type": mime_type,
            }
        )
    except Exception:
        logger.exception("Failed to track storage usage")


def count_recent_key_usage(api_key_id: str, window: timedelta = timedelta(hours=1)) -> int:
    since = datetime.now(timezone.utc) - window
    return analytics_store.count_key_usage_since(api_key_id, since.isoformat())


# --- statistics ---


def get_user_api_stats(
    user_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    rows = analytics_store.api_usage_rows(user_id, _iso(start_date), _iso(end_date))
    total = len(rows)
    return {
        "total_requests": total,
        "total_tokens": sum(row["tokens_used"] or 0 for row in rows),
        "average_response_time": sum(row["response_time"] or 0 for row in rows) / (total or 1),
        "by_model": dict(Counter(row["model"] for row in rows if row["model"])),
        "by_endpoint": dict(Counter(row["endpoint"] for row in rows)),
        "errors": sum(1 for row in rows if row["error_message"]),
        "recent_usage": rows[:10],
    }


def get_user_storage_stats(user_id: str) -> Dict[str, Any]:
    rows = analytics_store.storage_rows(user_id)
    by_type: Dict[str, Dict[str, int]] = {}
    for row in rows:
        bucket = by_type.setdefault(row["mime_type"] or "unknown", {"count": 0, "size": 0})
        bucket["count"] += 1
        bucket["size"] += row["file_size"] or 0
    return {
        "total_files": len(rows),
        "total_size": sum(row["file_size"] or 0 for row in rows),
        "by_type": by_type,
        "recent_uploads": rows[:10],
    }


def get_user_activity(user_id: str, limit: int = 50, offset: int = 0) -> List[Dict]:
    return analytics_store.activity_rows(user_id, limit, offset)


async def get_dashboard_stats(user_id: str) -> Dict[str, Any]:
    """并发读取 30 天 API 统计、存储统计和最近活动，再补一份 7 天统计。"""
    now = datetime.now(timezone.utc)
    api_stats, storage_stats, activity = await asyncio.gather(
        run_in_threadpool(get_user_api_stats, user_id, now - timedelta(days=30)),
        run_in_threadpool(get_user_storage_stats, user_id),
        run_in_threadpool(get_user_activity, user_id, 10),
    )
    weekly = await run_in_threadpool(get_user_api_stats, user_id, now - timedelta(days=7))

    total_requests = api_stats["total_requests"]
    error_rate = (api_stats["errors"] / total_requests * 100) if total_requests else 0
    return {
        "api": api_stats,
        "storage": storage_stats,
        "activity": activity,
        "weekly": weekly,
        "summary": {
            "total_api_calls": total_requests,
            "total_tokens": api_stats["total_tokens"],
            "total_storage": storage_stats["total_size"],
            "total_files": storage_stats["total_files"],
            "error_rate": f"{error_rate:.2f}",
        },
    }


def get_api_usage_stats(user_id: str, days: int, key_names: Dict[str, str]) -> Dict[str, Any]:
    """
    /api/v1/auth/usage 使用：按 key 名称、模型和日期聚合最近 days 天的请求。
    """
    since = datetime.now(timezone.utc) - timedelta(days=days)
    # 只统计经 API Key 发起的请求
    rows = [row for row in analytics_store.api_usage_rows(user_id, since.isoformat()) if row["api_key_id"]]

    requests_by_key: Counter = Counter()
    requests_by_model: Counter = Counter()
    daily_usage: Dict[str, Dict[str, int]] = {}
    for row in rows:
        key_name = key_names.get(row["api_key_id"], row["api_key_id"])
        requests_by_key[key_name] += 1
        if row["model"]:
            requests_by_model[row["model"]] += 1
        day = daily_usage.setdefault(row["created_at"][:10], {"requests": 0, "tokens": 0})
        day["requests"] += 1
        day["tokens"] += row["tokens_used"] or 0

    return {
        "total_requests": len(rows),
        "total_tokens": sum(row["tokens_used"] or 0 for row in rows),
        "requests_by_key": dict(requests_by_key),
        "requests_by_model": dict(requests_by_model),
        "daily_usage": [{"date": date, **values} for date, values in sorted(daily_usage.items())],
    }
