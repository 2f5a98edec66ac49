import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dump_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False)


def load_json(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


class SQLiteStore:
    """
    各存储类的公共基类：单连接 + RLock，子类在 _setup 中建表。
    """

    # 子类声明需要 JSON 反序列化 / 转布尔的列
    json_columns: tuple[str, ...] = ()
    bool_columns: tuple[str, ...] = ()

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # 启用外键约束，确保 ON DELETE CASCADE 生效
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._setup()

    def _setup(self) -> None:
        raise NotImplementedError

    def _row(self, row: Optional[sqlite3.Row]) -> Optional[Dict]:
        if row is None:
            return None
        record = dict(row)
        for column in self.json_columns:
            if column in record:
                record[column] = load_json(record[column])
        for column in self.bool_columns:
            if column in record and record[column] is not None:
                record[column] = bool(record[column])
        return record

    def ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False
