"""
结构化输出 Schema 的存储与版本管理。

每次有实际变更的更新都会先把当前内容快照到 structured_output_versions，再把 version + 1。
"""

import json
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from accelerator.core.config import settings
from accelerator.core.errors import InvalidInput, NotFound
from accelerator.services.sqlite_store import SQLiteStore, dump_json, new_id, utc_now

UPDATABLE_FIELDS = ("name", "description", "json_schema", "example_output", "is_public")


def validate_json_schema(schema: Any) -> None:
    if not isinstance(schema, dict):
        raise InvalidInput("Invalid JSON Schema: schema must be an object")
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        raise InvalidInput(f"Invalid JSON Schema: {e.message}")


def has_basic_shape(schema: Any) -> bool:
    """开发者控制台的粗略检查：只要求有 type 和 properties。"""
    return isinstance(schema, dict) and bool(schema.get("type")) and bool(schema.get("properties"))


class StructuredOutputStore(SQLiteStore):
    json_columns = ("json_schema", "example_output")
    bool_columns = ("is_public",)

    def _setup(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS structured_outputs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    json_schema TEXT NOT NULL,
                    example_output TEXT,
                    is_public INTEGER NOT NULL DEFAULT 0,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS structured_output_versions (
                    id TEXT PRIMARY KEY,
                    output_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    json_schema TEXT NOT NULL,
                    example_output TEXT,
                    is_public INTEGER NOT NULL DEFAULT 0,
                    changed_by TEXT NOT NULL,
                    change_summary TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(output_id, version),
                    FOREIGN KEY(output_id) REFERENCES structured_outputs(id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_structured_outputs_user ON structured_outputs(user_id)")

    def create(self, user_id: str, payload: Dict[str, Any]) -> Dict:
        validate_json_schema(payload.get("json_schema"))
        now = utc_now()
        record = {
            "id": new_id(),
            "user_id": user_id,
            "name": payload["name"],
            "description": payload.get("description"),
            "json_schema": dump_json(payload["json_schema"]),
            "example_output": dump_json(payload.get("example_output")),
            "is_public": int(bool(payload.get("is_public", False))),
            "created_at": now,
            "updated_at": now,
        }
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO structured_outputs (id, user_id, name, description, json_schema, example_output, "
                    "is_public, created_at, updated_at) VALUES (:id, :user_id, :name, :description, :json_schema, "
                    ":example_output, :is_public, :created_at, :updated_at)",
                    record,
                )
            return self.get(user_id, record["id"])

    def get(self, user_id: str, output_id: str, allow_public: bool = True) -> Optional[Dict]:
        query = "SELECT * FROM structured_outputs WHERE id = ? AND "
        query += "(user_id = ? OR is_public = 1)" if allow_public else "user_id = ?"
        with self._lock:
            cursor = self._conn.execute(query, (output_id, user_id))
            return self._row(cursor.fetchone())

    def list(
        self,
        user_id: str,
        include_public: bool = True,
        search: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[List[Dict], int]:
        where = ["(user_id = ? OR is_public = 1)" if include_public else "user_id = ?"]
        params: list[Any] = [user_id]
        if search:
            where.append("(name LIKE ? OR description LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        clause = " AND ".join(where)
        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) FROM structured_outputs WHERE {clause}", params
            ).fetchone()[0]
            cursor = self._conn.execute(
                f"SELECT * FROM structured_outputs WHERE {clause} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            )
            return [self._row(row) for row in cursor.fetchall()], total

    def update(
        self,
        user_id: str,
        output_id: str,
        updates: Dict[str, Any],
        change_summary: Optional[str] = None,
    ) -> Dict:
        fields = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        if "json_schema" in fields:
            validate_json_schema(fields["json_schema"])

        with self._lock:
            current = self.get(user_id, output_id, allow_public=False)
            if current is None:
                raise NotFound("Structured output not found")

            changed = any(
                json.dumps(current.get(key), sort_keys=True) != json.dumps(value, sort_keys=True)
                for key, value in fields.items()
            )
            if not changed:
                return current

            now = utc_now()
            with self._conn:
                # 同一版本号只快照一次
                self._conn.execute(
                    "INSERT OR IGNORE INTO structured_output_versions (id, output_id, version, name, description, "
                    "json_schema, example_output, is_public, changed_by, change_summary, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        new_id(), output_id, current["version"], current["name"], current["description"],
                        dump_json(current["json_schema"]), dump_json(current["example_output"]),
                        int(current["is_public"]), user_id, change_summary or "Updated structured output", now,
                    ),
                )
                columns = dict(fields)
                for key in ("json_schema", "example_output"):
                    if key in columns:
                        columns[key] = dump_json(columns[key])
                if "is_public" in columns:
                    columns["is_public"] = int(bool(columns["is_public"]))
                columns["version"] = current["version"] + 1
                columns["updated_at"] = now
                assignments = ", ".join(f"{column} = :{column}" for column in columns)
                self._conn.execute(
                    f"UPDATE structured_outputs SET {assignments} WHERE id = :output_id AND user_id = :user_id",
                    {**columns, "output_id": output_id, "user_id": user_id},
                )
            return self.get(user_id, output_id, allow_public=False)

    def delete(self, user_id: str, output_id: str) -> bool:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM structured_outputs WHERE id = ? AND user_id = ?",
                    (output_id, user_id),
                )
                return cursor.rowcount > 0

    def versions(self, user_id: str, output_id: str) -> List[Dict]:
        with self._lock:
            if self.get(user_id, output_id, allow_public=False) is None:
                raise NotFound("Structured output not found")
            cursor = self._conn.execute(
                "SELECT * FROM structured_output_versions WHERE output_id = ? ORDER BY version DESC",
                (output_id,),
            )
            return [self._row(row) for row in cursor.fetchall()]

    def restore(
        self,
        user_id: str,
        output_id: str,
        version: int,
        change_summary: Optional[str] = None,
    ) -> Dict:
        """把指定历史版本的内容作为一次新的更新写回。"""
        with self._lock:
            if self.get(user_id, output_id, allow_public=False) is None:
                raise NotFound("Structured output not found")
            cursor = self._conn.execute(
                "SELECT * FROM structured_output_versions WHERE output_id = ? AND version = ?",
                (output_id, version),
            )
            snapshot = self._row(cursor.fetchone())
            if snapshot is None:
                raise NotFound("Version not found")

            return self.update(
                user_id,
                output_id,
                {
                    "name": snapshot["name"],
                    "description": snapshot["description"],
                    "json_schema": snapshot["json_schema"],
                    "example_output": snapshot["example_output"],
                    "is_public": snapshot["is_public"],
                },
                change_summary or f"Restored to version {version}",
            )


structured_output_store = StructuredOutputStore(f"{settings.DATA_DIR}/structured_outputs.db")
