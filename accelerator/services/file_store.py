from typing import Any, Dict, List, Literal, Optional

from accelerator.core.config import settings
from accelerator.services.sqlite_store import SQLiteStore, dump_json, new_id, utc_now

FileType = Literal["pdf", "image", "audio"]
ProcessingStatus = Literal["pending", "processing", "completed", "failed"]


class FileStore(SQLiteStore):
    """file_uploads 表：API 上传的文件和聊天附件共用。"""

    json_columns = ("processed_data",)
    bool_columns = ("is_public",)

    def _setup(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS file_uploads (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    chat_id TEXT,
                    message_id TEXT,
                    original_name TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    file_type TEXT NOT NULL CHECK (file_type IN ('pdf', 'image', 'audio')),
                    processing_status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (processing_status IN ('pending', 'processing', 'completed', 'failed')),
                    processed_data TEXT,
                    processing_error TEXT,
                    is_public INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_file_uploads_user ON file_uploads(user_id)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_file_uploads_chat ON file_uploads(chat_id)")

    def create_upload(
        self,
        user_id: str,
        original_name: str,
        file_path: str,
        mime_type: str,
        file_size: int,
        file_type: FileType,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
        processing_status: ProcessingStatus = "pending",
    ) -> Dict:
        now = utc_now()
        record = {
            "id": new_id(),
            "user_id": user_id,
            "chat_id": chat_id,
            "message_id": message_id,
            "original_name": original_name,
            "file_path": file_path,
            "mime_type": mime_type,
            "file_size": file_size,
            "file_type": file_type,
            "processing_status": processing_status,
            "created_at": now,
            "updated_at": now,
        }
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO file_uploads (id, user_id, chat_id, message_id, original_name, file_path, "
                    "mime_type, file_size, file_type, processing_status, created_at, updated_at) VALUES "
                    "(:id, :user_id, :chat_id, :message_id, :original_name, :file_path, :mime_type, "
                    ":file_size, :file_type, :processing_status, :created_at, :updated_at)",
                    record,
                )
            return self.get_by_id(record["id"])

    def get_by_id(self, file_id: str) -> Optional[Dict]:
        with self._lock:
            cursor = self._conn.execute("SELECT * FROM file_uploads WHERE id = ?", (file_id,))
            return self._row(cursor.fetchone())

    def get_upload(self, user_id: str, file_id: str, allow_public: bool = True) -> Optional[Dict]:
        """本人文件总是可见；allow_public 时别人公开的文件也可见。"""
        query = "SELECT * FROM file_uploads WHERE id = ? AND "
        query += "(user_id = ? OR is_public = 1)" if allow_public else "user_id = ?"
        with self._lock:
            cursor = self._conn.execute(query, (file_id, user_id))
            return self._row(cursor.fetchone())

    def list_uploads(
        self,
        user_id: str,
        file_type: Optional[str] = None,
        processing_status: Optional[str] = None,
        include_public: bool = True,
        search: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[List[Dict], int]:
        """返回 (当前页, 满足过滤条件的总数)。"""
        where = ["(user_id = ? OR is_public = 1)" if include_public else "user_id = ?"]
        params: list[Any] = [user_id]
        if file_type:
            where.append("file_type = ?")
            params.append(file_type)
        if processing_status:
            where.append("processing_status = ?")
            params.append(processing_status)
        if search:
            where.append("original_name LIKE ?")
            params.append(f"%{search}%")
        clause = " AND ".join(where)

        with self._lock:
            total = self._conn.execute(f"SELECT COUNT(*) FROM file_uploads WHERE {clause}", params).fetchone()[0]
            cursor = self._conn.execute(
                f"SELECT * FROM file_uploads WHERE {clause} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            )
            return [self._row(row) for row in cursor.fetchall()], total

    def update_processing(
        self,
        file_id: str,
        processing_status: ProcessingStatus,
        processed_data: Any = None,
        processing_error: Optional[str] = None,
    ) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "UPDATE file_uploads SET processing_status = ?, processed_data = COALESCE(?, processed_data), "
                    "processing_error = ?, updated_at = ? WHERE id = ?",
                    (processing_status, dump_json(processed_data), processing_error, utc_now(), file_id),
                )

    def delete_upload(self, user_id: str, file_id: str) -> Optional[Dict]:
        """删除本人的文件记录，返回被删除的记录以便清理存储。"""
        with self._lock:
            record = self.get_upload(user_id, file_id, allow_public=False)
            if record is None:
                return None
            with self._conn:
                self._conn.execute("DELETE FROM file_uploads WHERE id = ?", (file_id,))
            return record

    def processing_stats(self, user_id: str) -> Dict[str, Any]:
        """统计本人全部文件，与分页参数无关。"""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT file_type, processing_status, COUNT(*) AS n, COALESCE(SUM(file_size), 0) AS size "
                "FROM file_uploads WHERE user_id = ? GROUP BY file_type, processing_status",
                (user_id,),
            )
            rows = cursor.fetchall()

        stats: Dict[str, Any] = {
            "total_files": 0,
            "by_type": {},
            "by_status": {},
            "total_size": 0,
            "processing_queue_size": 0,
        }
        for row in rows:
            stats["total_files"] += row["n"]
            stats["total_size"] += row["size"]
            stats["by_type"][row["file_type"]] = stats["by_type"].get(row["file_type"], 0) + row["n"]
            stats["by_status"][row["processing_status"]] = (
                stats["by_status"].get(row["processing_status"], 0) + row["n"]
            )
            if row["processing_status"] in ("pending", "processing"):
                stats["processing_queue_size"] += row["n"]
        return stats

    # --- chat attachments ---

    def record_chat_files(
        self,
        user_id: str,
        chat_id: str,
        message_id: str,
        attachments: List[Dict[str, Any]],
    ) -> List[Dict]:
        """聊天附件即时处理完成，file_path 是虚拟路径。"""
        return [
            self.create_upload(
                user_id,
                original_name=attachment["filename"],
                file_path=f"chat/{chat_id}/{message_id}/{attachment['filename']}",
                mime_type=attachment["mime_type"],
                file_size=attachment["file_size"],
                file_type=attachment["file_type"],
                chat_id=chat_id,
                message_id=message_id,
                processing_status="completed",
            )
            for attachment in attachments
        ]

    def get_chat_files(self, chat_id: str) -> List[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM file_uploads WHERE chat_id = ? ORDER BY created_at ASC, rowid ASC",
                (chat_id,),
            )
            return [self._row(row) for row in cursor.fetchall()]


file_store = FileStore(f"{settings.DATA_DIR}/files.db")
