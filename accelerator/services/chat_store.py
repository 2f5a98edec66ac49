import re
from typing import Any, Dict, List, Literal, Optional

from accelerator.core.config import settings
from accelerator.services.sqlite_store import SQLiteStore, new_id, utc_now

MessageRole = Literal["user", "assistant", "system"]

CHAT_UPDATE_FIELDS = ("title", "model", "system_prompt")
TITLE_MAX_LENGTH = 50


def generate_chat_title(first_message: str) -> str:
    """取首条消息前 50 个字符作为标题，空白折叠。"""
    title = re.sub(r"\s+", " ", first_message.strip()[:TITLE_MAX_LENGTH]).strip()
    if not title:
        return "New Chat"
    return title + "..." if len(title) == TITLE_MAX_LENGTH else title


class ChatStore(SQLiteStore):
    def _setup(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT 'New Chat',
                    model TEXT NOT NULL,
                    system_prompt TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                    content TEXT NOT NULL,
                    model TEXT,
                    token_count INTEGER,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_chats_user_id ON chats(user_id)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id)")

    def create_chat(
        self,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Dict:
        with self._lock:
            chat = {
                "id": new_id(),
                "user_id": user_id,
                "title": title or "New Chat",
                "model": model or settings.DEFAULT_CHAT_MODEL,
                "system_prompt": system_prompt,
                "created_at": utc_now(),
            }
            chat["updated_at"] = chat["created_at"]
            with self._conn:
                self._conn.execute(
                    "INSERT INTO chats (id, user_id, title, model, system_prompt, created_at, updated_at) "
                    "VALUES (:id, :user_id, :title, :model, :system_prompt, :created_at, :updated_at)",
                    chat,
                )
            return chat

    def list_chats(self, user_id: str) -> List[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM chats WHERE user_id = ? ORDER BY updated_at DESC",
                (user_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_chat(self, chat_id: str, user_id: str) -> Optional[Dict]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM chats WHERE id = ? AND user_id = ?",
                (chat_id, user_id),
            )
            return self._row(cursor.fetchone())

    def update_chat(self, chat_id: str, user_id: str, updates: Dict[str, Any]) -> Optional[Dict]:
        """只更新白名单字段；会话不存在或不属于该用户时返回 None。"""
        fields = {k: v for k, v in updates.items() if k in CHAT_UPDATE_FIELDS}
        with self._lock:
            if fields:
                fields["updated_at"] = utc_now()
                assignments = ", ".join(f"{column} = :{column}" for column in fields)
                with self._conn:
                    cursor = self._conn.execute(
                        f"UPDATE chats SET {assignments} WHERE id = :chat_id AND user_id = :user_id",
                        {**fields, "chat_id": chat_id, "user_id": user_id},
                    )
                if cursor.rowcount == 0:
                    return None
            return self.get_chat(chat_id, user_id)

    def update_chat_title(self, chat_id: str, user_id: str, first_message: str) -> Optional[Dict]:
        return self.update_chat(chat_id, user_id, {"title": generate_chat_title(first_message)})

    def delete_chat(self, chat_id: str, user_id: str) -> bool:
        with self._lock:
            with self._conn:
                cursor = self._conn.execute(
                    "DELETE FROM chats WHERE id = ? AND user_id = ?",
                    (chat_id, user_id),
                )
                return cursor.rowcount > 0

    def add_message(
        self,
        chat_id: str,
        role: MessageRole,
        content: str,
        model: Optional[str] = None,
        token_count: Optional[int] = None,
    ) -> Dict:
        with self._lock:
            message = {
                "id": new_id(),
                "chat_id": chat_id,
                "role": role,
                "content": content,
                "model": model,
                "token_count": token_count,
                "created_at": utc_now(),
            }
            with self._conn:
                self._conn.execute(
                    "INSERT INTO messages (id, chat_id, role, content, model, token_count, created_at) "
                    "VALUES (:id, :chat_id, :role, :content, :model, :token_count, :created_at)",
                    message,
                )
                # Update chat updated_at
                self._conn.execute(
                    "UPDATE chats SET updated_at = ? WHERE id = ?",
                    (message["created_at"], chat_id),
                )
            return message

    def get_messages(self, chat_id: str, user_id: str) -> List[Dict]:
        """按会话归属过滤，非本人会话返回空列表。"""
        with self._lock:
            cursor = self._conn.execute(
                """
                SELECT m.* FROM messages m
                JOIN chats c ON c.id = m.chat_id
                WHERE m.chat_id = ? AND c.user_id = ?
                ORDER BY m.created_at ASC, m.rowid ASC
                """,
                (chat_id, user_id),
            )
            return [dict(row) for row in cursor.fetchall()]


chat_store = ChatStore(f"{settings.DATA_DIR}/chat.db")
