from datetime import UTC, datetime
from typing import Any

from neoai_gateway.core.ids import generate_id
from neoai_gateway.storage.database import Database, Statement

DEFAULT_SESSION_TITLE = "New Chat"
TITLE_MAX_CHARS = 60


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_title(message: str) -> str:
    """Derive a conversation title from the first user message."""
    cleaned = message.replace("\n", " ").strip()
    if len(cleaned) <= TITLE_MAX_CHARS:
        return cleaned
    return cleaned[: TITLE_MAX_CHARS - 3] + "..."


class ConversationStore:
    def __init__(self, database: Database) -> None:
        self._database = database

    # ---- Sessions ----

    async def list_sessions(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self._database.fetch_all(
            "SELECT * FROM sessions WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
            (user_id, limit),
        )

    async def get_session(self, session_id: str, user_id: str) -> dict[str, Any] | None:
        return await self._database.fetch_one(
            "SELECT * FROM sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id),
        )

    async def create_session(
        self, user_id: str, model: str, title: str = DEFAULT_SESSION_TITLE
    ) -> dict[str, Any]:
        session_id = generate_id("ses")
        now = _now_iso()
        await self._database.execute(
            "INSERT INTO sessions (id, user_id, title, model, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (session_id, user_id, title, model, now, now),
        )
        return {
            "id": session_id,
            "user_id": user_id,
            "title": title,
            "model": model,
            "created_at": now,
            "updated_at": now,
        }

    async def update_session_title(self, session_id: str, title: str) -> None:
        await self._database.execute(
            "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
            (title, _now_iso(), session_id),
        )

    async def touch_session(self, session_id: str) -> None:
        await self._database.execute(
            "UPDATE sessions SET updated_at = ? WHERE id = ?",
            (_now_iso(), session_id),
        )

    async def delete_session(self, session_id: str, user_id: str) -> bool:
        # Messages go first and only when the session belongs to the caller.
        results = await self._database.batch(
            [
                Statement(
                    "DELETE FROM messages WHERE session_id = ? AND session_id IN "
                    "(SELECT id FROM sessions WHERE id = ? AND user_id = ?)",
                    (session_id, session_id, user_id),
                ),
                Statement(
                    "DELETE FROM sessions WHERE id = ? AND user_id = ?",
                    (session_id, user_id),
                ),
            ]
        )
        return results[1].rows_affected > 0

    # ---- Messages ----

    async def get_messages(self, session_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return await self._database.fetch_all(
            "SELECT * FROM messages WHERE session_id = ? "
            "ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (session_id, limit),
        )

    async def recent_messages(self, session_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Return the latest ``limit`` messages, oldest first."""
        rows = await self._database.fetch_all(
            "SELECT * FROM messages WHERE session_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (session_id, limit),
        )
        rows.reverse()
        return rows

    async def add_message(
        self,
        *,
        session_id: str,
        role: str,
        content: str,
        model: str | None = None,
        tokens_used: int = 0,
    ) -> dict[str, Any]:
        message_id = generate_id("msg")
        now = _now_iso()
        await self._database.execute(
            "INSERT INTO messages (id, session_id, role, content, model, tokens_used, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (message_id, session_id, role, content, model, tokens_used, now),
        )
        return {
            "id": message_id,
            "session_id": session_id,
            "role": role,
            "content": content,
            "model": model,
            "tokens_used": tokens_used,
            "created_at": now,
        }

    # ---- Usage ----

    async def record_usage(
        self, *, user_hash: str, model: str, tokens_out: int, tokens_in: int = 0
    ) -> str:
        usage_id = generate_id("use")
        await self._database.execute(
            "INSERT INTO usage_log (id, user_hash, model, tokens_in, tokens_out, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (usage_id, user_hash, model, tokens_in, tokens_out, _now_iso()),
        )
        return usage_id

    async def usage_rows(self, user_hash: str) -> list[dict[str, Any]]:
        return await self._database.fetch_all(
            "SELECT * FROM usage_log WHERE user_hash = ? ORDER BY created_at ASC",
            (user_hash,),
        )
