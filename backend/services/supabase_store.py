"""Persistence for chat sessions, messages and inspirations using Supabase."""
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from supabase import create_client, Client

from config import SUPABASE_URL, SUPABASE_KEY
from models.conversation import ConversationTurn
from models.inspiration import InspirationAnalysis, VALID_CATEGORIES

logger = logging.getLogger(__name__)


class SupabaseStore:
    """Stores chat sessions, chat messages and inspirations in Supabase PostgreSQL."""

    SESSIONS_TABLE = "chat_sessions"
    MESSAGES_TABLE = "chat_messages"
    INSPIRATIONS_TABLE = "inspirations"

    PROTECTED_FIELDS = ("id", "user_id", "created_at")

    def __init__(
        self,
        supabase_url: Optional[str] = SUPABASE_URL,
        supabase_key: Optional[str] = SUPABASE_KEY
    ):
        """
        Initialize the store with a Supabase client.

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.client: Client = create_client(supabase_url, supabase_key)
        logger.info("SupabaseStore initialized")

    # Auth

    def get_user_id(self, access_token: str) -> Optional[str]:
        """
        Resolve a Supabase access token to a user id.

        Returns:
            The user id, or None if the token is invalid or expired
        """
        try:
            response = self.client.auth.get_user(access_token)
        except Exception as e:
            logger.warning(f"Token verification failed: {e}")
            return None

        user = getattr(response, "user", None) if response else None
        return user.id if user else None

    # Chat messages

    def append_message(self, session_id: str, role: str, content: str) -> None:
        """Append one message to a chat session."""
        try:
            self.client.table(self.MESSAGES_TABLE).insert({
                "session_id": session_id,
                "role": role,
                "content": content,
            }).execute()

            logger.info(f"Added {role} message to session {session_id}")
        except Exception as e:
            logger.error(f"Error adding message to session {session_id}: {e}")
            raise

    def replace_session_messages(self, session_id: str, turns: Sequence[ConversationTurn]) -> int:
        """
        Replace all messages of a session with the given turns.

        Timestamps are spaced one second apart so reads ordered by created_at
        return the turns in their original order.

        Returns:
            Number of messages written
        """
        base = datetime.now(timezone.utc)
        records = [
            {
                "session_id": session_id,
                "role": turn.role,
                "content": turn.content,
                "created_at": (base + timedelta(seconds=index)).isoformat(),
            }
            for index, turn in enumerate(turns)
        ]

        try:
            self.client.table(self.MESSAGES_TABLE).delete().eq("session_id", session_id).execute()
            if records:
                self.client.table(self.MESSAGES_TABLE).insert(records).execute()

            logger.info(f"Replaced messages of session {session_id}: {len(records)} messages")
            return len(records)
        except Exception as e:
            logger.error(f"Error replacing messages of session {session_id}: {e}")
            raise

    # Chat sessions

    def owns_session(self, session_id: str, user_id: str) -> bool:
        """Whether a chat session with this id belongs to the user."""
        try:
            result = (
                self.client.table(self.SESSIONS_TABLE)
                .select("id")
                .eq("id", session_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error checking owner of session {session_id}: {e}")
            raise
        return bool(result.data)

    def create_session(self, user_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        """Create an empty chat session."""
        try:
            result = self.client.table(self.SESSIONS_TABLE).insert({
                "user_id": user_id,
                "title": title or None,
            }).execute()

            session = dict(result.data[0])
            session["messages"] = []
            logger.info(f"Created chat session {session.get('id')}")
            return session
        except Exception as e:
            logger.error(f"Error creating chat session: {e}")
            raise

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        """List a user's sessions with their messages, newest first."""
        try:
            result = (
                self.client.table(self.SESSIONS_TABLE)
                .select(f"*, {self.MESSAGES_TABLE}(*)")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error listing sessions for user {user_id}: {e}")
            raise

        sessions = []
        for row in result.data or []:
            session = dict(row)
            session["messages"] = session.pop(self.MESSAGES_TABLE, None) or []
            sessions.append(session)
        return sessions

    def update_session(self, session_id: str, user_id: str, **fields: Any) -> None:
        """Update session columns (title, inspiration_id)."""
        updates = {**fields, "updated_at": datetime.now(timezone.utc).isoformat()}
        try:
            (
                self.client.table(self.SESSIONS_TABLE)
                .update(updates)
                .eq("id", session_id)
                .eq("user_id", user_id)
                .execute()
            )
            logger.info(f"Updated session {session_id}: {sorted(fields)}")
        except Exception as e:
            logger.error(f"Error updating session {session_id}: {e}")
            raise

    # Inspirations

    def create_inspiration(
        self,
        user_id: str,
        content: str,
        analysis: InspirationAnalysis
    ) -> Dict[str, Any]:
        """Insert an inspiration built from an analysis and return the stored row."""
        return self.insert_inspiration(
            user_id,
            title=analysis.title,
            content=content,
            summary=analysis.summary,
            categories=analysis.categories,
            tags=analysis.tags
        )

    def insert_inspiration(
        self,
        user_id: str,
        title: str,
        content: str,
        summary: Optional[str] = None,
        categories: Optional[List[str]] = None,
        tags: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Insert one inspiration record and return the stored row."""
        try:
            result = self.client.table(self.INSPIRATIONS_TABLE).insert({
                "user_id": user_id,
                "title": title,
                "content": content,
                "summary": summary or None,
                "categories": categories or [],
                "tags": tags or [],
            }).execute()

            inspiration = dict(result.data[0])
            logger.info(f"Created inspiration {inspiration.get('id')} for user {user_id}")
            return inspiration
        except Exception as e:
            logger.error(f"Error creating inspiration for user {user_id}: {e}")
            raise

    def get_inspiration(self, inspiration_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one inspiration, or None if the user has no such record."""
        try:
            result = (
                self.client.table(self.INSPIRATIONS_TABLE)
                .select("*")
                .eq("id", inspiration_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error fetching inspiration {inspiration_id}: {e}")
            raise
        return dict(result.data[0]) if result.data else None

    def list_inspirations(
        self,
        user_id: str,
        category: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List a user's inspirations, newest first, with optional filters."""
        query = (
            self.client.table(self.INSPIRATIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
        )
        if category:
            query = query.contains("categories", [category])
        if tag:
            query = query.contains("tags", [tag])
        if search:
            pattern = _quote_filter_value(f"%{search}%")
            query = query.or_(
                f"title.ilike.{pattern},content.ilike.{pattern},summary.ilike.{pattern}"
            )

        try:
            result = query.execute()
        except Exception as e:
            logger.error(f"Error listing inspirations for user {user_id}: {e}")
            raise
        return result.data or []

    def get_inspirations(self, user_id: str, inspiration_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Fetch several inspirations by id, newest first."""
        try:
            result = (
                self.client.table(self.INSPIRATIONS_TABLE)
                .select("*")
                .in_("id", list(inspiration_ids))
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error fetching inspirations for user {user_id}: {e}")
            raise
        return result.data or []

    def get_inspiration_field(self, inspiration_id: str, user_id: str, field: str) -> List[str]:
        """Read one list column (categories or tags) of an inspiration."""
        result = (
            self.client.table(self.INSPIRATIONS_TABLE)
            .select(field)
            .eq("id", inspiration_id)
            .eq("user_id", user_id)
            .single()
            .execute()
        )
        return list((result.data or {}).get(field) or [])

    def update_inspiration(
        self,
        inspiration_id: str,
        user_id: str,
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Update an inspiration's columns.

        id, user_id and created_at are never written.

        Returns:
            The updated row, or None if the user has no such record
        """
        allowed = {k: v for k, v in updates.items() if k not in self.PROTECTED_FIELDS}
        allowed["updated_at"] = datetime.now(timezone.utc).isoformat()
        result = (
            self.client.table(self.INSPIRATIONS_TABLE)
            .update(allowed)
            .eq("id", inspiration_id)
            .eq("user_id", user_id)
            .execute()
        )
        logger.debug(f"Updated inspiration {inspiration_id}: {sorted(allowed)}")
        return dict(result.data[0]) if result.data else None

    def delete_inspiration(self, inspiration_id: str, user_id: str) -> None:
        (
            self.client.table(self.INSPIRATIONS_TABLE)
            .delete()
            .eq("id", inspiration_id)
            .eq("user_id", user_id)
            .execute()
        )
        logger.info(f"Deleted inspiration {inspiration_id}")

    def delete_inspirations(self, inspiration_ids: Sequence[str], user_id: str) -> None:
        """Delete several of a user's inspirations in one statement."""
        try:
            (
                self.client.table(self.INSPIRATIONS_TABLE)
                .delete()
                .in_("id", list(inspiration_ids))
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error deleting inspirations for user {user_id}: {e}")
            raise
        logger.info(f"Deleted {len(inspiration_ids)} inspirations for user {user_id}")

    def count_categories(self, user_id: str) -> List[Dict[str, Any]]:
        """Number of inspirations per known category, in category order."""
        counts: Counter = Counter()
        for row in self._select_column(user_id, "categories"):
            counts.update(c for c in row if c in VALID_CATEGORIES)
        return [{"name": category, "count": counts[category]} for category in VALID_CATEGORIES]

    def count_tags(self, user_id: str) -> List[Dict[str, Any]]:
        """Tag usage counts, most frequent first."""
        counts: Counter = Counter()
        for row in self._select_column(user_id, "tags"):
            counts.update(row)
        return [{"tag": tag, "count": count} for tag, count in counts.most_common()]

    def _select_column(self, user_id: str, column: str) -> List[List[str]]:
        try:
            result = (
                self.client.table(self.INSPIRATIONS_TABLE)
                .select(column)
                .eq("user_id", user_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error reading {column} for user {user_id}: {e}")
            raise
        return [row.get(column) for row in result.data or [] if isinstance(row.get(column), list)]


def _quote_filter_value(value: str) -> str:
    """Double-quote a value for a PostgREST logic filter so , . ( ) are literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
