"""Session save flow and batch category/tag operations for inspirations."""
import logging
from typing import Any, Dict, List, Optional, Sequence
from starlette.concurrency import run_in_threadpool

from models.conversation import ConversationTurn, ROLE_USER
from models.inspiration import VALID_CATEGORIES, DEFAULT_CATEGORY
from services.inspiration_analyzer import InspirationAnalyzer
from services.supabase_store import SupabaseStore

logger = logging.getLogger(__name__)

OPERATION_ADD = "add"
OPERATION_REMOVE = "remove"
OPERATION_REPLACE = "replace"

# Batch action name -> (column, merge operation)
BATCH_ACTIONS = {
    "addCategories": ("categories", OPERATION_ADD),
    "removeCategories": ("categories", OPERATION_REMOVE),
    "replaceCategories": ("categories", OPERATION_REPLACE),
    "addTags": ("tags", OPERATION_ADD),
    "removeTags": ("tags", OPERATION_REMOVE),
    "replaceTags": ("tags", OPERATION_REPLACE),
}


class SessionNotFoundError(LookupError):
    """The chat session does not exist or belongs to another user."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Chat session not found: {session_id}")


def format_conversation(turns: Sequence[ConversationTurn]) -> str:
    """Render a conversation as the text that gets analyzed and stored."""
    return "\n\n".join(
        f"{'User' if turn.role == ROLE_USER else 'AI'}: {turn.content}"
        for turn in turns
    )


def merge_tags(current: Sequence[str], new: Sequence[str], operation: str) -> List[str]:
    """
    Merge tags.

    add appends tags not yet present, remove drops the given tags, replace
    takes the new list as-is.
    """
    if operation == OPERATION_ADD:
        merged = list(current)
        merged.extend(tag for tag in new if tag not in current)
        return merged
    if operation == OPERATION_REMOVE:
        return [tag for tag in current if tag not in new]
    if operation == OPERATION_REPLACE:
        return list(new)
    raise ValueError(f"Unknown merge operation: {operation}")


def merge_categories(current: Sequence[str], new: Sequence[str], operation: str) -> List[str]:
    """Merge categories like tags, restricted to known categories and never empty."""
    valid_new = [category for category in new if category in VALID_CATEGORIES]
    merged = merge_tags(current, valid_new, operation)
    return merged or [DEFAULT_CATEGORY]


class InspirationService:
    """Turns chat sessions into inspirations and applies batch edits."""

    def __init__(self, analyzer: InspirationAnalyzer, store: SupabaseStore):
        self.analyzer = analyzer
        self.store = store

    async def save_session(
        self,
        session_id: str,
        user_id: str,
        turns: Sequence[ConversationTurn],
        title: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Save a conversation and distill it into an inspiration.

        The session's messages are replaced and its title updated first. A
        failure while writing the messages is logged and reported as
        ``messages_saved=0``; the inspiration is still created. A failure
        while storing the inspiration is logged and reported as
        ``inspiration=None``; the saved messages are kept.

        Returns:
            Dict with success, inspiration (stored row or None) and messages_saved

        Raises:
            SessionNotFoundError: The session is not one of the user's
        """
        if not await run_in_threadpool(self.store.owns_session, session_id, user_id):
            raise SessionNotFoundError(session_id)

        messages_saved = 0
        try:
            messages_saved = await run_in_threadpool(self.store.replace_session_messages, session_id, turns)
        except Exception as e:
            logger.error(f"Failed to save messages for session {session_id}: {e}", exc_info=True)

        if title:
            await run_in_threadpool(self.store.update_session, session_id, user_id, title=title)

        content = format_conversation(turns)
        analysis = await self.analyzer.analyze(content)

        inspiration = None
        try:
            inspiration = await run_in_threadpool(self.store.create_inspiration, user_id, content, analysis)
            await run_in_threadpool(
                self.store.update_session, session_id, user_id, inspiration_id=inspiration["id"]
            )
        except Exception as e:
            logger.warning(f"Failed to store inspiration for session {session_id}: {e}", exc_info=True)

        return {
            "success": True,
            "inspiration": inspiration,
            "messages_saved": messages_saved,
        }

    async def apply_batch(
        self,
        user_id: str,
        action: str,
        inspiration_ids: Sequence[str],
        values: Sequence[str] = ()
    ) -> List[Dict[str, Any]]:
        """
        Apply one batch action to several inspirations.

        Each id is processed independently; a failure is reported in that
        id's result and does not stop the others.
        """
        if action == "delete":
            return [await self._delete_one(user_id, inspiration_id) for inspiration_id in inspiration_ids]

        if action not in BATCH_ACTIONS:
            raise ValueError(f"Invalid action: {action}")

        column, operation = BATCH_ACTIONS[action]
        if column == "categories" and operation != OPERATION_REMOVE:
            if not any(category in VALID_CATEGORIES for category in values):
                return [
                    {"id": inspiration_id, "success": False, "error": "No valid categories provided"}
                    for inspiration_id in inspiration_ids
                ]

        merge = merge_categories if column == "categories" else merge_tags
        results = []
        for inspiration_id in inspiration_ids:
            try:
                current = await run_in_threadpool(
                    self.store.get_inspiration_field, inspiration_id, user_id, column
                )
                updated = merge(current, list(values), operation)
                await run_in_threadpool(
                    self.store.update_inspiration, inspiration_id, user_id, {column: updated}
                )
                results.append({"id": inspiration_id, "success": True, column: updated})
            except Exception as e:
                logger.warning(f"Batch {action} failed for inspiration {inspiration_id}: {e}")
                results.append({"id": inspiration_id, "success": False, "error": str(e)})

        logger.info(
            f"Batch {action}: {sum(r['success'] for r in results)}/{len(results)} succeeded"
        )
        return results

    async def _delete_one(self, user_id: str, inspiration_id: str) -> Dict[str, Any]:
        try:
            await run_in_threadpool(self.store.delete_inspiration, inspiration_id, user_id)
            return {"id": inspiration_id, "success": True}
        except Exception as e:
            logger.warning(f"Batch delete failed for inspiration {inspiration_id}: {e}")
            return {"id": inspiration_id, "success": False, "error": str(e)}
