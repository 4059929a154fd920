"""Unit tests for InspirationService and inspiration export."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import asyncio
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, call
from models.conversation import ConversationTurn
from models.inspiration import InspirationAnalysis
from services.inspiration_analyzer import InspirationAnalyzer
from services.supabase_store import SupabaseStore
from services.inspiration_service import (
    InspirationService,
    SessionNotFoundError,
    format_conversation,
    merge_tags,
    merge_categories,
)
from services.inspiration_export import export_inspirations, parse_timestamp

TURNS = [
    ConversationTurn(role="user", content="What if plants could text me?"),
    ConversationTurn(role="assistant", content="A soil sensor could send a message when it is dry."),
]

ANALYSIS = InspirationAnalysis(
    title="Texting plants",
    summary="Soil sensors that message you.",
    categories=["creation"],
    tags=["plants", "iot"]
)


@pytest.fixture
def store():
    mock_store = Mock(spec=SupabaseStore)
    mock_store.owns_session.return_value = True
    mock_store.replace_session_messages.return_value = 2
    mock_store.create_inspiration.return_value = {"id": "insp-1", "title": "Texting plants"}
    return mock_store


@pytest.fixture
def analyzer():
    mock_analyzer = Mock(spec=InspirationAnalyzer)
    mock_analyzer.analyze = AsyncMock(return_value=ANALYSIS)
    return mock_analyzer


@pytest.fixture
def service(analyzer, store):
    return InspirationService(analyzer, store)


class TestFormatConversation:

    def test_labels_roles(self):
        assert format_conversation(TURNS) == (
            "User: What if plants could text me?\n\n"
            "AI: A soil sensor could send a message when it is dry."
        )

    def test_empty(self):
        assert format_conversation([]) == ""


class TestMerge:
    """Tests for tag and category merging."""

    def test_add_skips_existing(self):
        assert merge_tags(["a", "b"], ["b", "c"], "add") == ["a", "b", "c"]

    def test_remove(self):
        assert merge_tags(["a", "b", "c"], ["b"], "remove") == ["a", "c"]

    def test_replace(self):
        assert merge_tags(["a"], ["x", "y"], "replace") == ["x", "y"]

    def test_unknown_operation_raises(self):
        with pytest.raises(ValueError, match="Unknown merge operation"):
            merge_tags([], ["a"], "append")

    def test_categories_drop_unknown_values(self):
        assert merge_categories(["work"], ["life", "sports"], "add") == ["work", "life"]

    def test_categories_never_empty(self):
        assert merge_categories(["work"], ["work"], "remove") == ["creation"]


class TestSaveSession:
    """Tests for saving a chat session as an inspiration."""

    def test_save_session_success(self, service, analyzer, store):
        result = asyncio.run(service.save_session("session-1", "user-1", TURNS, title="Plants"))

        assert result == {
            "success": True,
            "inspiration": {"id": "insp-1", "title": "Texting plants"},
            "messages_saved": 2
        }
        store.replace_session_messages.assert_called_once_with("session-1", TURNS)
        analyzer.analyze.assert_awaited_once_with(format_conversation(TURNS))
        store.create_inspiration.assert_called_once_with("user-1", format_conversation(TURNS), ANALYSIS)
        assert store.update_session.call_args_list == [
            call("session-1", "user-1", title="Plants"),
            call("session-1", "user-1", inspiration_id="insp-1"),
        ]

    def test_save_session_without_title_skips_title_update(self, service, store):
        asyncio.run(service.save_session("session-1", "user-1", TURNS))

        store.update_session.assert_called_once_with("session-1", "user-1", inspiration_id="insp-1")

    def test_inspiration_failure_keeps_messages(self, service, store):
        store.create_inspiration.side_effect = RuntimeError("insert failed")

        result = asyncio.run(service.save_session("session-1", "user-1", TURNS))

        assert result["success"] is True
        assert result["inspiration"] is None
        assert result["messages_saved"] == 2
        store.update_session.assert_not_called()

    def test_message_failure_still_creates_inspiration(self, service, store, analyzer):
        store.replace_session_messages.side_effect = RuntimeError("database down")

        result = asyncio.run(service.save_session("session-1", "user-1", TURNS))

        assert result["messages_saved"] == 0
        assert result["inspiration"] == {"id": "insp-1", "title": "Texting plants"}
        analyzer.analyze.assert_awaited_once()

    def test_foreign_session_is_rejected_before_any_write(self, service, store, analyzer):
        store.owns_session.return_value = False

        with pytest.raises(SessionNotFoundError):
            asyncio.run(service.save_session("other-users-session", "user-1", TURNS))

        store.owns_session.assert_called_once_with("other-users-session", "user-1")
        store.replace_session_messages.assert_not_called()
        store.update_session.assert_not_called()
        store.create_inspiration.assert_not_called()
        analyzer.analyze.assert_not_awaited()


class TestApplyBatch:
    """Tests for batch category, tag and delete actions."""

    def test_add_tags(self, service, store):
        store.get_inspiration_field.return_value = ["plants"]

        results = asyncio.run(service.apply_batch("user-1", "addTags", ["insp-1"], ["iot", "plants"]))

        assert results == [{"id": "insp-1", "success": True, "tags": ["plants", "iot"]}]
        store.get_inspiration_field.assert_called_once_with("insp-1", "user-1", "tags")
        store.update_inspiration.assert_called_once_with("insp-1", "user-1", {"tags": ["plants", "iot"]})

    def test_replace_categories(self, service, store):
        store.get_inspiration_field.return_value = ["work"]

        results = asyncio.run(
            service.apply_batch("user-1", "replaceCategories", ["insp-1"], ["life", "bogus"])
        )

        assert results[0]["categories"] == ["life"]

    def test_no_valid_categories_fails_every_id(self, service, store):
        results = asyncio.run(
            service.apply_batch("user-1", "addCategories", ["insp-1", "insp-2"], ["bogus"])
        )

        assert [r["success"] for r in results] == [False, False]
        assert results[0]["error"] == "No valid categories provided"
        store.update_inspiration.assert_not_called()

    def test_remove_categories_allows_any_values(self, service, store):
        store.get_inspiration_field.return_value = ["work", "life"]

        results = asyncio.run(service.apply_batch("user-1", "removeCategories", ["insp-1"], ["work"]))

        assert results[0] == {"id": "insp-1", "success": True, "categories": ["life"]}

    def test_failure_is_reported_per_id(self, service, store):
        store.get_inspiration_field.side_effect = [RuntimeError("not found"), ["a"]]

        results = asyncio.run(service.apply_batch("user-1", "removeTags", ["missing", "insp-2"], ["a"]))

        assert results[0] == {"id": "missing", "success": False, "error": "not found"}
        assert results[1] == {"id": "insp-2", "success": True, "tags": []}

    def test_delete(self, service, store):
        store.delete_inspiration.side_effect = [None, RuntimeError("locked")]

        results = asyncio.run(service.apply_batch("user-1", "delete", ["insp-1", "insp-2"]))

        assert results == [
            {"id": "insp-1", "success": True},
            {"id": "insp-2", "success": False, "error": "locked"},
        ]

    def test_unknown_action_raises(self, service):
        with pytest.raises(ValueError, match="Invalid action"):
            asyncio.run(service.apply_batch("user-1", "archive", ["insp-1"]))


INSPIRATIONS = [
    {
        "id": "insp-1",
        "title": "Texting plants",
        "summary": "Soil sensors that message you.",
        "content": "User: What if plants could text me?",
        "categories": ["creation", "life"],
        "tags": ["plants", "iot"],
        "created_at": "2026-02-21T02:08:26.18976+00:00"
    }
]


class TestExport:
    """Tests for inspiration export."""

    def test_markdown(self):
        export = export_inspirations(INSPIRATIONS, "markdown")

        assert export["mimeType"] == "text/markdown"
        assert export["filename"].startswith("inspirations-")
        assert export["filename"].endswith(".md")
        assert "# Texting plants" in export["data"]
        assert "**Created**: 2026-02-21" in export["data"]
        assert "**Categories**: #creation #life" in export["data"]
        assert "**Tags**: #plants #iot" in export["data"]

    def test_json_returns_records(self):
        export = export_inspirations(INSPIRATIONS, "json")

        assert export["data"] == INSPIRATIONS
        assert export["mimeType"] == "application/json"

    def test_txt(self):
        export = export_inspirations(INSPIRATIONS, "txt")

        assert export["mimeType"] == "text/plain"
        assert "Categories: creation, life" in export["data"]
        assert "Summary: Soil sensors that message you." in export["data"]

    def test_missing_summary(self):
        export = export_inspirations([{"title": "T", "content": "C"}], "txt")
        assert "Summary: No summary" in export["data"]

    def test_unknown_format_raises(self):
        with pytest.raises(ValueError, match="Unsupported export format"):
            export_inspirations(INSPIRATIONS, "pdf")

    def test_parse_timestamp_pads_microseconds(self):
        parsed = parse_timestamp("2026-02-21T02:08:26.18976+00:00")
        assert parsed == datetime(2026, 2, 21, 2, 8, 26, 189760, tzinfo=timezone.utc)

    def test_parse_timestamp_zulu(self):
        parsed = parse_timestamp("2026-02-21T02:08:26Z")
        assert parsed.tzinfo is not None
        assert parsed.second == 26
