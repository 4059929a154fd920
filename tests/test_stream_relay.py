"""Unit tests for the streaming chat relay."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import asyncio
import json
import pytest
from unittest.mock import Mock, call
from models.conversation import ConversationTurn
from services.stream_relay import (
    StreamRelay,
    StreamSession,
    SSELineDecoder,
    extract_delta,
    encode_event,
)
from services.upstream_client import UpstreamResponse, StreamTransportError, UpstreamRequestError

TURNS = [
    ConversationTurn(role="user", content="Say hi"),
    ConversationTurn(role="assistant", content="Hello!"),
    ConversationTurn(role="user", content="Again please"),
]

HI_THERE = (
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":" there"}}]}\n\n'
    b'data: [DONE]\n\n'
)


class FakeUpstream:
    """Upstream stand-in that replays fixed chunks, optionally failing at the end."""

    def __init__(self, chunks=(), error=None, text="Hi there"):
        self.chunks = list(chunks)
        self.error = error
        self.text = text
        self.requests = []
        self.closed = False

    async def stream_complete(self, turns, model=None):
        self.requests.append(list(turns))
        try:
            for chunk in self.chunks:
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    async def complete(self, turns, model=None):
        self.requests.append(list(turns))
        if self.error is not None:
            raise self.error
        return UpstreamResponse(text=self.text, tokens_input=5, tokens_output=2,
                                latency_ms=1, model_used="test-model", usage={"total_tokens": 7})


def split_every(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


def run_relay(relay, turns=TURNS, session_id="session-1", user_id="user-1"):
    async def consume():
        return [event async for event in relay.relay(turns, session_id=session_id, user_id=user_id)]
    return asyncio.run(consume())


def contents(events):
    decoded = []
    for event in events:
        text = event.decode("utf-8")
        assert text.startswith("data: ") and text.endswith("\n\n")
        decoded.append(json.loads(text[len("data: "):])["content"])
    return decoded


@pytest.fixture
def store():
    mock_store = Mock()
    mock_store.owns_session.return_value = True
    return mock_store


class TestSSELineDecoder:
    """Tests for incremental line decoding."""

    def test_complete_lines(self):
        decoder = SSELineDecoder()
        assert decoder.feed(b"data: one\n\ndata: two\n\n") == ["one", "two"]

    def test_partial_line_is_carried_over(self):
        decoder = SSELineDecoder()
        assert decoder.feed(b'data: {"a":') == []
        assert decoder.feed(b' 1}\n') == ['{"a": 1}']

    def test_ignores_non_data_lines(self):
        decoder = SSELineDecoder()
        assert decoder.feed(b": keep-alive\nevent: message\nid: 3\ndata: x\n") == ["x"]

    def test_crlf_line_endings(self):
        decoder = SSELineDecoder()
        assert decoder.feed(b"data: one\r\n\r\ndata: two\r\n") == ["one", "two"]

    def test_multibyte_character_split_across_chunks(self):
        payload = "data: 你好\n".encode("utf-8")
        decoder = SSELineDecoder()
        lines = []
        for chunk in split_every(payload, 1):
            lines.extend(decoder.feed(chunk))
        assert lines == ["你好"]

    def test_flush_returns_unterminated_line(self):
        decoder = SSELineDecoder()
        assert decoder.feed(b"data: [DONE]") == []
        assert decoder.flush() == ["[DONE]"]
        assert decoder.flush() == []


class TestHelpers:

    def test_extract_delta(self):
        assert extract_delta('{"choices":[{"delta":{"content":"Hi"}}]}') == "Hi"

    @pytest.mark.parametrize("data", [
        "not-json",
        "[]",
        '{"choices":[]}',
        '{"choices":[{"delta":{}}]}',
        '{"choices":[{"delta":{"content":""}}]}',
        '{"choices":[{"delta":{"content":null}}]}',
        '"just a string"',
    ])
    def test_extract_delta_ignores_unusable_payloads(self, data):
        assert extract_delta(data) is None

    def test_encode_event_keeps_unicode(self):
        assert encode_event("灵感") == 'data: {"content": "灵感"}\n\n'.encode("utf-8")

    def test_stream_session_accumulates(self):
        session = StreamSession(session_id="s")
        session.append("Hi")
        session.append(" there")
        assert session.accumulated == "Hi there"
        assert session.completed is False


class TestRelay:
    """Tests for StreamRelay.relay."""

    def test_forwards_deltas_and_persists_on_done(self, store):
        upstream = FakeUpstream([HI_THERE])
        relay = StreamRelay(upstream, message_store=store)

        events = run_relay(relay)

        assert contents(events) == ["Hi", " there"]
        assert store.append_message.call_args_list == [
            call("session-1", "user", "Again please"),
            call("session-1", "assistant", "Hi there"),
        ]
        assert upstream.closed is True

    def test_chunk_boundaries_do_not_change_output(self, store):
        upstream = FakeUpstream(split_every(HI_THERE, 7))
        relay = StreamRelay(upstream, message_store=store)

        events = run_relay(relay)

        assert contents(events) == ["Hi", " there"]
        store.append_message.assert_any_call("session-1", "assistant", "Hi there")

    def test_malformed_line_is_skipped(self, store):
        body = (
            b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n'
            b'data: not-json\n\n'
            b'data: {"choices":[{"delta":{"content":"B"}}]}\n\n'
            b'data: [DONE]\n\n'
        )
        relay = StreamRelay(FakeUpstream([body]), message_store=store)

        events = run_relay(relay)

        assert contents(events) == ["A", "B"]
        store.append_message.assert_any_call("session-1", "assistant", "AB")

    def test_unicode_deltas_split_across_chunks(self, store):
        body = 'data: {"choices":[{"delta":{"content":"灵感"}}]}\n\ndata: [DONE]\n\n'.encode("utf-8")
        relay = StreamRelay(FakeUpstream(split_every(body, 3)), message_store=store)

        assert contents(run_relay(relay)) == ["灵感"]

    def test_last_turn_from_assistant_persists_only_reply(self, store):
        turns = [ConversationTurn(role="assistant", content="Earlier reply")]
        relay = StreamRelay(FakeUpstream([HI_THERE]), message_store=store)

        run_relay(relay, turns=turns)

        assert store.append_message.call_args_list == [call("session-1", "assistant", "Hi there")]

    def test_no_session_id_skips_persistence(self, store):
        relay = StreamRelay(FakeUpstream([HI_THERE]), message_store=store)

        events = run_relay(relay, session_id=None)

        assert len(events) == 2
        store.append_message.assert_not_called()

    def test_foreign_session_is_not_written(self, store):
        store.owns_session.return_value = False
        relay = StreamRelay(FakeUpstream([HI_THERE]), message_store=store)

        events = run_relay(relay, session_id="other-users-session", user_id="user-1")

        assert contents(events) == ["Hi", " there"]
        store.owns_session.assert_called_once_with("other-users-session", "user-1")
        store.append_message.assert_not_called()

    def test_missing_user_skips_persistence(self, store):
        relay = StreamRelay(FakeUpstream([HI_THERE]), message_store=store)

        run_relay(relay, user_id=None)

        store.owns_session.assert_not_called()
        store.append_message.assert_not_called()

    def test_empty_reply_skips_persistence(self, store):
        relay = StreamRelay(FakeUpstream([b"data: [DONE]\n\n"]), message_store=store)

        assert run_relay(relay) == []
        store.append_message.assert_not_called()

    def test_stream_without_done_closes_without_persisting(self, store):
        body = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
        relay = StreamRelay(FakeUpstream([body]), message_store=store)

        assert contents(run_relay(relay)) == ["Hi"]
        store.append_message.assert_not_called()

    def test_done_without_trailing_newline(self, store):
        body = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]'
        relay = StreamRelay(FakeUpstream([body]), message_store=store)

        run_relay(relay)

        store.append_message.assert_any_call("session-1", "assistant", "Hi")

    def test_lines_after_done_are_not_forwarded(self, store):
        body = HI_THERE + b'data: {"choices":[{"delta":{"content":"late"}}]}\n\n'
        relay = StreamRelay(FakeUpstream([body]), message_store=store)

        assert contents(run_relay(relay)) == ["Hi", " there"]

    def test_transport_error_propagates_without_persistence(self, store):
        first = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n'
        upstream = FakeUpstream([first], error=StreamTransportError("connection reset"))
        relay = StreamRelay(upstream, message_store=store)
        received = []

        async def consume():
            async for event in relay.relay(TURNS, session_id="session-1", user_id="user-1"):
                received.append(event)

        with pytest.raises(StreamTransportError):
            asyncio.run(consume())

        assert contents(received) == ["Hi"]
        store.append_message.assert_not_called()
        assert upstream.closed is True

    def test_upstream_request_error_propagates(self, store):
        relay = StreamRelay(FakeUpstream(error=UpstreamRequestError(500, "Internal Server Error")),
                            message_store=store)

        with pytest.raises(UpstreamRequestError):
            run_relay(relay)

        store.append_message.assert_not_called()

    def test_downstream_disconnect_releases_upstream_without_persisting(self, store):
        upstream = FakeUpstream(split_every(HI_THERE, len(HI_THERE) // 3))
        relay = StreamRelay(upstream, message_store=store)

        async def disconnect_after_first_event():
            events = relay.relay(TURNS, session_id="session-1", user_id="user-1")
            first = await events.__anext__()
            await events.aclose()
            return first

        first = asyncio.run(disconnect_after_first_event())

        assert contents([first]) == ["Hi"]
        assert upstream.closed is True
        store.append_message.assert_not_called()

    def test_persistence_failure_does_not_break_stream(self, store):
        store.append_message.side_effect = RuntimeError("database down")
        relay = StreamRelay(FakeUpstream([HI_THERE]), message_store=store)

        assert contents(run_relay(relay)) == ["Hi", " there"]

    def test_system_prompt_is_prepended_without_mutating_input(self):
        upstream = FakeUpstream([HI_THERE])
        turns = list(TURNS)
        relay = StreamRelay(upstream, system_prompt="Be a friend")

        run_relay(relay, turns=turns)

        sent = upstream.requests[0]
        assert sent[0] == ConversationTurn(role="system", content="Be a friend")
        assert sent[1:] == TURNS
        assert turns == TURNS

    def test_without_system_prompt_sends_turns_as_is(self):
        upstream = FakeUpstream([HI_THERE])
        relay = StreamRelay(upstream, system_prompt=None)

        run_relay(relay)

        assert upstream.requests[0] == TURNS


class TestReply:
    """Tests for StreamRelay.reply (non-streaming)."""

    def test_reply_persists_exchange(self, store):
        relay = StreamRelay(FakeUpstream(text="Sure thing"), message_store=store)

        response = asyncio.run(relay.reply(TURNS, session_id="session-1", user_id="user-1"))

        assert response.text == "Sure thing"
        assert store.append_message.call_args_list == [
            call("session-1", "user", "Again please"),
            call("session-1", "assistant", "Sure thing"),
        ]

    def test_reply_to_foreign_session_is_not_written(self, store):
        store.owns_session.return_value = False
        relay = StreamRelay(FakeUpstream(text="Sure thing"), message_store=store)

        response = asyncio.run(relay.reply(TURNS, session_id="other-users-session", user_id="user-1"))

        assert response.text == "Sure thing"
        store.append_message.assert_not_called()

    def test_reply_error_propagates_without_persistence(self, store):
        relay = StreamRelay(FakeUpstream(error=UpstreamRequestError(401, "Unauthorized")), message_store=store)

        with pytest.raises(UpstreamRequestError):
            asyncio.run(relay.reply(TURNS, session_id="session-1", user_id="user-1"))

        store.append_message.assert_not_called()
