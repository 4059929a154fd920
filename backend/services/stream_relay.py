"""
Streaming chat relay.

Bridges one upstream streaming completion to one downstream server-sent-event
stream. Content deltas are re-emitted as soon as they arrive while the full
reply is accumulated; the exchange is persisted only once the upstream
``[DONE]`` sentinel has been seen.
"""

import codecs
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Sequence
from starlette.concurrency import run_in_threadpool

from models.conversation import ConversationTurn, ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM
from services.upstream_client import UpstreamClient, UpstreamResponse

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

CHAT_SYSTEM_PROMPT = """You are my thoughtful friend and an equal conversation partner, not a mentor or a teacher. Our talks are two-way discussions of ideas, not one-way lectures or guided lessons.

1. Role: talk as a friend. Do not assume a knowledge gap and do not steer me toward a conclusion. Share your own view ("I think the strength of this idea is... but maybe consider...") and say honestly what you think of mine ("your point about X is inspiring because...; I feel differently about Y because...").

2. Length: keep replies close to a real conversation, 3-5 sentences. Avoid both long monologues and empty one-word answers; every sentence should add to the discussion.

3. Flow: respond to the concrete ideas I raise first. Do not ask about my goals or what I already know. If I have not stated a view, share yours on the topic to open the discussion instead of leading me with questions.

4. Limits: do not solve tasks for me (homework, problem answers); stay with the exchange of ideas. No quizzes, no recaps, no role-play exercises.

Be sincere, rational and natural, without forced enthusiasm or piles of exclamation marks and emoji. When we disagree, explore rather than rebut, so it feels like an easy chat between friends."""


@dataclass
class StreamSession:
    """Per-request state of one relayed stream."""
    session_id: Optional[str] = None
    chunks: List[str] = field(default_factory=list)
    completed: bool = False

    def append(self, delta: str) -> None:
        self.chunks.append(delta)

    @property
    def accumulated(self) -> str:
        return "".join(self.chunks)


class SSELineDecoder:
    """
    Incremental decoder for an event-stream body.

    Bytes are decoded with an incremental UTF-8 decoder so multi-byte
    characters split across reads survive, and a trailing partial line is
    carried over until its newline arrives.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Consume a chunk and return the payloads of all completed data lines."""
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [data for data in (self._data(line) for line in lines) if data is not None]

    def flush(self) -> List[str]:
        """Return the payload of a final unterminated line, if any."""
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        data = self._data(line)
        return [data] if data is not None else []

    @staticmethod
    def _data(line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        return line[len(DATA_PREFIX):]


async def iter_sse_data(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line in a byte stream."""
    decoder = SSELineDecoder()
    async with aclosing(chunks):
        async for chunk in chunks:
            for data in decoder.feed(chunk):
                yield data
        for data in decoder.flush():
            yield data


def extract_delta(data: str) -> Optional[str]:
    """Content delta at choices[0].delta.content, or None for anything else."""
    try:
        parsed: Any = json.loads(data)
        delta = parsed["choices"][0]["delta"]["content"]
    except (ValueError, KeyError, IndexError, TypeError):
        return None
    return delta if isinstance(delta, str) and delta else None


def encode_event(delta: str) -> bytes:
    """Downstream event carrying one delta."""
    return f"data: {json.dumps({'content': delta}, ensure_ascii=False)}\n\n".encode("utf-8")


class StreamRelay:
    """Relays chat completions to the client and persists finished exchanges."""

    def __init__(
        self,
        upstream_client: UpstreamClient,
        message_store: Optional[Any] = None,
        system_prompt: Optional[str] = CHAT_SYSTEM_PROMPT,
        model: Optional[str] = None
    ):
        """
        Args:
            upstream_client: Client for the chat-completion API
            message_store: Object exposing owns_session(session_id, user_id) and
                append_message(session_id, role, content); persistence is
                skipped when None
            system_prompt: Prepended to every conversation when set
            model: Model identifier (defaults to the client's default model)
        """
        self.upstream_client = upstream_client
        self.message_store = message_store
        self.system_prompt = system_prompt
        self.model = model

    def build_messages(self, turns: Sequence[ConversationTurn]) -> List[ConversationTurn]:
        messages = list(turns)
        if self.system_prompt:
            messages.insert(0, ConversationTurn(role=ROLE_SYSTEM, content=self.system_prompt))
        return messages

    async def relay(
        self,
        turns: Sequence[ConversationTurn],
        session_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> AsyncIterator[bytes]:
        """
        Stream one completion as downstream SSE events.

        Upstream errors propagate to the caller. Closing this iterator before
        the sentinel closes the upstream stream and discards the partial reply.

        Yields:
            Encoded ``data: {"content": ...}`` events, one per upstream delta
        """
        session = StreamSession(session_id=session_id)
        upstream = self.upstream_client.stream_complete(self.build_messages(turns), model=self.model)

        async with aclosing(iter_sse_data(upstream)) as events:
            async for data in events:
                if data.strip() == DONE_SENTINEL:
                    session.completed = True
                    break

                delta = extract_delta(data)
                if delta is None:
                    logger.debug(f"Skipping stream line without content: {data[:100]}")
                    continue

                session.append(delta)
                yield encode_event(delta)

        if not session.completed:
            logger.warning(
                f"Upstream stream ended without {DONE_SENTINEL}; reply not persisted "
                f"(session={session_id}, chars={len(session.accumulated)})"
            )
            return

        logger.info(f"Stream completed: session={session_id}, chars={len(session.accumulated)}")
        if session_id and session.accumulated:
            await self._persist_exchange(session_id, user_id, turns, session.accumulated)

    async def reply(
        self,
        turns: Sequence[ConversationTurn],
        session_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> UpstreamResponse:
        """Non-streaming chat turn, persisted with the same rule as relay()."""
        response = await self.upstream_client.complete(self.build_messages(turns), model=self.model)
        if session_id and response.text:
            await self._persist_exchange(session_id, user_id, turns, response.text)
        return response

    async def _persist_exchange(
        self,
        session_id: str,
        user_id: Optional[str],
        turns: Sequence[ConversationTurn],
        reply: str
    ) -> None:
        if self.message_store is None:
            return

        try:
            if not user_id or not await run_in_threadpool(
                self.message_store.owns_session, session_id, user_id
            ):
                logger.warning(f"Not persisting exchange: session {session_id} is not owned by user {user_id}")
                return

            last_turn = turns[-1] if turns else None
            if last_turn is not None and last_turn.role == ROLE_USER:
                await run_in_threadpool(
                    self.message_store.append_message, session_id, ROLE_USER, last_turn.content
                )
            await run_in_threadpool(
                self.message_store.append_message, session_id, ROLE_ASSISTANT, reply
            )
            logger.info(f"Persisted exchange for session {session_id}")
        except Exception as e:
            logger.error(f"Failed to persist exchange for session {session_id}: {e}", exc_info=True)
