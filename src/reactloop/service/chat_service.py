"""
reactloop/service/chat_service.py — Narration Chat

Plain, non-agentic conversation with the model: no THINK decision, no
tools, no state machine. Each session keeps its own history in the session
store, so a chat can be continued by passing the same session id.

  chat(prompt, session_id)         → AgentResponse with the full reply
  chat_stream(prompt, session_id)  → PushChannel of delta events, then done
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Optional

from reactloop.brain.llm_client import BaseLLMClient
from reactloop.brain.types import LLMConfig, Message
from reactloop.exceptions import ChannelError, LLMError, SessionStoreError
from reactloop.gateway.channel import DEFAULT_QUEUE_SIZE, DEFAULT_TIMEOUT_SECONDS, PushChannel
from reactloop.gateway.protocol import make_delta, make_done, make_error, make_start
from reactloop.memory.session_store import SessionStore
from reactloop.observability.logger import get_logger
from reactloop.service.models import AgentResponse

log = get_logger(__name__)


class ChatService:

    def __init__(
        self,
        llm: BaseLLMClient,
        config: LLMConfig,
        store: SessionStore,
        *,
        name: str = "chat",
        system_prompt: str = "",
        stream_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.llm = llm
        self.config = config
        self.store = store
        self.name = name
        self.system_prompt = system_prompt
        self.stream_timeout = stream_timeout
        self.queue_size = queue_size
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, llm: BaseLLMClient, store: SessionStore) -> "ChatService":
        return cls(
            llm,
            LLMConfig(
                model=settings.llm.model,
                temperature=settings.llm.temperature,
                max_tokens=settings.llm.max_tokens,
                timeout_seconds=settings.llm.timeout_seconds,
            ),
            store,
            name=settings.agent.name,
            system_prompt=settings.agent.system_prompt,
            stream_timeout=settings.stream.timeout_seconds,
            queue_size=settings.stream.queue_size,
        )

    async def _prompt_messages(self, session_id: str, prompt: str) -> tuple[list[Message], list[Message]]:
        """Return (stored history + new user message, what to send to the model)."""
        history = await self.store.get(session_id)
        history.append(Message.user(prompt))
        outgoing = list(history)
        if self.system_prompt:
            outgoing.insert(0, Message.system(self.system_prompt))
        return history, outgoing

    async def chat(self, prompt: str, session_id: Optional[str] = None) -> AgentResponse:
        if not prompt or not prompt.strip():
            return AgentResponse.error("Prompt must not be blank", session_id=session_id)

        sid = session_id or uuid.uuid4().hex
        started = time.monotonic()
        try:
            history, outgoing = await self._prompt_messages(sid, prompt)
            response = await self.llm.generate(outgoing, self.config)
            reply = response.content or ""
            history.append(Message.assistant(reply))
            await self.store.save(sid, history)
        except (LLMError, SessionStoreError) as e:
            log.error("chat.failed", session_id=sid, error=str(e))
            return AgentResponse.error(f"Chat failed: {e}", session_id=sid)

        return AgentResponse.success(
            result=reply,
            session_id=sid,
            execution_time_ms=round((time.monotonic() - started) * 1000, 2),
        )

    async def chat_stream(self, prompt: str, session_id: Optional[str] = None) -> PushChannel:
        sid = session_id or uuid.uuid4().hex
        channel = PushChannel(sid, timeout_seconds=self.stream_timeout, queue_size=self.queue_size)

        if not prompt or not prompt.strip():
            await channel.send(make_error(sid, "Prompt must not be blank"))
            await channel.complete()
            return channel

        channel.start()
        task = asyncio.create_task(self._pump(sid, prompt, channel), name=f"chat-{sid}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return channel

    async def _pump(self, sid: str, prompt: str, channel: PushChannel) -> None:
        chunks: list[str] = []
        try:
            await channel.send(make_start(sid, self.name))
            history, outgoing = await self._prompt_messages(sid, prompt)
            async for delta in self.llm.stream(outgoing, self.config):
                if not channel.is_open:
                    break
                chunks.append(delta)
                await channel.send(make_delta(sid, delta))

            history.append(Message.assistant("".join(chunks)))
            await self.store.save(sid, history)

            if channel.is_open:
                await channel.send(make_done(sid, self.name, "FINISHED"))
                await channel.complete()

        except ChannelError as e:
            log.warning("chat.channel_error", session_id=sid, error=str(e))
            await channel.fail(e)

        except (LLMError, SessionStoreError) as e:
            log.error("chat.stream_failed", session_id=sid, error=str(e), chars=sum(map(len, chunks)))
            if channel.is_open:
                await channel.send(make_error(sid, f"Chat failed: {e}"))
                await channel.complete()

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=5.0)
