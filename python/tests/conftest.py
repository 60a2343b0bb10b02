"""Shared fixtures: a scriptable worker capability and fast engine settings."""

import asyncio
from typing import Callable, List, Optional, Sequence

import pytest

from agentcrew.config.settings import Settings
from agentcrew.interfaces.worker import ChatMessage, StreamChunk


class ScriptedWorker:
    """In-memory capability whose behaviour each test scripts.

    - ``chunks``: deltas streamed on a successful attempt
    - ``delay``: pause before each chunk
    - ``fail_times``: first N ``stream_chat`` calls raise ``error``
    - ``hang``: never produce anything (until cancelled)
    - ``chat_reply``: what ``chat`` returns (``None`` echoes the prompt)
    """

    def __init__(
        self,
        chunks: Sequence[str] = ("done",),
        delay: float = 0.0,
        fail_times: int = 0,
        error: Optional[Exception] = None,
        hang: bool = False,
        chat_reply: Optional[str] = "ok",
        chat_error: Optional[Exception] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.delay = delay
        self.fail_times = fail_times
        self.error = error or RuntimeError("scripted failure")
        self.hang = hang
        self.chat_reply = chat_reply
        self.chat_error = chat_error
        self.stream_calls = 0
        self.chat_calls: List[List[ChatMessage]] = []
        self.active = 0
        self.max_active = 0

    async def stream_chat(self, messages: List[ChatMessage]):
        self.stream_calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.stream_calls <= self.fail_times:
                raise self.error
            if self.hang:
                await asyncio.Event().wait()
            for chunk in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield StreamChunk(content=chunk)
            yield StreamChunk(done=True)
        finally:
            self.active -= 1

    async def chat(self, messages: List[ChatMessage]) -> str:
        self.chat_calls.append(list(messages))
        if self.chat_error is not None:
            raise self.chat_error
        if self.chat_reply is None:
            return messages[-1].content
        return self.chat_reply


class SharedCounter:
    """Tracks concurrent streams across many ScriptedWorkers."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    def wrap(self, worker: ScriptedWorker) -> ScriptedWorker:
        original = worker.stream_chat
        counter = self

        async def stream_chat(messages):
            counter.active += 1
            counter.max_active = max(counter.max_active, counter.active)
            try:
                async for chunk in original(messages):
                    yield chunk
            finally:
                counter.active -= 1

        worker.stream_chat = stream_chat
        return worker


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll *predicate* until it holds; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


def make_settings(**overrides) -> Settings:
    """Settings tuned for tests: tiny delays, no .env lookup."""
    values = dict(
        max_concurrency=3,
        task_timeout_s=5.0,
        poll_interval_s=0.01,
        executor_max_retries=0,
        executor_retry_delay_s=0.0,
        stream_update_interval_s=0.0,
        auto_retry_delay_s=0.01,
        escalation_timeout_s=60.0,
        auto_reply_delay_s=0.01,
        session_purge_delay_s=0.05,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()
