import asyncio

import pytest
from conftest import FakeInjector

from livetype import TypingTask


class RaisingInjector(FakeInjector):
    async def type_text_live(self, text):
        raise OSError("ydotool socket not found")


@pytest.fixture
async def run_typing():
    tasks = []

    def start(injector):
        focus_calls = []

        async def restore_focus():
            focus_calls.append(len(injector.typed))

        typing = TypingTask(injector, restore_focus)
        typing.focus_calls = focus_calls
        tasks.append(asyncio.create_task(typing.run()))
        return typing

    yield start
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class TestTypingTask:
    async def test_types_only_new_text_in_order(self, run_typing):
        injector = FakeInjector(delay=0.01)
        typing = run_typing(injector)
        typing.queue_apply("hello")
        typing.queue_apply("hello world")
        typing.queue_apply("hello world again")
        await typing.drain()
        assert injector.typed == ["hello", " world", " again"]
        assert typing.live_typed == "hello world again"

    async def test_failed_injection_does_not_advance(self, run_typing):
        injector = FakeInjector(type_results=[True, False, True])
        typing = run_typing(injector)
        typing.queue_apply("hello")
        typing.queue_apply("hello world")
        await typing.drain()
        assert typing.live_typed == "hello"

        typing.queue_apply("hello world again")
        await typing.drain()
        assert injector.typed == ["hello", " world again"]
        assert typing.live_typed == "hello world again"

    async def test_injection_error_counts_as_failure(self, run_typing):
        typing = run_typing(RaisingInjector())
        typing.queue_apply("hello")
        await typing.drain()
        assert typing.live_typed == ""

    async def test_rewrite_only_moves_bookkeeping(self, run_typing):
        injector = FakeInjector()
        typing = run_typing(injector)
        typing.queue_apply("foo bar")
        typing.queue_apply("baz qux")
        await typing.drain()
        assert injector.typed == ["foo bar"]
        assert typing.live_typed == "baz qux"

    async def test_focus_requested_before_typing(self, run_typing):
        injector = FakeInjector()
        typing = run_typing(injector)
        typing.queue_apply("hello")
        typing.queue_apply("hello")
        await typing.drain()
        assert typing.focus_calls == [0]

    async def test_empty_text_is_not_queued(self, run_typing):
        injector = FakeInjector()
        typing = run_typing(injector)
        typing.queue_apply("  ")
        await typing.drain()
        assert injector.typed == []

    async def test_cancelled_worker_releases_drain(self):
        injector = FakeInjector(delay=1)
        typing = TypingTask(injector, lambda: asyncio.sleep(0))
        worker = asyncio.create_task(typing.run())
        typing.queue_apply("hello")
        typing.queue_apply("hello world")
        await asyncio.sleep(0.01)
        worker.cancel()
        await asyncio.wait_for(typing.drain(), timeout=1)
        assert injector.typed == []
