import asyncio
from unittest.mock import AsyncMock

import pytest

from src.core.exceptions import OperationCancelledError
from src.models.generation import GenerationOptions, GenerationRequest
from src.services.orchestration.deduplicator import Deduplicator, key_from_parts, normalize_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestNormalizeKey:
    def test_prompt_is_trimmed_and_lowercased(self) -> None:
        assert normalize_key("  A Cat  ") == normalize_key("a cat")

    def test_option_order_and_none_values_do_not_matter(self) -> None:
        assert normalize_key("x", {"b": 1, "a": 2}) == normalize_key("x", {"a": 2, "b": 1})
        assert normalize_key("x", {"seed": None}) == normalize_key("x", {})

    def test_different_options_give_different_keys(self) -> None:
        assert normalize_key("x", {"seed": 1}) != normalize_key("x", {"seed": 2})

    def test_request_key_ignores_alias_spelling(self) -> None:
        by_alias = GenerationRequest.model_validate({"prompt": "Cat", "options": {"numImages": 2}})
        by_name = GenerationRequest(prompt="cat ", options=GenerationOptions(num_images=2))
        assert key_from_parts(by_alias) == key_from_parts(by_name)


class TestGetOrRun:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_operation(self) -> None:
        """相同规范化请求并发到达，只执行一次，两个调用方拿到同一结果"""
        dedup: Deduplicator[dict] = Deduplicator()
        release = asyncio.Event()
        calls = 0

        async def operation() -> dict:
            nonlocal calls
            calls += 1
            await release.wait()
            return {"images": ["u1"]}

        first = asyncio.create_task(dedup.get_or_run("A Cat", operation))
        second = asyncio.create_task(dedup.get_or_run("  a cat ", operation))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        release.set()

        a, b = await asyncio.gather(first, second)
        assert calls == 1
        assert a is b
        assert dedup.stats()["joins"] == 1

    @pytest.mark.asyncio
    async def test_cache_hit_within_ttl(self) -> None:
        clock = FakeClock()
        dedup: Deduplicator[str] = Deduplicator(ttl_seconds=300, clock=clock)
        operation = AsyncMock(return_value="result")

        assert await dedup.get_or_run("cat", operation) == "result"
        clock.now += 299
        assert await dedup.get_or_run("cat", operation) == "result"

        assert operation.await_count == 1
        assert dedup.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_expired_entry_runs_again(self) -> None:
        clock = FakeClock()
        dedup: Deduplicator[str] = Deduplicator(ttl_seconds=300, clock=clock)
        operation = AsyncMock(side_effect=["first", "second"])

        await dedup.get_or_run("cat", operation)
        clock.now += 301
        assert await dedup.get_or_run("cat", operation) == "second"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_is_not_cached_and_slot_is_released(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        operation = AsyncMock(side_effect=[RuntimeError("boom"), "ok"])

        with pytest.raises(RuntimeError):
            await dedup.get_or_run("cat", operation)
        assert dedup.stats()["pending"] == 0
        assert dedup.stats()["entries"] == 0

        assert await dedup.get_or_run("cat", operation) == "ok"

    @pytest.mark.asyncio
    async def test_concurrent_waiters_share_failure(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        release = asyncio.Event()

        async def operation() -> str:
            await release.wait()
            raise RuntimeError("upstream down")

        tasks = [asyncio.create_task(dedup.get_or_run("cat", operation)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert dedup.stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_force_refresh_skips_cache(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        operation = AsyncMock(side_effect=["old", "new"])

        await dedup.get_or_run("cat", operation)
        assert await dedup.get_or_run("cat", operation, force_refresh=True) == "new"
        assert await dedup.get_or_run("cat", operation) == "new"

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted_when_full(self) -> None:
        dedup: Deduplicator[str] = Deduplicator(max_entries=2)

        for prompt in ("a", "b", "c"):
            await dedup.get_or_run(prompt, AsyncMock(return_value=prompt))

        operation = AsyncMock(return_value="a2")
        assert await dedup.get_or_run("a", operation) == "a2"
        assert operation.await_count == 1
        assert dedup.stats()["entries"] == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_one_waiter_cancel_does_not_affect_others(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        release = asyncio.Event()

        async def operation() -> str:
            await release.wait()
            return "done"

        leaver = asyncio.create_task(dedup.get_or_run("cat", operation))
        stayer = asyncio.create_task(dedup.get_or_run("cat", operation))
        await asyncio.sleep(0)

        leaver.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leaver

        release.set()
        assert await stayer == "done"

    @pytest.mark.asyncio
    async def test_last_waiter_cancel_cancels_operation(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        cancelled = asyncio.Event()

        async def operation() -> str:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return "late"

        task = asyncio.create_task(dedup.get_or_run("cat", operation))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(cancelled.wait(), timeout=1)
        await asyncio.sleep(0)
        assert dedup.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_first_caller_event_does_not_cancel_joined_caller(self) -> None:
        """发起方的 cancel_event 被设置后，已加入的调用方仍拿到结果"""
        dedup: Deduplicator[str] = Deduplicator()
        release = asyncio.Event()
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        first_event = asyncio.Event()
        second_event = asyncio.Event()
        first = asyncio.create_task(dedup.get_or_run("cat", operation, cancel_event=first_event))
        second = asyncio.create_task(dedup.get_or_run("cat", operation, cancel_event=second_event))
        await asyncio.sleep(0.01)

        first_event.set()
        with pytest.raises(OperationCancelledError):
            await first

        release.set()
        assert await second == "done"
        assert calls == 1
        assert dedup.stats()["joins"] == 1

    @pytest.mark.asyncio
    async def test_all_events_set_cancels_operation(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        cancelled = asyncio.Event()

        async def operation() -> str:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return "late"

        events = [asyncio.Event(), asyncio.Event()]
        tasks = [
            asyncio.create_task(dedup.get_or_run("cat", operation, cancel_event=event))
            for event in events
        ]
        await asyncio.sleep(0.01)

        events[0].set()
        await asyncio.sleep(0.01)
        assert not cancelled.is_set()

        events[1].set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, OperationCancelledError) for r in results)
        await asyncio.wait_for(cancelled.wait(), timeout=1)
        await asyncio.sleep(0)
        assert dedup.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_already_set_event_skips_operation(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()
        operation = AsyncMock(return_value="x")
        event = asyncio.Event()
        event.set()

        with pytest.raises(OperationCancelledError):
            await dedup.get_or_run("cat", operation, cancel_event=event)
        operation.assert_not_awaited()
        assert dedup.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_caller_after_full_cancel_starts_fresh(self) -> None:
        dedup: Deduplicator[str] = Deduplicator()

        async def slow() -> str:
            await asyncio.sleep(10)
            return "stale"

        event = asyncio.Event()
        task = asyncio.create_task(dedup.get_or_run("cat", slow, cancel_event=event))
        await asyncio.sleep(0.01)
        event.set()
        with pytest.raises(OperationCancelledError):
            await task

        assert await dedup.get_or_run("cat", AsyncMock(return_value="fresh")) == "fresh"


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_sweep_and_invalidate(self) -> None:
        clock = FakeClock()
        dedup: Deduplicator[str] = Deduplicator(ttl_seconds=10, clock=clock)
        await dedup.get_or_run("old", AsyncMock(return_value="1"))
        clock.now += 5
        await dedup.get_or_run("new", AsyncMock(return_value="2"))

        clock.now += 6
        assert await dedup.sweep() == 1
        assert await dedup.invalidate("new") is True
        assert await dedup.invalidate("new") is False

    @pytest.mark.asyncio
    async def test_dispose_clears_everything(self) -> None:
        dedup: Deduplicator[str] = Deduplicator(cleanup_interval_seconds=3600)
        dedup.start()
        await dedup.get_or_run("cat", AsyncMock(return_value="x"))

        await dedup.dispose()
        assert dedup.stats() == {"entries": 0, "pending": 0, "hits": 0, "misses": 0, "joins": 0}

    def test_invalid_arguments(self) -> None:
        with pytest.raises(ValueError):
            Deduplicator(ttl_seconds=0)
        with pytest.raises(ValueError):
            Deduplicator(max_entries=0)
