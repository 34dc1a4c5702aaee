"""Tests for cancellation tokens, the generation registry and debouncing."""

import asyncio

import pytest

from terramesh.context import (
    CancellationToken, Debouncer, GenerationRegistry, GenerationStatus,
    request_signature,
)
from terramesh.errors import GenerationCancelled


class TestCancellationToken:
    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(GenerationCancelled):
            token.raise_if_cancelled()

    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append("a"))
        token.cancel()
        token.cancel()
        assert calls == ["a"]

    def test_late_callback_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_failing_callback_does_not_block_others(self):
        token = CancellationToken()
        calls = []

        def boom():
            raise RuntimeError("boom")

        token.on_cancel(boom)
        token.on_cancel(lambda: calls.append("ok"))
        token.cancel()
        assert calls == ["ok"]


class TestGenerationRegistry:
    def test_new_start_cancels_previous_on_channel(self):
        registry = GenerationRegistry()
        first = registry.start("map")
        second = registry.start("map")

        assert first.token.cancelled
        assert first.status == GenerationStatus.cancelled
        assert not second.token.cancelled
        assert registry.active("map") is second

    def test_channels_are_independent(self):
        registry = GenerationRegistry()
        a = registry.start("a")
        registry.start("b")
        assert not a.token.cancelled

    def test_cancelled_result_is_discarded(self):
        registry = GenerationRegistry()
        first = registry.start("map")
        registry.start("map")
        assert first.publish("stale") is False
        assert first.result is None

    def test_publish_completes(self):
        context = GenerationRegistry().start()
        assert context.publish("mesh") is True
        assert context.status == GenerationStatus.completed
        assert context.progress == 100.0

    def test_oldest_entries_evicted(self):
        registry = GenerationRegistry(max_entries=2)
        contexts = [registry.start(f"ch{i}") for i in range(3)]

        assert len(registry) == 2
        assert contexts[0].id not in registry
        assert contexts[0].token.cancelled
        assert registry.active("ch0") is None
        assert registry.get(contexts[2].id) is contexts[2]

    def test_cancel_channel(self):
        registry = GenerationRegistry()
        context = registry.start("map")
        assert registry.cancel("map") is True
        assert registry.cancel("map") is False
        assert registry.cancel("nothing") is False
        assert context.status == GenerationStatus.cancelled

    def test_failed_after_cancel_stays_cancelled(self):
        context = GenerationRegistry().start()
        context.cancel()
        context.fail("late error")
        assert context.status == GenerationStatus.cancelled
        assert context.error is None

    def test_cancel_all_skips_finished(self):
        registry = GenerationRegistry()
        done = registry.start("a")
        done.publish("mesh")
        running = registry.start("b")

        assert registry.cancel_all() == 1
        assert running.status == GenerationStatus.cancelled
        assert done.status == GenerationStatus.completed

    def test_find_completed(self):
        registry = GenerationRegistry()
        done = registry.start("map", signature="abc")
        done.publish("mesh")
        registry.start("other", signature="abc")

        assert registry.find_completed("map", "abc") is done
        assert registry.find_completed("map", "xyz") is None
        assert registry.find_completed("other", "abc") is None

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            GenerationRegistry(max_entries=0)


class TestDebouncer:
    def test_only_last_trigger_runs(self):
        calls = []

        def make(value):
            async def run():
                calls.append(value)
                return value
            return run

        async def scenario():
            debouncer = Debouncer(delay=0.05)
            first = debouncer.trigger(make(1))
            debouncer.trigger(make(2))
            last = debouncer.trigger(make(3))
            result = await last
            await asyncio.sleep(0)
            return first, result

        first, result = asyncio.run(scenario())
        assert calls == [3]
        assert result == 3
        assert first.cancelled()

    def test_cancel(self):
        calls = []

        async def scenario():
            debouncer = Debouncer(delay=0.05)

            async def run():
                calls.append(1)

            debouncer.trigger(run)
            assert debouncer.pending
            debouncer.cancel()
            await asyncio.sleep(0.1)
            return debouncer.pending

        assert asyncio.run(scenario()) is False
        assert calls == []


class TestRequestSignature:
    def test_order_independent(self):
        a = request_signature({"x": 1, "y": [1, 2], "z": {"b": 1, "a": 2}})
        b = request_signature({"z": {"a": 2, "b": 1}, "y": [1, 2], "x": 1})
        assert a == b
        assert len(a) == 16

    def test_sensitive_to_values(self):
        assert request_signature({"x": 1}) != request_signature({"x": 2})
