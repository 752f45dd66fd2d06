"""Tests for infrastructure/ support layer.

Covers:
- retry decorator: backoff, max attempts, exception filtering
- metrics: counters, gauge and exposition output
- log_config: root handler setup
"""

from __future__ import annotations

import logging

import pytest

from infrastructure import metrics
from infrastructure.log_config import configure_logging
from infrastructure.retry import with_retry


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return metrics._REGISTRY.get_sample_value(name, labels or {}) or 0.0


# ---------------------------------------------------------------------------
# Retry decorator
# ---------------------------------------------------------------------------


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_on_first_attempt(self) -> None:
        call_count = 0

        @with_retry(max_attempts=3, base_seconds=0.0)
        async def fn() -> str:
            nonlocal call_count
            call_count += 1
            return "ok"

        assert await fn() == "ok"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retries_on_failure_then_succeeds(self) -> None:
        call_count = 0

        @with_retry(max_attempts=3, base_seconds=0.0, exceptions=(ValueError,))
        async def fn() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("transient")
            return "ok"

        assert await fn() == "ok"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_raises_after_max_attempts(self) -> None:
        @with_retry(max_attempts=2, base_seconds=0.0, exceptions=(OSError,))
        async def fn() -> None:
            raise OSError("always fails")

        with pytest.raises(RuntimeError, match="failed after 2 attempts") as info:
            await fn()
        assert isinstance(info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_does_not_retry_unregistered_exception(self) -> None:
        call_count = 0

        @with_retry(max_attempts=3, base_seconds=0.0, exceptions=(ValueError,))
        async def fn() -> None:
            nonlocal call_count
            call_count += 1
            raise TypeError("not retried")

        with pytest.raises(TypeError):
            await fn()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_jitter_still_retries(self) -> None:
        call_count = 0

        @with_retry(max_attempts=2, base_seconds=0.001, jitter=True, exceptions=(OSError,))
        async def fn() -> str:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise OSError("busy")
            return "ok"

        assert await fn() == "ok"
        assert call_count == 2

    def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            with_retry(max_attempts=0)

    def test_preserves_function_name(self) -> None:
        @with_retry(max_attempts=2, base_seconds=0.0)
        async def my_function() -> None:
            pass

        assert my_function.__name__ == "my_function"


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    def test_record_mutation_by_labels(self) -> None:
        labels = {"operation": "put_track", "transport": "test"}
        before = _sample("mix_mutations_total", labels)
        metrics.record_mutation(operation="put_track", transport="test")
        assert _sample("mix_mutations_total", labels) == before + 1

    def test_record_compile_result_label(self) -> None:
        before_changed = _sample("mix_compiles_total", {"result": "changed"})
        before_unchanged = _sample("mix_compiles_total", {"result": "unchanged"})
        metrics.record_compile(changed=True, latency_seconds=0.001)
        metrics.record_compile(changed=False, latency_seconds=0.001)
        assert _sample("mix_compiles_total", {"result": "changed"}) == before_changed + 1
        assert _sample("mix_compiles_total", {"result": "unchanged"}) == before_unchanged + 1

    def test_record_broadcast_and_failure(self) -> None:
        before = _sample("mix_broadcasts_total", {"type": "play"})
        before_failures = _sample("mix_delivery_failures_total")
        metrics.record_broadcast("play")
        metrics.record_delivery_failure()
        assert _sample("mix_broadcasts_total", {"type": "play"}) == before + 1
        assert _sample("mix_delivery_failures_total") == before_failures + 1

    def test_subscriber_gauge(self) -> None:
        metrics.set_subscriber_count(3)
        assert _sample("mix_subscribers") == 3
        metrics.set_subscriber_count(0)
        assert _sample("mix_subscribers") == 0

    def test_get_metrics_response(self) -> None:
        metrics.record_mutation(operation="patch_state", transport="test")
        body, content_type = metrics.get_metrics_response()
        assert b"mix_mutations_total" in body
        assert content_type.startswith("text/plain")

    def test_latency_timer(self) -> None:
        import time

        with metrics.LatencyTimer() as t:
            time.sleep(0.01)

        assert t.elapsed >= 0.01
        assert t.elapsed < 1.0


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_single_root_handler(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(logging.DEBUG)
            configure_logging(logging.DEBUG)
            assert len(root.handlers) == 1
            assert root.level == logging.DEBUG
            assert logging.getLogger("uvicorn.access").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
