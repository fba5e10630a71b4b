"""Tests for the extraction thread pool."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import patch

import pytest

from facepay.config import Settings
from facepay.ml.inference import InferencePool


class TestInferencePool:
    async def test_runs_off_the_event_loop(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))  # type: ignore[call-arg]
        try:
            name = await pool.run(lambda: threading.current_thread().name)
        finally:
            pool.shutdown()
        assert name.startswith("face-embedding")

    async def test_queue_timeout(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))  # type: ignore[call-arg]
        release = threading.Event()
        try:
            busy = asyncio.ensure_future(pool.run(release.wait))
            await asyncio.sleep(0.01)
            with patch("facepay.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.01), pytest.raises(TimeoutError):
                await pool.run(lambda: None)
            assert pool.queue_depth == 0
            assert pool.active_count == 1
        finally:
            release.set()
            await busy
            pool.shutdown()
        assert pool.active_count == 0
