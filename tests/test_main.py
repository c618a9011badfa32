"""Tests for application wiring and the idle sweeper."""

from __future__ import annotations

import asyncio
import contextlib
from unittest.mock import MagicMock

from fastapi import FastAPI

from identifyx.config import Settings
from identifyx.main import create_app, init_app_state, sweep_idle


def _app_with_manager(manager: MagicMock, **overrides: object) -> FastAPI:
    app = create_app()
    init_app_state(app, Settings(**overrides), model_manager=manager)
    return app


class TestSweepIdle:
    async def test_keeps_running_after_a_failed_pass(self) -> None:
        manager = MagicMock()
        calls = 0

        def flaky_unload() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("cache corrupted")

        manager.unload_idle_models.side_effect = flaky_unload
        app = _app_with_manager(manager, sweep_interval=0.01)

        sweeper = asyncio.create_task(sweep_idle(app))
        try:
            await asyncio.sleep(0.1)
            assert not sweeper.done()
            assert calls > 1
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            app.state.inference_pool.shutdown()

    async def test_cancel_after_failure_raises_cancelled(self) -> None:
        manager = MagicMock()
        manager.unload_idle_models.side_effect = RuntimeError("always broken")
        app = _app_with_manager(manager, sweep_interval=0.01)

        sweeper = asyncio.create_task(sweep_idle(app))
        await asyncio.sleep(0.05)
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

        assert sweeper.cancelled()
        assert manager.unload_idle_models.call_count >= 1
        app.state.inference_pool.shutdown()

    async def test_evicts_idle_sessions(self) -> None:
        manager = MagicMock()
        app = _app_with_manager(manager, sweep_interval=0.01, session_ttl=1)
        session = app.state.session_store.create()
        session.last_used -= 100

        sweeper = asyncio.create_task(sweep_idle(app))
        await asyncio.sleep(0.05)
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

        assert len(app.state.session_store) == 0
        manager.unload_idle_models.assert_called()
        app.state.inference_pool.shutdown()
