"""
Logging setup and background task bookkeeping.
"""
from __future__ import annotations

import asyncio

import pytest
import structlog
from structlog.testing import capture_logs

from auth_state.logging_config import configure_logging
from auth_state.tasks import BackgroundTasks


def test_configure_logging_installs_level_filter():
    configure_logging("WARNING", json=True, force=True)

    logger = structlog.get_logger("test")
    assert structlog.is_configured()
    # filtering bound loggers drop below-threshold calls without error
    logger.info("ignored_event")
    logger.warning("kept_event", user_id="u1")


@pytest.mark.anyio
async def test_failed_background_task_is_logged():
    tasks = BackgroundTasks()

    async def _boom():
        raise RuntimeError("boom")

    with capture_logs() as logs:
        tasks.spawn(_boom(), name="boom")
        await tasks.drain()

    assert len(tasks) == 0
    assert logs[0]["event"] == "background_task_failed"
    assert logs[0]["task"] == "boom"


@pytest.mark.anyio
async def test_cancel_all_stops_pending_tasks():
    tasks = BackgroundTasks()
    task = tasks.spawn(asyncio.sleep(60), name="sleeper")

    await tasks.cancel_all()

    assert task.cancelled()
    assert len(tasks) == 0
