from __future__ import annotations

import asyncio
import logging

import pytest

from peerlink.utils.tasks import spawn_background_task


@pytest.mark.asyncio()
async def test_background_task_error_reported(caplog) -> None:
    caplog.set_level(logging.ERROR)
    errors: list[BaseException] = []

    async def _fail() -> None:
        raise RuntimeError('oops')

    task = spawn_background_task(_fail, name='failing', on_error=errors.append)
    with pytest.raises(RuntimeError, match='oops'):
        await task
    await asyncio.sleep(0)

    assert len(errors) == 1
    assert isinstance(errors[0], RuntimeError)
    assert any('failing' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_background_task_success_and_cancel() -> None:
    errors: list[BaseException] = []
    results: list[int] = []

    async def _append(value: int) -> None:
        results.append(value)

    task = spawn_background_task(_append, 1, on_error=errors.append)
    await task

    async def _forever() -> None:
        await asyncio.Event().wait()

    task = spawn_background_task(_forever, on_error=errors.append)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)

    assert results == [1]
    assert errors == []
