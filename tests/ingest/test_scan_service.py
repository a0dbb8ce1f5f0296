from pathlib import Path

import pytest

from pixishelf_backend.features.ingest import CancellationToken, ScanState
from pixishelf_backend.shared import ErrorCode


@pytest.mark.asyncio
async def test_run_scan_without_configured_path(services) -> None:
    res = await services["scan"].run_scan()
    assert not res.ok
    assert res.code == ErrorCode.INVALID_INPUT


@pytest.mark.asyncio
async def test_run_scan_rejects_missing_directory(services, tmp_path: Path) -> None:
    res = await services["scan"].run_scan(str(tmp_path / "missing"))
    assert not res.ok
    assert res.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_run_scan_uses_stored_path_and_records_time(services, make_artwork, tmp_path: Path) -> None:
    library = tmp_path / "library"
    make_artwork(library, "123")
    saved = await services["settings"].set_scan_path(str(library))
    assert saved.ok

    events = []
    res = await services["scan"].run_scan(on_progress=events.append)
    assert res.ok, res.error
    assert res.data.state == ScanState.COMPLETE
    assert res.data.new_artworks == 1
    assert events and events[-1].phase == ScanState.COMPLETE
    assert await services["settings"].get_last_scan_time()

    status = services["scan"].status()
    assert set(status) == {"scanning", "state", "message", "progress", "last_result"}
    assert status["scanning"] is False
    assert status["state"] == "complete"
    assert status["last_result"]["new_artworks"] == 1


@pytest.mark.asyncio
async def test_start_scan_runs_in_background(services, make_artwork, tmp_path: Path) -> None:
    library = tmp_path / "library"
    make_artwork(library, "5", pages=1)
    queue = services["scan"].subscribe()

    started = await services["scan"].start_scan(str(library))
    assert started.ok
    assert started.data["started"] is True

    done = await services["scan"].wait()
    assert done is not None and done.ok
    assert done.data.new_images == 1
    assert not queue.empty()
    services["scan"].unsubscribe(queue)


@pytest.mark.asyncio
async def test_cancel_when_idle(services) -> None:
    res = services["scan"].cancel()
    assert res.ok
    assert res.data is False
    assert await services["scan"].wait() is None


@pytest.mark.asyncio
async def test_status_before_any_scan(services) -> None:
    status = services["scan"].status()
    assert status["scanning"] is False
    assert status["state"] == "idle"
    assert status["progress"] is None
    assert status["last_result"] is None


@pytest.mark.asyncio
async def test_failed_scan_does_not_record_time(services, tmp_path: Path) -> None:
    scan = services["scan"]
    res = await scan._execute(tmp_path / "gone", False, None, CancellationToken())
    assert res.ok
    assert res.data.state == ScanState.FAILED
    assert await services["settings"].get_last_scan_time() is None
