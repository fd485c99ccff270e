import asyncio
import os
import time

import pytest

import server
from conftest import VIDEO_URL, FakeProcess, FakeSpawner


async def collect(stream):
    chunks = []
    async for chunk in stream.iter_bytes():
        chunks.append(chunk)
    return chunks


def test_stream_yields_first_chunk_then_rest():
    process = FakeProcess(stdout=[b"one", b"two", b"three"])

    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, "18", spawn=FakeSpawner([process]))
        await stream.start()
        return await collect(stream)

    assert asyncio.run(scenario()) == [b"one", b"two", b"three"]
    assert not process.killed


def test_error_marker_before_first_byte_aborts_start():
    process = FakeProcess(stderr=[b"ERROR: unable to download video data: HTTP Error 403"], hang=True)

    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, "18", spawn=FakeSpawner([process]))
        await stream.start()

    with pytest.raises(server.StreamStartFailed, match="HTTP Error 403"):
        asyncio.run(scenario())
    assert process.killed


def test_empty_output_aborts_start():
    process = FakeProcess(returncode=1)

    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, None, spawn=FakeSpawner([process]))
        await stream.start()

    with pytest.raises(server.StreamStartFailed):
        asyncio.run(scenario())


def test_spawn_failure_is_reported():
    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, None, spawn=FakeSpawner([PermissionError(13, "Permission denied")]))
        await stream.start()

    with pytest.raises(server.SubprocessSpawnFailure, match="Failed to start download"):
        asyncio.run(scenario())


def test_mid_stream_failure_after_headers():
    process = FakeProcess(stdout=[b"a", b"b"], returncode=1)
    received = []

    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, "18", spawn=FakeSpawner([process]))
        await stream.start()
        async for chunk in stream.iter_bytes():
            received.append(chunk)

    with pytest.raises(server.MidStreamFailure):
        asyncio.run(scenario())
    assert received == [b"a", b"b"]


def test_client_disconnect_kills_process():
    process = FakeProcess(stdout=[b"first"], hang=True)
    sent = []

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, "18", spawn=FakeSpawner([process]))
        await stream.start()
        response = server.ProcessStreamResponse(stream, media_type="video/mp4")
        scope = {"type": "http", "method": "GET", "path": "/api/download", "headers": []}
        await asyncio.wait_for(response(scope, receive, send), timeout=5)

    asyncio.run(scenario())
    assert process.killed
    assert not any(m.get("more_body") is False for m in sent if m["type"] == "http.response.body")


def test_terminate_kills_before_awaiting():
    process = FakeProcess(stdout=[b"first"], hang=True)

    async def scenario():
        stream = server.DownloadStream(VIDEO_URL, "18", spawn=FakeSpawner([process]))
        await stream.start()
        pending = stream.terminate()
        task = asyncio.ensure_future(pending)
        await asyncio.sleep(0)
        killed_after_one_tick = process.killed
        await task
        return killed_after_one_tick

    assert asyncio.run(scenario()) is True


def test_sweep_removes_only_stale_files(tmp_path):
    now = time.time()
    stale = tmp_path / "old.part"
    fresh = tmp_path / "new.part"
    stale.write_bytes(b"x")
    fresh.write_bytes(b"y")
    os.utime(stale, (now - 7200, now - 7200))
    (tmp_path / "subdir").mkdir()

    removed = server.sweep_scratch_dir(str(tmp_path), max_age=3600, now=now)

    assert removed == ["old.part"]
    assert not stale.exists()
    assert fresh.exists()
    assert (tmp_path / "subdir").exists()


def test_sweep_tolerates_missing_directory(tmp_path):
    assert server.sweep_scratch_dir(str(tmp_path / "missing"), max_age=0) == []
