import asyncio
import json

import pytest


VIDEO_URL = "https://www.youtube.com/watch?v=abc123"


class FakeStream:
    """Stand-in for an asyncio StreamReader fed from a list of chunks."""

    def __init__(self, chunks=(), hang=False):
        self._chunks = list(chunks)
        self._hang = hang
        self._closed = False

    def close(self):
        self._closed = True

    async def _wait_for_close(self):
        while self._hang and not self._closed:
            await asyncio.sleep(0.01)

    async def read(self, n=-1):
        if n < 0:
            data = b"".join(self._chunks)
            self._chunks.clear()
            return data
        if self._chunks:
            return self._chunks.pop(0)
        await self._wait_for_close()
        return b""

    async def readline(self):
        if self._chunks:
            return self._chunks.pop(0) + b"\n"
        return b""


class FakeProcess:
    """Records kill() so tests can check the process was cleaned up."""

    def __init__(self, stdout=(), stderr=(), returncode=0, hang=False):
        self.stdout = FakeStream(stdout, hang=hang)
        self.stderr = FakeStream(stderr)
        self.pid = 4242
        self.returncode = None
        self.killed = False
        self._exit_code = returncode
        self._hang = hang

    def kill(self):
        self.killed = True
        self.returncode = -9
        self.stdout.close()
        self.stderr.close()

    async def wait(self):
        while self._hang and not self.killed:
            await asyncio.sleep(0.01)
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode


class FakeSpawner:
    """Replacement for asyncio.create_subprocess_exec handing out queued processes."""

    def __init__(self, processes=()):
        self.processes = list(processes)
        self.calls = []
        self.kwargs = []

    def queue(self, *processes):
        self.processes.extend(processes)

    async def __call__(self, *argv, **kwargs):
        self.calls.append(list(argv))
        self.kwargs.append(kwargs)
        if not self.processes:
            raise AssertionError(f"unexpected subprocess: {argv}")
        process = self.processes.pop(0)
        if isinstance(process, BaseException):
            raise process
        return process


def info_process(info, returncode=0):
    return FakeProcess(stdout=[json.dumps(info).encode()], returncode=returncode)


def failing_process(message="ERROR: [youtube] abc123: Video unavailable", returncode=1):
    return FakeProcess(stderr=[message.encode()], returncode=returncode)


@pytest.fixture
def spawner(monkeypatch):
    fake = FakeSpawner()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake)
    return fake


@pytest.fixture
def sample_info():
    return {
        "id": "abc123",
        "title": "Sample: clip / part 1",
        "thumbnail": "https://i.ytimg.com/vi/abc123/hqdefault.jpg",
        "duration": 3725,
        "view_count": 1500,
        "uploader": "Uploader",
        "formats": [
            {"format_id": "18", "vcodec": "avc1.42001E", "acodec": "mp4a.40.2", "height": 720, "ext": "webm", "filesize": 5 * 1024 * 1024},
            {"format_id": "137", "vcodec": "avc1.640028", "acodec": "none", "height": 1080, "ext": "mp4"},
            {"format_id": "22", "vcodec": "avc1.64001F", "acodec": "mp4a.40.2", "height": 1080, "ext": "mp4", "filesize_approx": 1536 * 1024},
            {"format_id": "140", "vcodec": "none", "acodec": "mp4a.40.2", "ext": "m4a"},
        ],
    }
