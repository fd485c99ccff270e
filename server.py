"""FastAPI backend for the video downloader.

This service exposes three endpoints:
- POST /api/video-info : returns title, thumbnail and muxed formats for a URL
- GET  /api/download   : streams the selected format straight from yt-dlp's stdout
- GET  /api/health     : liveness probe

Metadata is resolved by running the yt-dlp binary once per player-client
profile until one of them answers. Downloads never touch the disk: the bytes
yt-dlp writes to stdout are forwarded to the HTTP client as they arrive.

Run with:
    uvicorn server:app --host 0.0.0.0 --port 3000
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Sequence
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from yt_dlp.version import __version__ as YT_DLP_VERSION

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("uvicorn.error")

YT_DLP_BIN = os.getenv("YT_DLP_BIN", "yt-dlp")
CHUNK_SIZE = 1024 * 256
MIN_INFO_BUFFER = 10 * 1024 * 1024
INFO_MAX_BUFFER = max(int(os.getenv("INFO_MAX_BUFFER", str(MIN_INFO_BUFFER)) or MIN_INFO_BUFFER), MIN_INFO_BUFFER)

SCRATCH_DIR = os.getenv("SCRATCH_DIR") or os.path.join(os.path.dirname(os.path.abspath(__file__)), "downloads")
SCRATCH_MAX_AGE = max(int(os.getenv("SCRATCH_MAX_AGE", "3600") or "3600"), 0)
SCRATCH_SWEEP_INTERVAL = max(int(os.getenv("SCRATCH_SWEEP_INTERVAL", "3600") or "3600"), 1)

os.makedirs(SCRATCH_DIR, exist_ok=True)

MAX_FORMATS = 10
MAX_FILENAME_LENGTH = 200
DOWNLOAD_EXTENSION = "mp4"
DEFAULT_FORMAT_SELECTOR = "best[ext=mp4]"

PROFILE_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
YOUTUBE_REFERER = "https://www.youtube.com/"

URL_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"^(https?://)?(www\.)?youtube\.com/watch\?v=",
        r"^(https?://)?(www\.)?youtu\.be/",
        r"^(https?://)?(www\.)?youtube\.com/embed/",
        r"^(https?://)?(www\.)?youtube\.com/shorts/",
    )
)
ERROR_MARKER = re.compile(r"error", re.IGNORECASE)
ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')

EXHAUSTED_MESSAGE = (
    "Failed to fetch video info. YouTube may be blocking automated requests. "
    "This video may require authentication or may be restricted. "
    "Please try a different video or try again later."
)
BOT_CHECK_MESSAGE = (
    "YouTube is blocking automated requests for this video. This may be due to:\n"
    "1. The video requires authentication\n"
    "2. YouTube's bot detection is active\n"
    "3. The video may be restricted\n\n"
    "Please try:\n"
    "- A different video\n"
    "- Waiting a few minutes and trying again\n"
    "- Checking if the video is publicly accessible"
)
DOWNLOAD_FAILED_MESSAGE = "Download failed. Please try a different video."


class ExtractionFailed(Exception):
    """A single yt-dlp metadata invocation did not produce usable JSON."""

    def __init__(self, strategy: str, cause: str):
        super().__init__(f"[{strategy}] {cause}")
        self.strategy = strategy
        self.cause = cause


class AllStrategiesExhausted(Exception):
    """Every player-client profile, including the default one, failed."""

    def __init__(self, last_cause: str, failures: Optional[List[ExtractionFailed]] = None):
        super().__init__(describe_exhaustion(last_cause))
        self.last_cause = last_cause
        self.failures = failures or []


class SubprocessSpawnFailure(Exception):
    pass


class StreamStartFailed(Exception):
    pass


class MidStreamFailure(Exception):
    pass


def describe_exhaustion(last_cause: str) -> str:
    """Turn the last yt-dlp complaint into something a user can act on."""
    if "Sign in to confirm" in last_cause or re.search(r"\bbot\b", last_cause, re.IGNORECASE):
        return BOT_CHECK_MESSAGE
    return EXHAUSTED_MESSAGE


def is_valid_video_url(url: str) -> bool:
    return any(pattern.match(url) for pattern in URL_PATTERNS)


def require_url(url: Optional[str]) -> str:
    """Reject missing or foreign URLs before any subprocess is spawned."""
    if not url:
        raise HTTPException(status_code=400, detail="URL is required")
    if not is_valid_video_url(url):
        raise HTTPException(status_code=400, detail="Invalid YouTube URL")
    return url


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractionStrategy:
    """A client-impersonation profile handed to yt-dlp."""

    name: str
    player_client: Optional[str]
    user_agent: str = PROFILE_USER_AGENT
    referer: str = YOUTUBE_REFERER

    def impersonation_args(self) -> List[str]:
        args: List[str] = []
        if self.player_client:
            args.extend(["--extractor-args", f"youtube:player_client={self.player_client}"])
        args.extend(["--user-agent", self.user_agent, "--referer", self.referer])
        return args


# Mobile clients first: they trip the upstream bot check far less often.
STRATEGIES = tuple(
    ExtractionStrategy(name=client, player_client=client)
    for client in ("android", "ios", "tv_embedded", "web", "mweb")
)
DEFAULT_STRATEGY = ExtractionStrategy(name="default", player_client=None, user_agent=BROWSER_USER_AGENT)
STREAM_STRATEGY = STRATEGIES[0]

Invoker = Callable[[str, ExtractionStrategy], Awaitable[Dict[str, Any]]]


def build_info_command(url: str, strategy: ExtractionStrategy) -> List[str]:
    """Argument vector for a metadata-only yt-dlp run."""
    return [
        YT_DLP_BIN,
        "--dump-json",
        "--no-playlist",
        *strategy.impersonation_args(),
        "--no-warnings",
        "--quiet",
        "--",
        url,
    ]


def _kill(process: Any) -> bool:
    if process.returncode is not None:
        return False
    try:
        process.kill()
    except ProcessLookupError:
        return False
    return True


class _OutputTooLarge(Exception):
    pass


async def _read_bounded(stream: Any, limit: int) -> bytes:
    buffer = bytearray()
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            return bytes(buffer)
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise _OutputTooLarge()


async def run_extraction(url: str, strategy: ExtractionStrategy) -> Dict[str, Any]:
    """Run one ``--dump-json`` invocation and return the parsed video record.

    Raises ExtractionFailed for every failure mode so the caller can move on
    to the next profile.
    """
    command = build_info_command(url, strategy)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=SCRATCH_DIR,
        )
    except OSError as exc:
        raise ExtractionFailed(strategy.name, f"could not start {YT_DLP_BIN}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.gather(
            _read_bounded(process.stdout, INFO_MAX_BUFFER),
            process.stderr.read(),
        )
    except _OutputTooLarge:
        _kill(process)
        await process.wait()
        raise ExtractionFailed(strategy.name, f"metadata exceeded {INFO_MAX_BUFFER} bytes")

    returncode = await process.wait()
    if returncode != 0:
        cause = stderr.decode("utf-8", "ignore").strip() or f"yt-dlp exited with code {returncode}"
        raise ExtractionFailed(strategy.name, cause)

    try:
        info = json.loads(stdout)
    except ValueError as exc:
        raise ExtractionFailed(strategy.name, f"malformed JSON output: {exc}") from exc
    if not isinstance(info, dict):
        raise ExtractionFailed(strategy.name, "expected a JSON object")
    return info


async def resolve_video_info(
    url: str,
    invoke: Optional[Invoker] = None,
    strategies: Sequence[ExtractionStrategy] = STRATEGIES,
    fallback: ExtractionStrategy = DEFAULT_STRATEGY,
) -> Dict[str, Any]:
    """Try each profile in order and return the first record obtained.

    Attempts are strictly sequential and no profile is retried. When the
    named profiles and the default one all fail, the individual causes are
    logged and a single AllStrategiesExhausted is raised.
    """
    invoke = invoke or run_extraction
    failures: List[ExtractionFailed] = []
    for strategy in (*strategies, fallback):
        logger.info("Trying with player_client=%s...", strategy.name)
        try:
            info = await invoke(url, strategy)
        except ExtractionFailed as exc:
            failures.append(exc)
            logger.info("Failed with player_client=%s, trying next...", strategy.name)
            continue
        logger.info("Success with player_client=%s", strategy.name)
        return info

    for failure in failures:
        logger.warning("yt-dlp [%s] failed: %s", failure.strategy, failure.cause)
    last_cause = failures[-1].cause if failures else ""
    raise AllStrategiesExhausted(last_cause, failures)


# ---------------------------------------------------------------------------
# Formats and summary
# ---------------------------------------------------------------------------


def has_codec(value: Any) -> bool:
    return bool(value) and value != "none"


def quality_label(fmt: Dict[str, Any]) -> str:
    height = fmt.get("height")
    if height:
        return f"{height}p"
    return str(fmt.get("format_note") or fmt.get("quality") or "unknown")


def quality_rank(label: str) -> int:
    match = re.search(r"\d+", label)
    return int(match.group()) if match else 0


def format_size(num_bytes: Optional[float]) -> str:
    if not num_bytes:
        return "Unknown"
    return f"{num_bytes / (1024 * 1024):.2f} MB"


def normalize_formats(raw_formats: Optional[Sequence[Any]], limit: int = MAX_FORMATS) -> List[Dict[str, Any]]:
    """Reduce yt-dlp's format list to muxed, deduplicated, best-first entries.

    Only formats carrying both a video and an audio codec survive. Entries are
    keyed on (quality label, container); the first one seen for a key wins.
    The result is sorted by the number in the quality label, highest first,
    with labels lacking digits ranked as 0, and cut to ``limit`` entries.
    """
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for fmt in raw_formats or []:
        if not isinstance(fmt, dict):
            continue
        if not (has_codec(fmt.get("vcodec")) and has_codec(fmt.get("acodec"))):
            continue
        quality = quality_label(fmt)
        container = fmt.get("ext") or "mp4"
        key = (quality, container)
        if key in by_key:
            continue
        format_id = fmt.get("format_id")
        by_key[key] = {
            "format_id": str(format_id) if format_id is not None else None,
            "quality": quality,
            "container": container,
            "size": format_size(fmt.get("filesize") or fmt.get("filesize_approx")),
        }

    # sorted() is stable with reverse=True, so equal ranks keep first-seen order
    ordered = sorted(by_key.values(), key=lambda entry: quality_rank(entry["quality"]), reverse=True)
    return ordered[:limit]


def format_duration(seconds: Optional[float]) -> str:
    if not seconds:
        return "Unknown"
    total = int(seconds)
    hours, minutes, secs = total // 3600, (total % 3600) // 60, total % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def pick_thumbnail(info: Dict[str, Any]) -> str:
    if info.get("thumbnail"):
        return info["thumbnail"]
    thumbnails = info.get("thumbnails")
    if isinstance(thumbnails, list) and thumbnails:
        last = thumbnails[-1]
        if isinstance(last, dict):
            return last.get("url") or ""
    return ""


def build_video_summary(info: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a raw yt-dlp record into the /api/video-info payload."""
    return {
        "title": info.get("title") or "Unknown",
        "thumbnail": pick_thumbnail(info),
        "duration": format_duration(info.get("duration")),
        "viewCount": info.get("view_count") or 0,
        "author": info.get("uploader") or info.get("channel") or "Unknown",
        "formats": normalize_formats(info.get("formats")),
    }


# ---------------------------------------------------------------------------
# Download streaming
# ---------------------------------------------------------------------------


def sanitize_filename(title: str) -> str:
    """Strip characters that are illegal in filenames and cap the length."""
    safe_title = ILLEGAL_FILENAME_CHARS.sub("", title)[:MAX_FILENAME_LENGTH].strip()
    return safe_title or "video"


def content_disposition(filename: str) -> str:
    """Build an attachment header that survives latin-1 header encoding."""
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "ignore").decode("ascii").strip() or f"video.{DOWNLOAD_EXTENSION}"
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
    return f'attachment; filename="{filename}"'


def build_download_command(
    url: str,
    format_id: Optional[str] = None,
    strategy: ExtractionStrategy = STREAM_STRATEGY,
) -> List[str]:
    """Argument vector for a yt-dlp run that writes media bytes to stdout."""
    return [
        YT_DLP_BIN,
        "-f",
        format_id or DEFAULT_FORMAT_SELECTOR,
        "-o",
        "-",
        "--no-playlist",
        "--no-warnings",
        "--quiet",
        "--no-progress",
        *strategy.impersonation_args(),
        "--",
        url,
    ]


class DownloadStream:
    """Supervises one yt-dlp process whose stdout becomes a response body.

    ``start()`` returns once the first chunk is available, which is the last
    point where a failure can still be reported as JSON. From then on the
    body is pulled chunk by chunk; a slow client stalls the pipe instead of
    growing a buffer.
    """

    def __init__(self, url: str, format_id: Optional[str] = None, spawn: Optional[Callable[..., Awaitable[Any]]] = None):
        self.command = build_download_command(url, format_id)
        self.process: Any = None
        self.stderr_lines: Deque[str] = deque(maxlen=20)
        self._spawn = spawn
        self._error_seen: Optional[asyncio.Event] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._first_chunk = b""

    @property
    def error_seen(self) -> bool:
        return self._error_seen is not None and self._error_seen.is_set()

    async def start(self) -> None:
        spawn = self._spawn or asyncio.create_subprocess_exec
        self._error_seen = asyncio.Event()
        try:
            self.process = await spawn(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=SCRATCH_DIR,
            )
        except OSError as exc:
            logger.error("Download process error: %s", exc)
            raise SubprocessSpawnFailure(f"Failed to start download: {exc}") from exc

        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        read_task = asyncio.ensure_future(self.process.stdout.read(CHUNK_SIZE))
        error_task = asyncio.ensure_future(self._error_seen.wait())
        try:
            await asyncio.wait({read_task, error_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read_task.cancel()
            error_task.cancel()
            await self.terminate()
            raise
        error_task.cancel()

        if not self.error_seen and read_task.done() and read_task.result():
            self._first_chunk = read_task.result()
            return

        read_task.cancel()
        await self.terminate()
        detail = "\n".join(self.stderr_lines) or f"yt-dlp exited with code {self.process.returncode}"
        logger.error("Download failed before any bytes were sent: %s", detail)
        raise StreamStartFailed(detail)

    async def _drain_stderr(self) -> None:
        while True:
            try:
                line = await self.process.stderr.readline()
            except ValueError:
                # over-long line; the reader already discarded it
                continue
            if not line:
                return
            text = line.decode("utf-8", "ignore").strip()
            if not text:
                continue
            self.stderr_lines.append(text)
            if ERROR_MARKER.search(text):
                logger.error("yt-dlp stderr: %s", text)
                self._error_seen.set()

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._first_chunk:
            chunk, self._first_chunk = self._first_chunk, b""
            yield chunk
        while True:
            chunk = await self.process.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

        returncode = await self.process.wait()
        if self._stderr_task is not None:
            await asyncio.wait({self._stderr_task}, timeout=1)
        if returncode != 0:
            detail = "\n".join(self.stderr_lines) or f"yt-dlp exited with code {returncode}"
            logger.error("Download stream ended short: %s", detail)
            raise MidStreamFailure(detail)

    async def terminate(self) -> None:
        """Kill the process if it is still running, then reap it."""
        process = self.process
        if process is None:
            return
        if _kill(process):
            logger.info("Terminated yt-dlp (pid %s)", getattr(process, "pid", None))
        await process.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()


class ProcessStreamResponse(StreamingResponse):
    """StreamingResponse that always reaps its yt-dlp process.

    Whether the body finishes, the client disconnects or the request task is
    cancelled, the process is killed before the ASGI call returns.
    """

    def __init__(self, stream: DownloadStream, **kwargs: Any):
        super().__init__(stream.iter_bytes(), **kwargs)
        self.stream = stream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.terminate()


# ---------------------------------------------------------------------------
# Scratch directory
# ---------------------------------------------------------------------------


def sweep_scratch_dir(directory: str = SCRATCH_DIR, max_age: float = SCRATCH_MAX_AGE, now: Optional[float] = None) -> List[str]:
    """Delete regular files older than ``max_age`` seconds; return their names."""
    now = time.time() if now is None else now
    removed: List[str] = []
    try:
        entries = list(os.scandir(directory))
    except OSError as exc:
        logger.warning("Cannot list scratch directory %s: %s", directory, exc)
        return removed

    for entry in entries:
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
            if now - entry.stat(follow_symlinks=False).st_mtime > max_age:
                os.remove(entry.path)
                removed.append(entry.name)
        except OSError as exc:
            logger.debug("Could not sweep %s: %s", entry.path, exc)
    return removed


async def _sweep_periodically() -> None:
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(SCRATCH_SWEEP_INTERVAL)
        removed = await loop.run_in_executor(None, sweep_scratch_dir)
        if removed:
            logger.info("Swept %d stale file(s) from %s", len(removed), SCRATCH_DIR)


# ---------------------------------------------------------------------------
# HTTP layer
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(SCRATCH_DIR, exist_ok=True)
    logger.info("Using yt-dlp %s (%s)", YT_DLP_VERSION, YT_DLP_BIN)
    logger.info("Scratch directory: %s", SCRATCH_DIR)
    sweeper = asyncio.ensure_future(_sweep_periodically())
    yield
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass


app = FastAPI(title="Video Downloader API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class VideoInfoRequest(BaseModel):
    url: Optional[str] = None


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/api/health")
async def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/video-info")
async def video_info(payload: VideoInfoRequest) -> Dict[str, Any]:
    """Return title, thumbnail and the muxed formats offered for a URL."""
    url = require_url(payload.url)
    try:
        info = await resolve_video_info(url)
    except AllStrategiesExhausted as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return build_video_summary(info)


@app.get("/api/download")
async def download(
    url: Optional[str] = Query(None, description="Video URL to download"),
    format_id: Optional[str] = Query(None, description="yt-dlp format identifier"),
):
    """
    Stream the selected format back to the client.

    - metadata is resolved again only to name the file
    - yt-dlp runs as a subprocess writing media bytes to stdout
    - failures before the first byte become a JSON 500; later ones cut the connection
    """
    url = require_url(url)
    try:
        info = await resolve_video_info(url)
    except AllStrategiesExhausted as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    # Always .mp4, even when the chosen format is webm.
    filename = f"{sanitize_filename(str(info.get('title') or 'video'))}.{DOWNLOAD_EXTENSION}"

    stream = DownloadStream(url, format_id or None)
    try:
        await stream.start()
    except SubprocessSpawnFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    except StreamStartFailed:
        raise HTTPException(status_code=500, detail=DOWNLOAD_FAILED_MESSAGE)

    headers = {
        "Content-Disposition": content_disposition(filename),
        "Accept-Ranges": "bytes",
    }
    return ProcessStreamResponse(stream, media_type="video/mp4", headers=headers)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")), reload=False)
