"""
Movie Server — LAN media streaming (movie_server.py)
Serves files from MOVIE_DIR over HTTP with single byte-range support and prints
a live throughput readout (MB/s and an estimated fps) while streaming.

Run:
    python movie_server.py

Optional query params for the fps estimate: ?bitrate=8000000&fps=60
"""
import sys
import os
import stat
import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Optional, NamedTuple, Tuple
from aiohttp import web

DEFAULT_PORT = 8000
MOVIE_DIR = os.environ.get("MOVIE_DIR", os.path.expanduser("~/Movies"))
CHUNK_SIZE = 64 * 1024  # 64 KB
SAMPLE_INTERVAL = 0.45  # seconds between console samples
DEFAULT_BITRATE = 8_000_000  # bits/sec, only used for the fps estimate
DEFAULT_FPS = 60
MIB = 1024 * 1024

END = b""

MEDIA_ROOT = web.AppKey("media_root", str)

# First match wins
MIME_TYPES = (
    (".mp4", "video/mp4"),
    (".m3u8", "application/x-mpegURL"),
    (".ts", "video/mp2t"),
    (".html", "text/html; charset=utf-8"),
    (".js", "application/javascript"),
    (".css", "text/css"),
    (".jpg", "image/jpeg"),
    (".jpeg", "image/jpeg"),
    (".png", "image/png"),
    (".gif", "image/gif"),
    (".vtt", "text/vtt; charset=utf-8"),
    (".srt", "application/x-subrip"),
)
DEFAULT_MIME = "application/octet-stream"


class RangeNotSatisfiable(ValueError):
    pass


class ByteRange(NamedTuple):
    start: int
    end: int  # inclusive


def _parse_decimal(text: str) -> int:
    if not text or not (text.isascii() and text.isdigit()):
        raise RangeNotSatisfiable(f"bad range bound: {text!r}")
    return int(text)


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Parse a single ``bytes=`` range against a file of ``size`` bytes.

    Returns None when there is no usable range (missing header, other units,
    multiple ranges) so the whole file is served. Raises RangeNotSatisfiable
    when the header is a bytes range that is malformed or out of bounds.
    """
    if not header:
        return None
    header = header.strip()
    if not header.startswith("bytes="):
        return None
    ranges = header[len("bytes="):].strip()
    if "," in ranges or "-" not in ranges:
        return None
    first, last = (part.strip() for part in ranges.split("-", 1))
    if not first:
        # suffix syntax "-N" requests the last N bytes
        suffix = _parse_decimal(last)
        start = 0 if suffix >= size else size - suffix
        end = size - 1
    else:
        start = _parse_decimal(first)
        end = _parse_decimal(last) if last else size - 1
    end = min(end, size - 1)
    if start > end or start >= size:
        raise RangeNotSatisfiable(f"bytes={ranges} of {size}")
    return ByteRange(start, end)


def guess_mime(path: str) -> str:
    for suffix, mime in MIME_TYPES:
        if path.endswith(suffix):
            return mime
    return DEFAULT_MIME


def resolve_media_path(root: str, url_path: str) -> Optional[str]:
    # Protect against path traversal
    if ".." in url_path or "\x00" in url_path:
        return None
    base = os.path.normpath(os.path.abspath(root))
    path = os.path.normpath(base + url_path)
    if path != base and not path.startswith(base.rstrip(os.sep) + os.sep):
        return None
    return path


def _parse_uint(value: Optional[str], default: int) -> int:
    if value is None or not (value.isascii() and value.isdigit()):
        return default
    return int(value)


def env_port(environ=os.environ) -> int:
    return _parse_uint(environ.get("MOVIE_SERVER_PORT"), DEFAULT_PORT)


PORT = env_port()


def parse_estimation_params(query) -> Tuple[int, int]:
    bitrate = _parse_uint(query.get("bitrate"), DEFAULT_BITRATE)
    fps = _parse_uint(query.get("fps"), DEFAULT_FPS)
    return bitrate, fps


@dataclass(frozen=True)
class FileRequest:
    path: str
    size: int
    start: int
    end: int  # inclusive, -1 for an empty file
    partial: bool = False
    bitrate: int = DEFAULT_BITRATE
    fps: int = DEFAULT_FPS
    mime: str = DEFAULT_MIME

    @property
    def content_length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.size}"


class WindowReader:
    """Pull-based reader over ``length`` bytes of a file starting at ``base_offset``.

    Every read seeks to the absolute position, so the caller owns the cursor.
    """

    def __init__(self, fileobj, base_offset: int, length: int):
        self._file = fileobj
        self.base_offset = base_offset
        self.length = length
        self._lock = threading.Lock()
        self._ended = False

    @classmethod
    def open(cls, path: str, base_offset: int, length: int) -> "WindowReader":
        return cls(open(path, "rb"), base_offset, length)

    @property
    def closed(self) -> bool:
        return self._file is None

    def read(self, pos: int, max_bytes: int) -> bytes:
        with self._lock:
            if self._ended or self._file is None:
                return END
            if pos >= self.length:
                self._ended = True
                return END
            want = min(max_bytes, self.length - pos)
            try:
                self._file.seek(self.base_offset + pos)
                data = self._file.read(want)
            except (OSError, ValueError):
                data = END
            if not data:
                # EOF or error
                self._ended = True
                return END
            return data

    def close(self):
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


def format_sample(nbytes: int, elapsed: float, total_sent: int, bitrate: int, fps: int) -> str:
    mbps = nbytes / MIB / elapsed
    bytes_per_frame = bitrate / fps / 8.0 if fps > 0 else 0.0
    frames_per_sec = 0.0
    if bytes_per_frame > 0.0:
        frames_per_sec = (nbytes / elapsed) / bytes_per_frame
    return (f"\r{mbps:.2f} MB/s  |  ~{frames_per_sec:.1f} fps (est)  "
            f"sent total: {total_sent / MIB:.2f} MB ")


class ThroughputMeter:
    def __init__(self, bitrate: int = DEFAULT_BITRATE, fps: int = DEFAULT_FPS,
                 clock=time.monotonic, out=None):
        self.bitrate = bitrate
        self.fps = fps
        self.total_sent = 0
        self.since_last = 0
        self._clock = clock
        self._out = out
        self._lock = threading.Lock()
        self.last_emit_time = clock()

    def record(self, nbytes: int) -> Optional[str]:
        with self._lock:
            self.total_sent += nbytes
            self.since_last += nbytes
            now = self._clock()
            elapsed = now - self.last_emit_time
            if elapsed < SAMPLE_INTERVAL:
                return None
            swapped, self.since_last = self.since_last, 0
            total = self.total_sent
            self.last_emit_time = now
        line = format_sample(swapped, elapsed, total, self.bitrate, self.fps)
        print(line, end="", flush=True, file=self._out)
        return line

    def finish(self):
        print(f"\nDone. Total sent: {self.total_sent / MIB:.2f} MB", flush=True, file=self._out)


class FileStream:
    """Reader and meter for one response body; released exactly once."""

    def __init__(self, reader: WindowReader, meter: ThroughputMeter):
        self.reader = reader
        self.meter = meter
        self.state = "streaming"
        self._released = False

    @classmethod
    def open(cls, freq: FileRequest, out=None) -> "FileStream":
        reader = WindowReader.open(freq.path, freq.start, freq.content_length)
        return cls(reader, ThroughputMeter(freq.bitrate, freq.fps, out=out))

    @property
    def released(self) -> bool:
        return self._released

    def release(self):
        if self._released:
            return
        self._released = True
        if self.state == "streaming":
            self.state = "aborted"
        self.reader.close()
        self.meter.finish()


async def stream_file(request: web.Request, freq: FileRequest) -> web.StreamResponse:
    headers = {
        "Content-Type": freq.mime,
        "Accept-Ranges": "bytes",
        # Allow cross-origin requests from LAN devices (subtitles, players)
        "Access-Control-Allow-Origin": "*",
    }
    if freq.partial:
        headers["Content-Range"] = freq.content_range
    resp = web.StreamResponse(status=206 if freq.partial else 200, headers=headers)
    resp.content_length = freq.content_length
    try:
        body = FileStream.open(freq)
    except OSError:
        return web.Response(status=404)

    loop = asyncio.get_running_loop()
    pos = 0
    try:
        await resp.prepare(request)
        while True:
            chunk = await loop.run_in_executor(None, body.reader.read, pos, CHUNK_SIZE)
            if not chunk:
                break
            body.meter.record(len(chunk))
            await resp.write(chunk)
            pos += len(chunk)
        if pos < freq.content_length:
            # body is short, the client must not reuse this connection
            resp.force_close()
        else:
            body.state = "complete"
        await resp.write_eof()
    except ConnectionResetError:
        resp.force_close()
    finally:
        body.release()
    return resp


async def handle_request(request: web.Request) -> web.StreamResponse:
    if request.method != "GET":
        return web.Response(status=405)

    path = resolve_media_path(request.app[MEDIA_ROOT], request.path)
    if path is None:
        return web.Response(status=404)
    try:
        st = os.stat(path)
    except (OSError, ValueError):
        return web.Response(status=404)
    if not stat.S_ISREG(st.st_mode):
        return web.Response(status=404)
    size = st.st_size

    try:
        byte_range = parse_range(request.headers.get("Range"), size)
    except RangeNotSatisfiable:
        return web.Response(status=416, headers={"Content-Range": f"bytes */{size}"})

    bitrate, fps = parse_estimation_params(request.query)
    if byte_range is None:
        start, end, partial = 0, size - 1, False
    else:
        start, end, partial = byte_range.start, byte_range.end, True
    freq = FileRequest(
        path=path, size=size, start=start, end=end, partial=partial,
        bitrate=bitrate, fps=fps, mime=guess_mime(request.path),
    )
    return await stream_file(request, freq)


def make_app(root: Optional[str] = None) -> web.Application:
    app = web.Application()
    app[MEDIA_ROOT] = root or MOVIE_DIR
    app.router.add_route("*", "/{tail:.*}", handle_request)
    return app


def _wait_for_enter(loop, stop: asyncio.Event):
    sys.stdin.readline()
    loop.call_soon_threadsafe(stop.set)


async def serve(root: str = MOVIE_DIR, port: int = PORT) -> int:
    runner = web.AppRunner(make_app(root))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    try:
        await site.start()
    except OSError:
        print("Failed to start HTTP server.", file=sys.stderr)
        await runner.cleanup()
        return 1

    print(f"Server running at: http://localhost:{port}")
    print(f"Serving files from: {root}")
    print("Optional query params for estimation: ?bitrate=8000000&fps=60")
    print("Press Enter to stop...", flush=True)

    # stdin is read on a daemon thread so a pending readline never blocks exit
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    threading.Thread(target=_wait_for_enter, args=(loop, stop), daemon=True).start()
    try:
        await stop.wait()
    finally:
        await runner.cleanup()
        print("\nServer stopped.", flush=True)
    return 0


def main():
    try:
        code = asyncio.run(serve())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
