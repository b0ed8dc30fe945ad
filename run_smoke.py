"""
Headless smoke test for range streaming.
Writes a deterministic clip.mp4 and subs.vtt into a temp folder, starts the movie
server on a side port and checks full, partial and refused requests, printing
PASS/FAIL for each check.

Usage:
    python run_smoke.py
"""
import asyncio
import os
import shutil
import sys
from datetime import datetime

import aiohttp
from aiohttp import web

from movie_server import make_app

PORT = 8099
CLIP_SIZE = 1_000_000


def write_media(folder):
    clip = bytes((i * 31 + 7) % 251 for i in range(CLIP_SIZE))
    with open(os.path.join(folder, "clip.mp4"), "wb") as f:
        f.write(clip)
    with open(os.path.join(folder, "subs.vtt"), "wb") as f:
        f.write(b"WEBVTT\n\n00:00.000 --> 00:02.000\nsmoke\n")
    return clip


async def fetch(session, path, range_header=None):
    headers = {"Range": range_header} if range_header else {}
    async with session.get(f"http://127.0.0.1:{PORT}{path}", headers=headers) as resp:
        return resp.status, resp.headers, await resp.read()


async def main():
    base = os.path.join(os.path.dirname(os.path.abspath(__file__)), "smoke_temp")
    td = os.path.join(base, f"run_{int(datetime.now().timestamp())}")
    os.makedirs(td, exist_ok=True)
    print("Using temp folder:", td)
    clip = write_media(td)

    runner = web.AppRunner(make_app(td))
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", PORT)
    await site.start()

    failures = 0

    def check(name, ok):
        nonlocal failures
        print(f"\n[{'PASS' if ok else 'FAIL'}] {name}")
        if not ok:
            failures += 1

    try:
        async with aiohttp.ClientSession() as session:
            status, headers, body = await fetch(session, "/clip.mp4")
            check("full file", status == 200 and headers.get("Content-Type") == "video/mp4"
                  and headers.get("Content-Length") == str(CLIP_SIZE) and body == clip)

            status, headers, body = await fetch(session, "/clip.mp4", "bytes=0-1023")
            check("first KiB", status == 206 and headers.get("Content-Range") == "bytes 0-1023/1000000"
                  and body == clip[:1024])

            status, headers, body = await fetch(session, "/clip.mp4", "bytes=-500")
            check("suffix", status == 206 and headers.get("Content-Range") == "bytes 999500-999999/1000000"
                  and body == clip[-500:])

            status, headers, body = await fetch(session, "/clip.mp4?bitrate=4000000&fps=30", "bytes=500000-")
            check("open ended", status == 206 and headers.get("Content-Length") == "500000"
                  and body == clip[500000:])

            status, _, _ = await fetch(session, "/clip.mp4", f"bytes={CLIP_SIZE}-")
            check("range past end refused", status == 416)

            status, headers, _ = await fetch(session, "/subs.vtt")
            check("subtitles", status == 200 and headers.get("Content-Type") == "text/vtt; charset=utf-8"
                  and headers.get("Access-Control-Allow-Origin") == "*")

            status, _, _ = await fetch(session, "/sub..dir/clip.mp4")
            check("traversal refused", status == 404)
    finally:
        await runner.cleanup()
        shutil.rmtree(base, ignore_errors=True)

    print(f"\n{failures} check(s) failed" if failures else "\nAll checks passed.")
    return 1 if failures else 0


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
