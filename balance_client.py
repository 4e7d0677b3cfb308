"""Client side of the balance server: fetch, verify, and load-test.

Every response is compared byte for byte with ``HTTP_RESPONSE``. A reply that
arrives but differs is a *mismatch*; a connect/read error or timeout is a
*failure*. Runs report the two separately.
"""

import asyncio
import statistics
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from balance_server import HOST, HTTP_RESPONSE, PORT

DEFAULT_URL = f"http://{HOST}:{PORT}/"

OK = "ok"
MISMATCH = "mismatch"
FAILED = "failed"


def build_http_get(url: str) -> Tuple[str, int, bytes]:
    parsed_url = urlparse(url)
    if parsed_url.scheme and parsed_url.scheme.lower() != "http":
        raise ValueError("Only plain HTTP is supported")
    host = parsed_url.hostname or HOST
    port = parsed_url.port or 80
    path = parsed_url.path or "/"
    if parsed_url.query:
        path += "?" + parsed_url.query
    request_bytes = (
        f"GET {path} HTTP/1.1\r\n"
        f"Host: {parsed_url.netloc or host}\r\n"
        f"\r\n"
    ).encode("ascii")
    return host, port, request_bytes


async def fetch(host: str, port: int, request_bytes: bytes, timeout: float) -> bytes:
    """Send request_bytes on a new connection and return everything read until the server closes."""
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    try:
        if request_bytes:
            writer.write(request_bytes)
            await writer.drain()
        chunks = []
        while True:
            chunk = await asyncio.wait_for(reader.read(65536), timeout=timeout)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


@dataclass(frozen=True)
class Outcome:
    status: str
    latency: float = 0.0
    response: bytes = b""


async def one_request(host: str, port: int, request_bytes: bytes, timeout: float,
                      expected: bytes = HTTP_RESPONSE) -> Outcome:
    start_time = time.perf_counter()
    try:
        response = await fetch(host, port, request_bytes, timeout)
    except (OSError, asyncio.TimeoutError):
        return Outcome(FAILED)
    latency = time.perf_counter() - start_time
    if response != expected:
        return Outcome(MISMATCH, latency, response)
    return Outcome(OK, latency, response)


def percentile(ordered: List[float], q: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not ordered:
        return 0.0
    rank = int(q * (len(ordered) - 1) + 0.5)
    return ordered[min(max(rank, 0), len(ordered) - 1)]


@dataclass
class RunSummary:
    ok: int = 0
    mismatches: int = 0
    failures: int = 0
    skipped: int = 0
    wall: float = 0.0
    p50_ms: float = 0.0
    p90_ms: float = 0.0
    p99_ms: float = 0.0
    max_ms: float = 0.0
    first_mismatch: Optional[bytes] = None

    @property
    def throughput(self) -> float:
        return self.ok / self.wall if self.wall > 0 else 0.0

    @property
    def clean(self) -> bool:
        return not (self.mismatches or self.failures)


@dataclass
class Tally:
    latencies: List[float] = field(default_factory=list)
    mismatches: int = 0
    failures: int = 0
    skipped: int = 0
    first_mismatch: Optional[bytes] = None

    def record(self, outcome: Outcome) -> None:
        if outcome.status == OK:
            self.latencies.append(outcome.latency)
        elif outcome.status == MISMATCH:
            self.mismatches += 1
            if self.first_mismatch is None:
                self.first_mismatch = outcome.response
        else:
            self.failures += 1

    def finish(self, wall: float) -> RunSummary:
        ordered = sorted(self.latencies)
        return RunSummary(
            ok=len(ordered),
            mismatches=self.mismatches,
            failures=self.failures,
            skipped=self.skipped,
            wall=wall,
            p50_ms=percentile(ordered, 0.5) * 1000,
            p90_ms=percentile(ordered, 0.9) * 1000,
            p99_ms=percentile(ordered, 0.99) * 1000,
            max_ms=ordered[-1] * 1000 if ordered else 0.0,
            first_mismatch=self.first_mismatch,
        )


def combine(runs: List[RunSummary]) -> RunSummary:
    """Counts and wall time add up across runs; latency percentiles take the median."""
    if not runs:
        return RunSummary()
    return RunSummary(
        ok=sum(r.ok for r in runs),
        mismatches=sum(r.mismatches for r in runs),
        failures=sum(r.failures for r in runs),
        skipped=sum(r.skipped for r in runs),
        wall=sum(r.wall for r in runs),
        p50_ms=statistics.median(r.p50_ms for r in runs),
        p90_ms=statistics.median(r.p90_ms for r in runs),
        p99_ms=statistics.median(r.p99_ms for r in runs),
        max_ms=max(r.max_ms for r in runs),
        first_mismatch=next((r.first_mismatch for r in runs if r.first_mismatch is not None), None),
    )


def report(title: str, summary: RunSummary) -> None:
    print(f"{title}: {summary.ok} ok, {summary.mismatches} wrong response, {summary.failures} failed"
          + (f", {summary.skipped} skipped" if summary.skipped else ""))
    print(f"  {summary.throughput:.1f} req/s over {summary.wall:.3f}s; "
          f"p50={summary.p50_ms:.2f}ms p90={summary.p90_ms:.2f}ms p99={summary.p99_ms:.2f}ms "
          f"max={summary.max_ms:.2f}ms")
    if summary.first_mismatch is not None:
        status_line = summary.first_mismatch.split(b"\r\n", 1)[0]
        print(f"  first wrong response starts with {status_line!r} ({len(summary.first_mismatch)} bytes)")


async def run_probe(url: str = DEFAULT_URL, timeout: float = 5.0) -> bool:
    host, port, request_bytes = build_http_get(url)
    response = await fetch(host, port, request_bytes, timeout)
    print(response.decode("latin-1"))
    return response == HTTP_RESPONSE


# ---------- closed-loop ----------

async def _closed_once(host: str, port: int, request_bytes: bytes, total: int, concurrency: int,
                       timeout: float) -> RunSummary:
    tally = Tally()
    remaining = total

    async def worker():
        nonlocal remaining
        while remaining > 0:
            remaining -= 1
            tally.record(await one_request(host, port, request_bytes, timeout))

    start_time = time.perf_counter()
    await asyncio.gather(*(worker() for _ in range(max(1, min(concurrency, total)))))
    return tally.finish(time.perf_counter() - start_time)


async def run_closed(url: str = DEFAULT_URL, total: int = 1000, concurrency: int = 100, timeout: float = 5.0,
                     warmup: int = 0, repeat: int = 1, quiet: bool = False) -> RunSummary:
    """``concurrency`` workers share ``total`` requests, each sending the next as soon as one ends."""
    host, port, request_bytes = build_http_get(url)
    if warmup > 0:
        await _closed_once(host, port, request_bytes, warmup, concurrency, timeout)
    runs = []
    for i in range(repeat):
        run = await _closed_once(host, port, request_bytes, total, concurrency, timeout)
        if not quiet:
            report(f"closed {i + 1}/{repeat} (n={total}, c={concurrency})", run)
        runs.append(run)
    summary = combine(runs)
    if not quiet and repeat > 1:
        report("closed total", summary)
    return summary


# ---------- open-loop ----------

async def _open_once(host: str, port: int, request_bytes: bytes, rps: float, duration: float,
                     concurrency: int, timeout: float) -> RunSummary:
    tally = Tally()
    slots = asyncio.Semaphore(concurrency)
    pending: set = set()
    interval = 1.0 / max(rps, 1e-9)

    async def send():
        async with slots:
            tally.record(await one_request(host, port, request_bytes, timeout))

    loop = asyncio.get_running_loop()
    start_time = loop.time()
    slot = 0
    while slot * interval < duration:
        delay = start_time + slot * interval - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        slot += 1
        # a request that would queue behind too many others is skipped, not delayed
        if len(pending) >= 4 * concurrency:
            tally.skipped += 1
            continue
        task = asyncio.create_task(send())
        pending.add(task)
        task.add_done_callback(pending.discard)

    if pending:
        await asyncio.wait(pending)
    return tally.finish(loop.time() - start_time)


async def run_open(url: str = DEFAULT_URL, rps: float = 1000.0, duration: float = 10.0, concurrency: int = 500,
                   timeout: float = 5.0, warmup_sec: float = 0.0, repeat: int = 1, quiet: bool = False
                   ) -> RunSummary:
    """Start a request every ``1/rps`` seconds for ``duration`` seconds, whether or not earlier ones finished."""
    host, port, request_bytes = build_http_get(url)
    if warmup_sec > 0:
        await _open_once(host, port, request_bytes, rps, warmup_sec, concurrency, timeout)
    runs = []
    for i in range(repeat):
        run = await _open_once(host, port, request_bytes, rps, duration, concurrency, timeout)
        if not quiet:
            report(f"open {i + 1}/{repeat} ({rps:.0f} rps for {duration:.1f}s)", run)
        runs.append(run)
    summary = combine(runs)
    if not quiet and repeat > 1:
        report("open total", summary)
    return summary
