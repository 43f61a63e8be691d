from __future__ import annotations

import os
import random
import tempfile
import threading
from dataclasses import dataclass
from typing import Optional

from .config import TransferConfig
from .net import Impairment
from .client import TftpClient
from .server import TftpServer


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    retransmits: int
    timeouts: int
    intact: bool


def run_benchmark(
    *,
    size_bytes: int,
    loss_rate: float = 0.0,
    delay_ms: int = 0,
    timeout_s: float = 0.25,
    max_retries: int = 20,
    seed: Optional[int] = None,
) -> BenchmarkResult:
    """Write a file to a loopback server and read it back, both ways impaired."""
    rng = random.Random(seed)
    payload = rng.randbytes(size_bytes)
    config = TransferConfig(timeout_s=timeout_s, max_retries=max_retries)

    with tempfile.TemporaryDirectory() as root, tempfile.TemporaryDirectory() as work:
        src = os.path.join(work, "bench.bin")
        back = os.path.join(work, "bench.out")
        with open(src, "wb") as f:
            f.write(payload)

        server = TftpServer(
            "127.0.0.1",
            0,
            root=root,
            config=config,
            impairment=Impairment(loss_rate, delay_ms, random.Random(rng.random())),
        )
        t = threading.Thread(target=server.serve_forever, daemon=True)
        t.start()
        try:
            with TftpClient(
                "127.0.0.1",
                server.address[1],
                config=config,
                impairment=Impairment(loss_rate, delay_ms, random.Random(rng.random())),
            ) as client:
                put = client.request_write("bench.bin", src)
                get = client.request_read("bench.bin", back) if put.ok else None
        finally:
            server.shutdown(wait=True, timeout=timeout_s * (max_retries + 2))
            t.join(timeout=10.0)
            server.close()

        results = [r for r in (put, get) if r is not None]
        served = list(server.results)
        intact = get is not None and get.ok
        if intact:
            with open(back, "rb") as f:
                intact = f.read() == payload

    duration_s = max(0.001, sum(r.duration_s for r in results))
    moved = sum(r.bytes_transferred for r in results)
    return BenchmarkResult(
        bytes_transferred=moved,
        duration_s=duration_s,
        throughput_mbps=(moved * 8 / 1_000_000) / duration_s,
        retransmits=sum(r.retransmits for r in results + served),
        timeouts=sum(r.timeouts for r in results + served),
        intact=intact,
    )
