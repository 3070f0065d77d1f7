#!/usr/bin/env python3
"""Stress test the proxy against fake backends with different latencies."""

import argparse
import asyncio
import aiohttp
import time
import subprocess
import sys
import os
from collections import Counter

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class StressTest:
    def __init__(
        self,
        num_backends: int,
        num_requests: int,
        concurrency: int,
        proxy_port: int,
        body_size: int,
    ):
        self.num_backends = num_backends
        self.num_requests = num_requests
        self.concurrency = concurrency
        self.proxy_port = proxy_port
        self.body_size = body_size
        self.start_port = 5001
        self.processes: list[subprocess.Popen] = []
        self.latencies: list[float | None] = []
        self.served_by: Counter[str] = Counter()

    def cleanup(self):
        """Kill all subprocesses."""
        for proc in self.processes:
            proc.terminate()
            try:
                proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                proc.kill()
        self.processes.clear()

    def start_fake_backends(self):
        """Start fake backends, each one slower than the previous."""
        print(f"Starting {self.num_backends} fake backend servers...")
        for i in range(self.num_backends):
            port = self.start_port + i
            delay = 0.05 * (self.num_backends - i)
            proc = subprocess.Popen(
                [
                    sys.executable,
                    os.path.join(ROOT, "scripts", "fake_server.py"),
                    str(port),
                    "--delay",
                    str(delay),
                ],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            self.processes.append(proc)
        time.sleep(0.5)

    def start_proxy(self):
        """Start the proxy pointed at the fake backends."""
        print(f"Starting proxy on port {self.proxy_port}...")
        command = [
            sys.executable,
            os.path.join(ROOT, "main.py"),
            "--port",
            str(self.proxy_port),
            "--no-metrics",
            "--log-level",
            "ERROR",
        ]
        for i in range(self.num_backends):
            command += ["--backend", f"http://localhost:{self.start_port + i}"]
        proc = subprocess.Popen(
            command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        )
        self.processes.append(proc)
        time.sleep(2)

    async def make_request(self, session: aiohttp.ClientSession, url: str):
        """Make a single request and record latency."""
        start = time.perf_counter()
        try:
            if self.body_size:
                request = session.post(url, data=b"x" * self.body_size)
            else:
                request = session.get(url)
            async with request as resp:
                await resp.read()
                self.latencies.append(time.perf_counter() - start)
                self.served_by[resp.headers.get("X-Backend-Port", "?")] += 1
        except aiohttp.ClientError:
            self.latencies.append(None)

    async def run_test(self):
        """Run the stress test."""
        url = f"http://localhost:{self.proxy_port}/stress?run=1"
        start_time = time.perf_counter()

        async with aiohttp.ClientSession() as session:
            tasks = set()

            for _ in range(self.num_requests):
                while len(tasks) >= self.concurrency:
                    done, tasks = await asyncio.wait(
                        tasks, return_when=asyncio.FIRST_COMPLETED
                    )
                    for task in done:
                        task.result()
                tasks.add(asyncio.create_task(self.make_request(session, url)))

            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        total_time = time.perf_counter() - start_time
        valid_latencies = [l for l in self.latencies if l is not None]

        return {
            "total_time": total_time,
            "completed": len(valid_latencies),
            "errors": len(self.latencies) - len(valid_latencies),
            "latencies": valid_latencies,
        }

    def print_results(self, results: dict):
        """Print the test results."""
        total_time = results["total_time"]
        completed = results["completed"]
        latencies = results["latencies"]

        print()
        print("=" * 40)
        print("Results:")
        print(f"  Total time:  {total_time:.3f}s")
        print(f"  Completed:   {completed}")
        print(f"  Errors:      {results['errors']}")
        print(f"  Avg RPS:     {completed / total_time:.0f} req/s")

        print()
        print("Served by backend port:")
        for port, count in self.served_by.most_common():
            print(f"  {port}: {count}")

        if latencies:
            latencies.sort()
            n = len(latencies)
            print()
            print("Latency:")
            print(f"  min:   {latencies[0] * 1000:.1f}ms")
            print(f"  p50:   {latencies[int(n * 0.50)] * 1000:.1f}ms")
            print(f"  p90:   {latencies[int(n * 0.90)] * 1000:.1f}ms")
            print(f"  p99:   {latencies[int(n * 0.99)] * 1000:.1f}ms")
            print(f"  max:   {latencies[-1] * 1000:.1f}ms")

    def run(self):
        """Run the full stress test."""
        try:
            self.start_fake_backends()
            self.start_proxy()

            print(f"\n=== Stress Test ===")
            print(f"Backends:    {self.num_backends}")
            print(f"Requests:    {self.num_requests}")
            print(f"Concurrency: {self.concurrency}")
            print(f"Body size:   {self.body_size}")

            results = asyncio.run(self.run_test())
            self.print_results(results)

        finally:
            self.cleanup()


def main():
    parser = argparse.ArgumentParser(description="Stress test the proxy")
    parser.add_argument("backends", type=int, nargs="?", default=2)
    parser.add_argument("requests", type=int, nargs="?", default=2000)
    parser.add_argument("concurrency", type=int, nargs="?", default=50)
    parser.add_argument("port", type=int, nargs="?", default=8080)
    parser.add_argument(
        "--body-size",
        type=int,
        default=0,
        help="POST a body of this many bytes instead of a GET",
    )
    args = parser.parse_args()

    StressTest(
        num_backends=args.backends,
        num_requests=args.requests,
        concurrency=args.concurrency,
        proxy_port=args.port,
        body_size=args.body_size,
    ).run()


if __name__ == "__main__":
    main()
