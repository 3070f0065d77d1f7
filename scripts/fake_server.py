#!/usr/bin/env python3
"""Fake backend for trying the proxy by hand.

Usage: fake_server.py PORT [--delay SECONDS] [--fail-first N]
"""
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
import argparse
import logging
import threading
import time

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)


class Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def _handle(self):
        with self.server.lock:
            self.server.seen += 1
            seen = self.server.seen
        if seen <= self.server.fail_first:
            # drop the connection without a response to simulate a transport error
            logging.info(f"Dropping request {seen}: {self.command} {self.path}")
            self.close_connection = True
            return

        time.sleep(self.server.delay)
        received = 0
        length = int(self.headers.get("Content-Length") or 0)
        while received < length:
            chunk = self.rfile.read(min(65536, length - received))
            if not chunk:
                break
            received += len(chunk)

        body = (
            f"port={self.server.server_port} method={self.command} "
            f"path={self.path} received={received}\n"
        ).encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("X-Backend-Port", str(self.server.server_port))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = do_HEAD = _handle

    def log_message(self, format, *args):
        pass


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("port", type=int)
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--fail-first", type=int, default=0)
    args = parser.parse_args()

    server = ThreadingHTTPServer(("127.0.0.1", args.port), Handler)
    server.delay = args.delay
    server.fail_first = args.fail_first
    server.seen = 0
    server.lock = threading.Lock()
    logging.info(
        f"Fake backend running on port {args.port} "
        f"(delay={args.delay}s, fail_first={args.fail_first})"
    )
    server.serve_forever()
