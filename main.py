from backend_pool import BackendPool
from proxy_core import (
    DEFAULT_REPLAY_LIMIT,
    ConfigError,
    Forwarder,
    MetricsCollector,
    NoReachableBackendError,
    ProxyRequest,
    ProxySettings,
    RequestStatus,
    RetryController,
    StreamResponseWriter,
)
from aiohttp import web, ClientSession, TCPConnector
import argparse
import asyncio
import logging
import sys
import time


def setup_logging(log_level: str, log_file: str | None):
    level = getattr(logging, log_level.upper())
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
    )
    return logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reverse proxy to the lowest-latency backend"
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument(
        "--backend",
        action="append",
        default=None,
        help="Backend base URL, repeat for each backend "
        "(default: http://localhost:5001 and http://localhost:5002)",
    )
    parser.add_argument(
        "--attempts", type=int, default=3, help="Forwarding attempts per request"
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=0.5,
        help="Seconds to wait between forwarding attempts",
    )
    parser.add_argument("--probe-timeout", type=float, default=2.0)
    parser.add_argument("--connect-timeout", type=float, default=5.0)
    parser.add_argument("--read-timeout", type=float, default=30.0)
    parser.add_argument("--chunk-size", type=int, default=65536)
    parser.add_argument(
        "--replay-limit",
        type=int,
        default=1024 * 1024,
        help="Bytes of request body kept so a failed attempt can be resent",
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        default=0.0,
        help="Re-probe backends every N seconds (0 selects once at startup)",
    )
    parser.add_argument(
        "--fail-if-unreachable",
        action="store_true",
        help="Refuse to start when no backend answers the probe",
    )
    parser.add_argument(
        "--no-preserve-host",
        action="store_true",
        help="Send the backend's host instead of the inbound Host header",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=9090, help="Port for metrics server"
    )
    parser.add_argument(
        "--no-metrics", action="store_true", help="Disable the metrics server"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--log-file", default=None, help="Optional file path for logging"
    )
    return parser


def main():
    args, _ = build_parser().parse_known_args()
    logger = setup_logging(args.log_level, args.log_file)

    try:
        settings = ProxySettings.from_args(args)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        asyncio.run(run_app(settings, logger))
    except NoReachableBackendError as e:
        logger.error(f"Not serving: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def create_proxy_app(
    controller: RetryController,
    chunk_size: int,
    logger,
    replay_limit: int = DEFAULT_REPLAY_LIMIT,
) -> web.Application:
    async def proxy_handler(request):
        start_time = time.time()
        proxy_request = ProxyRequest.from_web_request(
            request, chunk_size, replay_limit
        )
        writer = StreamResponseWriter(request)

        outcome = await controller.handle(proxy_request, writer)

        duration = (time.time() - start_time) * 1000
        log = logger.info if outcome.status is RequestStatus.SUCCEEDED else logger.warning
        log(
            f"{request.method} {request.path_qs} -> {outcome.backend.url} "
            f"({outcome.client_status}, {outcome.status.value}, "
            f"attempts={outcome.attempts}) - {duration:.2f}ms"
        )
        return writer.response

    app = web.Application()
    app.router.add_route("*", "/{path:.*}", proxy_handler)
    return app


def create_metrics_app(metrics: MetricsCollector, pool: BackendPool) -> web.Application:
    metrics_app = web.Application()

    async def metrics_handler(request):
        accept = request.headers.get("Accept", "")
        if request.path.endswith("/json") or "json" in accept:
            return web.json_response(await metrics.get_metrics())
        return web.Response(
            text=await metrics.export_prometheus(), content_type="text/plain"
        )

    async def selection_handler(request):
        return web.json_response(pool.show())

    metrics_app.router.add_get("/metrics", metrics_handler)
    metrics_app.router.add_get("/metrics/json", metrics_handler)
    metrics_app.router.add_get("/selection", selection_handler)
    return metrics_app


async def run_app(settings: ProxySettings, logger):
    metrics = MetricsCollector() if settings.enable_metrics else None
    # auto_decompress=False relays encoded bodies byte for byte
    client_session = ClientSession(connector=TCPConnector(), auto_decompress=False)
    backend_pool = BackendPool(
        settings.backends,
        client_session,
        probe_timeout=settings.probe_timeout,
        unreachable_policy=settings.unreachable_policy,
        refresh_interval=settings.refresh_interval,
        metrics=metrics,
    )
    shutdown_event = asyncio.Event()
    runner = None
    metrics_runner = None

    try:
        await backend_pool.select()
        await backend_pool.start_refresh()

        forwarder = Forwarder(
            client_session,
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
            chunk_size=settings.chunk_size,
            preserve_host=settings.preserve_host,
        )
        controller = RetryController(
            forwarder,
            backend_pool.selected_backend,
            policy=settings.retry,
            metrics=metrics,
        )

        app = create_proxy_app(
            controller, settings.chunk_size, logger, settings.replay_limit
        )
        runner = web.AppRunner(app, handler_cancellation=True)
        await runner.setup()
        site = web.TCPSite(runner, settings.host, settings.port)
        await site.start()

        logger.info(
            f"Proxy running on http://{settings.host}:{settings.port} -> "
            f"{backend_pool.current.backend.url}"
        )

        if metrics:
            metrics_runner = web.AppRunner(create_metrics_app(metrics, backend_pool))
            await metrics_runner.setup()
            metrics_site = web.TCPSite(metrics_runner, settings.host, settings.metrics_port)
            await metrics_site.start()
            logger.info(
                f"Metrics server running on "
                f"http://{settings.host}:{settings.metrics_port}/metrics"
            )

        await shutdown_event.wait()

    finally:
        shutdown_event.set()
        await backend_pool.stop_refresh()
        if runner:
            await runner.cleanup()
        if metrics_runner:
            await metrics_runner.cleanup()
        await client_session.close()


if __name__ == "__main__":
    main()
