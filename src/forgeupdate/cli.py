"""
Update server entrypoint.

Configuration comes from the environment (see ServerConfig.from_env); the
command line only adds operational switches.

Usage:
    RELEASE_DIR=./releases PUBLIC_KEY=... forgeupdate
    forgeupdate --check          # validate config, load catalog once, exit
    python -m forgeupdate --port 8080

Signals:
    SIGINT/SIGTERM  graceful shutdown (final stats flush)
    SIGHUP          immediate catalog reload
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

from forgeupdate.config import ConfigurationError, ServerConfig
from forgeupdate.guard.limiter import RequestGuard
from forgeupdate.logging_config import setup_logging
from forgeupdate.server.app import UpdateServer, build_server
from forgeupdate.server.runner import start_server, stop_server
from forgeupdate.signing.verifier import load_public_key

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


async def sweep_guard(guard: RequestGuard, interval_s: float, stop: asyncio.Event) -> None:
    """Periodically drop idle rate limit buckets until ``stop`` is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_s)
        except TimeoutError:
            removed = guard.sweep()
            if removed:
                logger.debug("Swept idle rate limit buckets", extra={"removed": removed})


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop: asyncio.Event,
    server: UpdateServer,
    pending: set[asyncio.Task[bool]],
) -> None:
    """Shutdown on SIGINT/SIGTERM, reload on SIGHUP (where supported)."""

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info("Received signal %s, initiating shutdown", sig.name)
        stop.set()

    def request_reload() -> None:
        logger.info("Received SIGHUP, reloading catalog")
        task = loop.create_task(server.store.reload())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_shutdown, sig)
    if hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, request_reload)


async def run_server(config: ServerConfig, *, check_only: bool = False) -> int:
    """
    Run the update server until a shutdown signal.

    Args:
        config: Validated server configuration.
        check_only: Load the catalog once and exit.

    Returns:
        Exit code (0 = success).
    """
    server = build_server(config)
    logger.info("Trusted release key", extra={"key_id": server.store.verifier.key_id})

    # Initial load; an empty or failing directory still starts (readyz reports it)
    await server.store.reload()
    if check_only:
        if not server.store.is_loaded:
            logger.error("Catalog failed to load", extra={"reason": server.store.last_reload_error})
            return EXIT_FAILURE
        catalog = server.store.snapshot
        logger.info(
            "Configuration valid",
            extra={"releases": len(catalog), "excluded": catalog.excluded},
        )
        return EXIT_OK

    stop = asyncio.Event()
    pending: set[asyncio.Task[bool]] = set()
    install_signal_handlers(asyncio.get_running_loop(), stop, server, pending)

    runner = await start_server(server, config.host, config.port)
    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(server.store.run(config.reload_interval_s, stop))
            tg.create_task(server.collector.run(stop))
            tg.create_task(sweep_guard(server.guard, config.rate_limit.window_s, stop))
            await stop.wait()
        return EXIT_OK
    except Exception:
        logger.exception("Update server failed")
        return EXIT_FAILURE
    finally:
        await stop_server(runner)


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Serve signed Building Forge releases.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Override HOST")
    parser.add_argument("--port", type=int, default=None, help="Override PORT")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate configuration, load the catalog once, and exit",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    try:
        config = ServerConfig.from_env()
        if args.host is not None:
            config.host = args.host
        if args.port is not None:
            if not 0 < args.port <= 65535:
                raise ConfigurationError(f"port must be in 1..65535, got {args.port}")
            config.port = args.port
        config.check_release_dir()
        load_public_key(config.public_key)
    except ConfigurationError as e:
        setup_logging(json_format=False)
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    setup_logging(
        level="DEBUG" if args.verbose else config.log_level,
        json_format=config.log_format == "json",
    )
    logger.info("Starting update server", extra=config.redacted())

    return asyncio.run(run_server(config, check_only=args.check))


if __name__ == "__main__":
    sys.exit(main())
