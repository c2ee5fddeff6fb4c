"""
HTTP server lifecycle.

Uses aiohttp's AppRunner/TCPSite so the server shares the event loop with the
catalog reload, stats flush and guard sweep tasks.
"""

from __future__ import annotations

import logging

from aiohttp import web

from forgeupdate.server.app import UpdateServer, create_app

logger = logging.getLogger(__name__)


async def start_server(
    server: UpdateServer,
    host: str = "0.0.0.0",
    port: int = 3000,
) -> web.AppRunner:
    """
    Start the update HTTP server.

    Args:
        server: Wired UpdateServer (see build_server).
        host: Bind address (default: 0.0.0.0).
        port: Bind port (default: 3000).

    Returns:
        AppRunner (pass to stop_server on shutdown).
    """
    app = create_app(server)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Update server listening on http://%s:%d", host, port)
    return runner


async def stop_server(runner: web.AppRunner) -> None:
    """
    Stop the update HTTP server, closing open connections.

    Args:
        runner: AppRunner returned by start_server.
    """
    await runner.cleanup()
    logger.info("Update server stopped")
