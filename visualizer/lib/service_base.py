# LED Visualizer
# SPDX-License-Identifier: GPL-3.0-or-later

"""
ServiceBase: shared plumbing for the visualizer's aiohttp service.

Subclass contract:

    class MyService(ServiceBase):
        id   = "visualizer"  # service ID (shows in /status)
        name = "Visualizer"  # display name
        port = 3000          # default HTTP port

Optional overrides:
    setup_app(app)   install middlewares before routes are added
    add_routes(app)  add extra aiohttp routes
    on_start()       called once the app starts (HTTP session ready)
    on_stop()        called during shutdown
    handle_status()  return dict for GET /status
"""

import asyncio
import logging
import signal

from aiohttp import web, ClientSession

log = logging.getLogger(__name__)


class ServiceBase:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""
    port: int = 0
    host: str = "0.0.0.0"

    def __init__(self):
        self.http_session: ClientSession | None = None
        self._runner: web.AppRunner | None = None

    # ── App construction ──

    def build_app(self) -> web.Application:
        """Create the aiohttp app with base routes, subclass middlewares and routes."""
        app = web.Application()
        self.setup_app(app)
        app.router.add_get("/status", self._handle_status_route)

        # Let subclass add extra routes
        self.add_routes(app)

        app.on_startup.append(self._on_app_startup)
        app.on_cleanup.append(self._on_app_cleanup)
        return app

    async def _on_app_startup(self, app):
        self.http_session = ClientSession()
        await self.on_start()

    async def _on_app_cleanup(self, app):
        try:
            await self.on_stop()
        finally:
            if self.http_session:
                await self.http_session.close()
                self.http_session = None

    # ── HTTP server ──

    async def start(self):
        """Build the app and start listening."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("%s HTTP API on %s:%d", self.name, self.host, self.port)

    async def stop(self):
        """Shutdown hook; override on_stop() for cleanup."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    # ── CORS ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    # ── Route handlers ──

    async def _handle_status_route(self, request):
        result = await self.handle_status()
        return web.json_response(result, headers=self._cors_headers())

    # ── Subclass hooks (override as needed) ──

    def setup_app(self, app: web.Application):
        """Install middlewares on the app."""

    def add_routes(self, app: web.Application):
        """Add extra aiohttp routes to the app."""

    async def on_start(self):
        """Called when the app starts."""

    async def on_stop(self):
        """Called during shutdown."""

    async def handle_status(self) -> dict:
        """Return status dict for GET /status."""
        return {"service": self.id, "name": self.name}
