import logging

from aiohttp import web

log = logging.getLogger(__name__)


async def _index(_request: web.Request) -> web.Response:
    return web.Response(text="Telegram Bot is running!")


def build_health_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", _index)
    return app


class HealthServer:
    """Plain-text liveness endpoint for the hosting platform."""

    def __init__(self, port: int, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        self._runner = None

    async def start(self) -> None:
        self._runner = web.AppRunner(build_health_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP server listening on port %s for healthchecks", self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
