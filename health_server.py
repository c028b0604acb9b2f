import json
import logging

from aiohttp import web

logger = logging.getLogger("Liquidator")


def build_app(engine) -> web.Application:
    async def handle_health(request):
        return web.Response(text=json.dumps(engine.health_status()), content_type="application/json")

    app = web.Application()
    app.router.add_get("/", handle_health)
    app.router.add_get("/health", handle_health)
    return app


async def start_health_server(engine, port: int) -> web.AppRunner:
    runner = web.AppRunner(build_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"🩺 Health endpoint on http://0.0.0.0:{port}/health")
    return runner
