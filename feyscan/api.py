import time
from typing import List, Optional

from aiohttp import web

from .config import AppConfig
from .coordinator import CycleCoordinator
from .logging_utils import get_logger
from .storage import Storage

logger = get_logger(__name__)


class ApiServer:
    def __init__(self, cfg: AppConfig, storage: Storage, coordinator: CycleCoordinator):
        self.cfg = cfg
        self.storage = storage
        self.coordinator = coordinator
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.runner: Optional[web.AppRunner] = None

    async def deployments_handler(self, request: web.Request) -> web.Response:
        items = [d.to_dict() for d in self.storage.get_all_deployments()]
        return web.json_response(items)

    async def latest_handler(self, request: web.Request) -> web.Response:
        latest = self.storage.get_latest_deployment()
        if latest is None:
            return web.json_response({"error": "no deployments yet"}, status=404)
        return web.json_response(latest.to_dict())

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "status": "running" if self.coordinator.started else "starting",
                "deployments": self.storage.count_deployments(),
                "timestamp": int(time.time()),
                **self.coordinator.health(),
            }
        )

    async def backfill_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json body"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "invalid json body"}, status=400)
        try:
            from_block = int(payload["fromBlock"])
            to_block = int(payload["toBlock"])
        except (KeyError, TypeError, ValueError):
            return web.json_response(
                {"error": "fromBlock and toBlock must be integers"}, status=400
            )
        if from_block < 0 or to_block < from_block:
            return web.json_response(
                {"error": "expected 0 <= fromBlock <= toBlock"}, status=400
            )
        result = await self.coordinator.backfill(from_block, to_block)
        return web.json_response({"ok": True, **result})

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex
            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares: List = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/api/deployments", self.deployments_handler)
        app.router.add_get("/api/latest", self.latest_handler)
        app.router.add_get("/api/health", self.health_handler)
        app.router.add_post("/api/backfill", self.backfill_handler)
        return app

    async def start(self) -> None:
        app = self.create_api_app()
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info(
            "api listening",
            extra={"context": {"host": self.cfg.api_host, "port": self.cfg.api_port}},
        )

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
