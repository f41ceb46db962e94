import argparse
import asyncio
import contextlib
import signal
from typing import List, Optional

from .aggregator import MetricsAggregator
from .api import ApiServer
from .config import LOG_LEVELS, AppConfig, load_config
from .coordinator import CycleCoordinator
from .extractor import DeploymentExtractor
from .gateway import AccessGateway, RPCClient
from .logging_utils import get_logger, setup_logging
from .lookups import Lookups
from .scanner import EventScanner
from .scheduler import EnrichmentScheduler
from .storage import Storage

logger = get_logger("feyscan")


class FeyScan:
    def __init__(self, cfg: AppConfig, enable_api: bool = True):
        self.cfg = cfg
        self.enable_api = enable_api
        self.storage = Storage(cfg.sqlite_path)
        self.cheap_rpc = RPCClient(cfg.cheap_rpc_url, timeout_sec=cfg.attempt_timeout_sec)
        self.expensive_rpc: Optional[RPCClient] = None
        if cfg.expensive_rpc_url:
            self.expensive_rpc = RPCClient(cfg.expensive_rpc_url, timeout_sec=cfg.attempt_timeout_sec)
        self.lookups = Lookups(cfg)
        self.gateway = AccessGateway(cfg, self.cheap_rpc, self.expensive_rpc)
        self.scanner = EventScanner(self.gateway, self.storage, cfg)
        self.extractor = DeploymentExtractor(self.gateway, self.storage, cfg, self.lookups)
        self.scheduler = EnrichmentScheduler(cfg)
        self.aggregator = MetricsAggregator(self.gateway, cfg, self.lookups)
        self.coordinator = CycleCoordinator(
            cfg,
            self.gateway,
            self.storage,
            self.scanner,
            self.extractor,
            self.scheduler,
            self.aggregator,
        )
        self.api = ApiServer(cfg, self.storage, self.coordinator) if enable_api else None
        self.tasks: List[asyncio.Task] = []

    async def __aenter__(self) -> "FeyScan":
        await self.cheap_rpc.__aenter__()
        if self.expensive_rpc is not None:
            await self.expensive_rpc.__aenter__()
        await self.lookups.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.coordinator.stop_event.is_set():
            await self.shutdown()
        await self.lookups.__aexit__(exc_type, exc, tb)
        if self.expensive_rpc is not None:
            await self.expensive_rpc.__aexit__(exc_type, exc, tb)
        await self.cheap_rpc.__aexit__(exc_type, exc, tb)
        self.storage.close()

    async def run(self) -> None:
        if self.api is not None:
            await self.api.start()
        self.tasks.append(asyncio.create_task(self.coordinator.run_forever()))
        await asyncio.gather(*self.tasks)

    async def shutdown(self) -> None:
        self.coordinator.stop()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        if self.api is not None:
            await self.api.stop()
        logger.info("shutdown complete")


async def main_async(cfg: AppConfig, enable_api: bool) -> None:
    async with FeyScan(cfg, enable_api=enable_api) as app:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(app.run())
        wait_task = asyncio.create_task(stop_event.wait())
        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await app.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="feyscan token launch monitor")
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="run the monitor loop without the HTTP API",
    )
    parser.add_argument(
        "--log-level",
        choices=sorted(LOG_LEVELS),
        default=None,
        help="override LOG_LEVEL from the config file",
    )
    args = parser.parse_args()
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        raise SystemExit(f"invalid config {args.config}: {e}") from e
    if args.log_level:
        cfg.log_level = args.log_level
    setup_logging(cfg.log_level, log_file=cfg.log_file, json_format=cfg.log_json)
    try:
        asyncio.run(main_async(cfg, enable_api=not args.no_api))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
