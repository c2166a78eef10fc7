from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from .config import AgentSettings
from .logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="lanwatch - Edge Agent")
    parser.add_argument("--print-config", action="store_true", help="Print resolved configuration and exit.")
    parser.add_argument("--once", action="store_true", help="Run one discovery pass and one probe cycle, then exit.")
    parser.add_argument("--monitor", action="store_true", help="Discover devices and probe them until stopped.")
    parser.add_argument(
        "--http-serve",
        action="store_true",
        help="Start Edge HTTP API server (/health, /heartbeat, /devices); alongside the monitor with --monitor.",
    )
    return parser


async def run_monitor(cfg: AgentSettings, *, once: bool = False, serve_http: bool = False) -> None:
    from .discovery import build_discovery
    from .monitor import Monitor
    from .store import HttpDeviceStore

    store = HttpDeviceStore(cfg.server_base_url, timeout=cfg.store_timeout_sec)
    monitor = Monitor(cfg, build_discovery(cfg), store)
    try:
        if once:
            await monitor.discovery_pass()
            await monitor.heartbeat_cycle()
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, monitor.stop)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises.
                pass

        if not serve_http:
            await monitor.run()
            return

        import uvicorn
        from .edge_api import create_app

        server = uvicorn.Server(
            uvicorn.Config(
                create_app(cfg, monitor.registry),
                host=cfg.edge_http_host,
                port=cfg.edge_http_port,
                log_level=cfg.log_level.lower(),
            )
        )
        logger.info("Starting Edge HTTP API at http://%s:%s", cfg.edge_http_host, cfg.edge_http_port)
        server_task = asyncio.create_task(server.serve())
        monitor_task = asyncio.create_task(monitor.run())
        await asyncio.wait({server_task, monitor_task}, return_when=asyncio.FIRST_COMPLETED)

        # Whichever side stopped first takes the other one down with it.
        monitor.stop()
        server.should_exit = True
        await asyncio.gather(server_task, monitor_task)
    finally:
        await store.aclose()


def run(argv: list[str] | None = None, cfg: AgentSettings | None = None) -> int:
    """
    Edge Agent entrypoint.
    """
    try:
        args = build_parser().parse_args(argv)

        # Load settings from environment / .env
        cfg = cfg or AgentSettings()

        # Setup logging using configured level
        configure_logging(cfg.log_level, cfg.agent_id)

        logger.info("Edge Agent starting")
        logger.info(
            "Resolved config: agent_id=%s server=%s interval=%ss subnet=%s",
            cfg.agent_id, cfg.server_base_url, cfg.heartbeat_interval_sec, cfg.discovery_subnet or "auto",
        )

        if args.print_config:
            print(cfg.model_dump())
            return 0

        if args.once or args.monitor:
            asyncio.run(run_monitor(cfg, once=args.once, serve_http=args.http_serve))
            return 0

        if args.http_serve:
            import uvicorn
            from .edge_api import create_app

            app = create_app(cfg)

            logger.info("Starting Edge HTTP API at http://%s:%s", cfg.edge_http_host, cfg.edge_http_port)
            uvicorn.run(
                app,
                host=cfg.edge_http_host,
                port=cfg.edge_http_port,
                log_level=cfg.log_level.lower(),
            )
            return 0

        logger.info("Nothing to do. Use --print-config, --once, --monitor or --http-serve.")
        return 0

    except Exception:
        # Log unexpected exceptions so the edge service is diagnosable.
        logger.exception("Edge Agent crashed due to an unexpected error")
        if cfg is not None and cfg.log_level.upper() == "DEBUG":
            raise
        return 1


if __name__ == "__main__":
    raise SystemExit(run())
