"""CoWatch room server entry point."""
from __future__ import annotations
import asyncio
import logging
import signal
import sys
from pathlib import Path

from server.server import RoomServer
from shared.config import load_config
from shared.errors import ConfigError
from shared.logging_utils import setup_rotating_logger


async def _serve(server: RoomServer) -> None:
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: stop.done() or stop.set_result(None))
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await server.start()
    try:
        await stop
    finally:
        await server.stop()


def main() -> None:
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    try:
        config = load_config(config_path)
    except ConfigError as e:
        for err in e.errors:
            print(f"config error: {err}", file=sys.stderr)
        sys.exit(2)

    setup_rotating_logger("cowatch.server", Path(config.server.log_dir))
    logger = logging.getLogger("cowatch.server")
    logger.info("CoWatch server starting")

    try:
        asyncio.run(_serve(RoomServer(config.server)))
    except KeyboardInterrupt:
        pass
    logger.info("CoWatch server stopped")


if __name__ == "__main__":
    main()
