"""CoWatch client entry point."""
from __future__ import annotations
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from client.connection import ClientConnection
from client.mpv_controller import MpvController
from shared.config import load_config
from shared.errors import ConfigError
from shared.logging_utils import setup_rotating_logger


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m client", description="Join a CoWatch room.")
    parser.add_argument("room", help="room identifier")
    parser.add_argument("--name", help="display name shown to the room")
    parser.add_argument("--host-role", action="store_true",
                        help="ask to become the authoritative participant")
    parser.add_argument("--src", help="media URL to load if the room has none yet")
    parser.add_argument("--config", type=Path, help="path to a cowatch.toml file")
    parser.add_argument("--no-camera", action="store_true",
                        help="receive peer video without sending our own")
    return parser.parse_args(argv)


async def _run(conn: ClientConnection, mpv: MpvController) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(conn.close()))
        except NotImplementedError:
            pass
    mpv.on_eof = lambda: logging.getLogger("cowatch.client").info("End of media")
    try:
        await conn.run()
    finally:
        await mpv.stop_subprocess()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        for err in e.errors:
            print(f"config error: {err}", file=sys.stderr)
        sys.exit(2)

    setup_rotating_logger("cowatch.client", Path("logs"))
    logger = logging.getLogger("cowatch.client")
    logger.info("CoWatch client starting")

    async def _start() -> None:
        mpv = MpvController(config.client.mpv_path)
        if not await mpv.start():
            logger.error("Cannot run without mpv")
            return
        conn = ClientConnection(
            args.room,
            mpv,
            config,
            name=args.name,
            request_as_authoritative=args.host_role,
            initial_src=args.src,
            camera=not args.no_camera,
        )
        await _run(conn, mpv)

    try:
        asyncio.run(_start())
    except KeyboardInterrupt:
        pass
    logger.info("CoWatch client stopped")


if __name__ == "__main__":
    main()
