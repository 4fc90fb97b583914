from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Optional

from directory.api import DirectoryServer
from directory.session_store import SessionStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DEFAULT_DIRECTORY_PORT = 5000


def _load_store(catalog_path: Optional[Path]) -> SessionStore:
    if catalog_path is None:
        logger.warning("No course catalog given; the directory starts empty")
        return SessionStore()
    with catalog_path.open("r", encoding="utf-8") as handle:
        catalog = json.load(handle)
    return SessionStore.from_catalog(catalog)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Virtual classroom session directory")
    parser.add_argument("--host", default="127.0.0.1", help="Host/IP to bind the directory API")
    parser.add_argument("--port", type=int, default=DEFAULT_DIRECTORY_PORT, help="Port for the directory API")
    parser.add_argument("--catalog", type=Path, default=None, help="JSON file with courses, instructors and enrolments")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=log_handlers,
        force=True,
    )

    try:
        store = _load_store(args.catalog)
    except (OSError, ValueError) as exc:
        parser.error(f"Unable to load catalog {args.catalog}: {exc}")

    server = DirectoryServer(store, host=args.host, port=args.port)
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    try:
        await server.start()
    except RuntimeError as exc:
        logger.error("%s", exc)
        return
    await stop_event.wait()

    try:
        await server.stop()
    except Exception:
        logger.exception("Error stopping session directory")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
