from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Dict, List

from shared.models import Role, RoleContext
from shared.protocol import DEFAULT_TCP_PORT

from .app import ClassroomApp
from .config import (
    DEFAULT_DIRECTORY_URL,
    DEFAULT_ENGINE,
    DEFAULT_ENGINE_LOAD_TIMEOUT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_ROOM_JOIN_TIMEOUT,
    ClassroomConfig,
)
from .eligibility import DEFAULT_JOIN_LEAD_MINUTES, DEFAULT_START_LEAD_MINUTES

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def _parse_engine_options(values: List[str]) -> Dict[str, str]:
    options: Dict[str, str] = {}
    for value in values:
        key, sep, raw = value.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Engine option must be KEY=VALUE, got {value!r}")
        options[key.strip()] = raw
    return options


def main() -> None:
    parser = argparse.ArgumentParser(description="Virtual classroom client")
    parser.add_argument("principal_id", help="Identifier of the signed-in faculty member or student")
    parser.add_argument(
        "--role",
        type=str.lower,
        default=Role.STUDENT.value,
        choices=[role.value for role in Role],
        help="Role of the principal",
    )
    parser.add_argument("--token", default=None, help="Optional bearer token for the session directory")
    parser.add_argument("--display-name", default=None, help="Name to pre-fill on the pre-join screen")
    parser.add_argument("--email", default=None, help="Email passed to the conferencing engine")
    parser.add_argument("--directory-url", default=DEFAULT_DIRECTORY_URL, help="Base URL of the session directory API")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL_SECONDS,
        help="Seconds between session list refreshes",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        help="Timeout for session directory requests",
    )
    parser.add_argument("--engine", default=DEFAULT_ENGINE, help="Conferencing engine factory as module:attribute")
    parser.add_argument("--engine-host", default="127.0.0.1", help="Room server host for the default engine")
    parser.add_argument("--engine-port", type=int, default=DEFAULT_TCP_PORT, help="Room server TCP port")
    parser.add_argument(
        "--engine-option",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra engine configuration entry (repeatable)",
    )
    parser.add_argument(
        "--engine-load-timeout",
        type=float,
        default=DEFAULT_ENGINE_LOAD_TIMEOUT,
        help="Seconds allowed for loading the conferencing engine",
    )
    parser.add_argument(
        "--room-join-timeout",
        type=float,
        default=DEFAULT_ROOM_JOIN_TIMEOUT,
        help="Seconds allowed for joining the room",
    )
    parser.add_argument(
        "--start-lead-minutes",
        type=int,
        default=DEFAULT_START_LEAD_MINUTES,
        help="How early an instructor may start a class",
    )
    parser.add_argument(
        "--join-lead-minutes",
        type=int,
        default=DEFAULT_JOIN_LEAD_MINUTES,
        help="How early a participant may join a class",
    )
    parser.add_argument("--camera-index", type=int, default=0, help="OpenCV camera index for the preview")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=8100, help="Port for the local UI web server")
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

    try:
        engine_options = _parse_engine_options(args.engine_option)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))

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

    context = RoleContext(
        principal_id=args.principal_id,
        role=Role(args.role),
        token=args.token,
        display_name=args.display_name,
        email=args.email,
    )
    config = ClassroomConfig(
        directory_url=args.directory_url,
        poll_interval=args.poll_interval,
        request_timeout=args.request_timeout,
        engine=args.engine,
        engine_host=args.engine_host,
        engine_port=args.engine_port,
        engine_load_timeout=args.engine_load_timeout,
        room_join_timeout=args.room_join_timeout,
        start_lead_minutes=args.start_lead_minutes,
        join_lead_minutes=args.join_lead_minutes,
        camera_index=args.camera_index,
        engine_config=dict(engine_options),
    )
    app = ClassroomApp(config, context)

    try:
        asyncio.run(app.run(host=args.ui_host, port=args.ui_port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
