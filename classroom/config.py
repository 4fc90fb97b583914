from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict

from shared.protocol import DEFAULT_TCP_PORT

from .eligibility import DEFAULT_JOIN_LEAD_MINUTES, DEFAULT_START_LEAD_MINUTES, EligibilityPolicy

DEFAULT_DIRECTORY_URL = "http://localhost:5000/api"
DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_ENGINE_LOAD_TIMEOUT = 15.0
DEFAULT_ROOM_JOIN_TIMEOUT = 30.0
DEFAULT_ENGINE = "classroom.engines:ControlChannelEngine"


@dataclass(slots=True)
class ClassroomConfig:
    """Runtime settings for the local classroom app, filled from the CLI."""

    directory_url: str = DEFAULT_DIRECTORY_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    engine: str = DEFAULT_ENGINE
    engine_host: str = "127.0.0.1"
    engine_port: int = DEFAULT_TCP_PORT
    engine_load_timeout: float = DEFAULT_ENGINE_LOAD_TIMEOUT
    room_join_timeout: float = DEFAULT_ROOM_JOIN_TIMEOUT
    start_lead_minutes: int = DEFAULT_START_LEAD_MINUTES
    join_lead_minutes: int = DEFAULT_JOIN_LEAD_MINUTES
    camera_index: int = 0
    engine_config: Dict[str, Any] = field(default_factory=dict)

    def eligibility_policy(self) -> EligibilityPolicy:
        return EligibilityPolicy(
            start_lead=timedelta(minutes=self.start_lead_minutes),
            join_lead=timedelta(minutes=self.join_lead_minutes),
        )

    def engine_defaults(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "server_host": self.engine_host,
            "server_port": self.engine_port,
        }
        config.update(self.engine_config)
        return config
