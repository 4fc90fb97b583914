"""Control-plane wire format spoken to classroom room servers.

Messages are JSON envelopes prefixed with a 4-byte big-endian length. The
classroom only needs the room membership subset of the protocol: joining a
room, learning who else is in it, mirroring local mute state, and being told
when the room goes away.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import struct


class ControlAction(str, Enum):
    """Control-plane events exchanged over TCP."""

    HELLO = "hello"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    VIDEO_STATUS = "video_status"
    AUDIO_STATUS = "audio_status"
    HANGUP = "hangup"
    ERROR = "error"
    KICKED = "kicked"


class ControlEnvelope(TypedDict):
    """Generic representation of control messages sent over TCP."""

    action: str
    data: Dict[str, Any]


_LENGTH_PREFIX = struct.Struct("!I")
MAX_CONTROL_MESSAGE_BYTES = 1024 * 1024


def encode_control_message(action: ControlAction, data: Dict[str, Any]) -> bytes:
    """Serialize a control message using length-prefixed JSON."""

    envelope: ControlEnvelope = {
        "action": action.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return _LENGTH_PREFIX.pack(len(payload)) + payload


def decode_control_stream(buffer: bytes) -> tuple[list[ControlEnvelope], bytes]:
    """Decode as many complete control messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer). A declared length above
    ``MAX_CONTROL_MESSAGE_BYTES`` raises ``ValueError`` since the stream can no
    longer be trusted.
    """

    offset = 0
    messages: list[ControlEnvelope] = []
    buf_len = len(buffer)

    while offset + _LENGTH_PREFIX.size <= buf_len:
        (length,) = _LENGTH_PREFIX.unpack_from(buffer, offset)
        if length > MAX_CONTROL_MESSAGE_BYTES:
            raise ValueError(f"Control message of {length} bytes exceeds limit")
        if offset + _LENGTH_PREFIX.size + length > buf_len:
            break
        start = offset + _LENGTH_PREFIX.size
        end = start + length
        envelope = json.loads(buffer[start:end].decode("utf-8"))
        messages.append(envelope)  # type: ignore[arg-type]
        offset = end

    return messages, buffer[offset:]


DEFAULT_TCP_PORT = 55000


@dataclass(slots=True)
class ClientIdentity:
    """Identity packet exchanged during TCP handshake."""

    username: str
    client_version: str = "0.2.0"
    desired_room: Optional[str] = None
    email: Optional[str] = None
    audio_enabled: bool = False
    video_enabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "username": self.username,
            "client_version": self.client_version,
            "audio_enabled": self.audio_enabled,
            "video_enabled": self.video_enabled,
        }
        if self.desired_room:
            data["desired_room"] = self.desired_room
        if self.email:
            data["email"] = self.email
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientIdentity":
        return cls(
            username=data["username"],
            client_version=data.get("client_version", "0.2.0"),
            desired_room=data.get("desired_room"),
            email=data.get("email"),
            audio_enabled=bool(data.get("audio_enabled", False)),
            video_enabled=bool(data.get("video_enabled", False)),
        )
