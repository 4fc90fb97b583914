from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from shared.protocol import ClientIdentity, ControlAction, decode_control_stream, encode_control_message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[ControlAction, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]

HEARTBEAT_INTERVAL_SECONDS = 3.0


class ControlClient:
    """TCP control connection to a conference room server."""

    def __init__(
        self,
        host: str,
        port: int,
        identity: ClientIdentity,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self._host = host
        self._port = port
        self._identity = identity
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = heartbeat_interval
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._tasks: list[asyncio.Task[None]] = []
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._welcomed = asyncio.Event()
        self._stop = False
        self._disconnect_notified = False

    @property
    def connected(self) -> bool:
        return self._writer is not None and self._welcomed.is_set() and not self._stop

    async def connect(self) -> None:
        logger.info("Connecting to room server %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        await self._send_raw(encode_control_message(ControlAction.HELLO, self._identity.to_dict()))
        self._tasks.append(asyncio.create_task(self._send_loop()))
        self._tasks.append(asyncio.create_task(self._recv_loop()))
        await self._welcomed.wait()
        if self._stop:
            raise ConnectionError("Connection closed before handshake completed")
        self._tasks.append(asyncio.create_task(self._heartbeat_loop()))

    async def close(self) -> None:
        if self._stop and self._writer is None:
            return
        self._stop = True
        self._send_event.set()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                logger.debug("Error while waiting for control connection to close", exc_info=True)
        self._reader = None
        self._writer = None
        self._welcomed.set()

    async def send(self, action: ControlAction, payload: Dict[str, object]) -> None:
        if self._stop:
            return
        self._send_queue.append(encode_control_message(action, payload))
        self._send_event.set()

    async def send_and_close(self, action: ControlAction, payload: Dict[str, object]) -> None:
        """Write one final frame directly, bypassing the queue, then close."""

        if not self._stop and self._writer is not None:
            try:
                await self._send_raw(encode_control_message(action, payload))
            except (ConnectionError, OSError, RuntimeError) as exc:
                logger.debug("Final %s frame was not delivered: %s", action.value, exc)
        await self.close()

    async def send_media_state(self, *, audio_enabled: Optional[bool] = None, video_enabled: Optional[bool] = None) -> None:
        if audio_enabled is not None:
            await self.send(ControlAction.AUDIO_STATUS, {"audio_enabled": audio_enabled})
        if video_enabled is not None:
            await self.send(ControlAction.VIDEO_STATUS, {"video_enabled": video_enabled})

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise RuntimeError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def _send_loop(self) -> None:
        try:
            while not self._stop:
                await self._send_event.wait()
                self._send_event.clear()
                while self._send_queue and not self._stop:
                    data = self._send_queue.popleft()
                    try:
                        await self._send_raw(data)
                    except Exception:
                        logger.exception("Failed to send control message")
                        self._stop = True
                        break
        except asyncio.CancelledError:
            pass

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Server closed control connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_control_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    try:
                        action = ControlAction(message["action"])
                    except (KeyError, ValueError):
                        logger.debug("Ignoring unknown control message %r", message.get("action"))
                        continue
                    payload = message.get("data") or {}
                    if action == ControlAction.WELCOME:
                        self._welcomed.set()
                    await self._dispatch(action, payload)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Error while receiving from control server")
            disconnect_reason = "recv_error"
        if self._stop:
            return
        self._welcomed.set()
        await self.close()
        await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, action: ControlAction, payload: dict) -> None:
        try:
            result = self._on_message(action, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling control message %s", action)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None or self._disconnect_notified:
            return
        self._disconnect_notified = True
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(self._heartbeat_interval)
                timestamp_ms = int(time.time() * 1000)
                logger.debug("Sending heartbeat from %s at %s", self._identity.username, timestamp_ms)
                await self.send(ControlAction.HEARTBEAT, {"timestamp_ms": timestamp_ms})
        except asyncio.CancelledError:
            pass
