from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import TYPE_CHECKING, List, Optional

import cv2
import numpy as np

from shared.errors import MediaAccessError, ValidationError
from shared.models import JoinIntent

if TYPE_CHECKING:
    import sounddevice as sd

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms

DEVICE_ACCESS_MESSAGE = "Could not access camera/microphone. Please check permissions."
EMPTY_NAME_MESSAGE = "Please enter your name"


class MediaTrack:
    """One capture source inside a stream; disabling keeps the device open."""

    kind = "generic"

    def __init__(self) -> None:
        self.enabled = True
        self._live = True

    @property
    def live(self) -> bool:
        return self._live

    def stop(self) -> None:
        if not self._live:
            return
        self._live = False
        self._close()

    def _close(self) -> None:
        pass


class VideoTrack(MediaTrack):
    kind = "video"

    def __init__(self, capture: cv2.VideoCapture, *, width: int, height: int) -> None:
        super().__init__()
        self._capture = capture
        self._width = width
        self._height = height
        self._read_lock = threading.Lock()

    def read_frame(self) -> Optional[np.ndarray]:
        if not self._live or not self.enabled:
            return None
        with self._read_lock:
            ret, frame = self._capture.read()
        if not ret:
            return None
        return cv2.resize(frame, (self._width, self._height))

    def _close(self) -> None:
        with self._read_lock:
            self._capture.release()


class AudioTrack(MediaTrack):
    kind = "audio"

    def __init__(self) -> None:
        super().__init__()
        self._stream: Optional[sd.InputStream] = None
        self.level = 0.0

    def attach(self, stream: sd.InputStream) -> None:
        self._stream = stream

    def on_samples(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        if not self.enabled:
            self.level = 0.0
            return
        samples = np.asarray(indata, dtype=np.float32).flatten()
        self.level = float(np.sqrt(np.mean(samples * samples))) if samples.size else 0.0

    def _close(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
        finally:
            self._stream.close()


class MediaStream:
    """Exclusively owned camera+microphone handle."""

    def __init__(self, tracks: List[MediaTrack]) -> None:
        self.id = uuid.uuid4().hex
        self._tracks = list(tracks)

    @property
    def tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    @property
    def video_track(self) -> Optional[MediaTrack]:
        return next((track for track in self._tracks if track.kind == "video"), None)

    @property
    def audio_track(self) -> Optional[MediaTrack]:
        return next((track for track in self._tracks if track.kind == "audio"), None)

    @property
    def active(self) -> bool:
        return any(track.live for track in self._tracks)

    def stop(self) -> None:
        for track in self._tracks:
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop %s track", track.kind)


class MediaDevices:
    """Opens the local camera and microphone. Blocking; call from a worker thread."""

    def __init__(self, *, camera_index: int = 0, width: int = 640, height: int = 360) -> None:
        self._camera_index = camera_index
        self._width = width
        self._height = height

    def open_stream(self) -> MediaStream:
        import sounddevice as sd

        capture = cv2.VideoCapture(self._camera_index)
        if not capture.isOpened():
            capture.release()
            raise MediaAccessError(DEVICE_ACCESS_MESSAGE)
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        video = VideoTrack(capture, width=self._width, height=self._height)
        audio = AudioTrack()
        try:
            stream = sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=CHANNELS,
                dtype="float32",
                blocksize=FRAME_SAMPLES,
                callback=audio.on_samples,
            )
        except (sd.PortAudioError, OSError, ValueError) as exc:
            video.stop()
            raise MediaAccessError(DEVICE_ACCESS_MESSAGE) from exc
        audio.attach(stream)
        try:
            stream.start()
        except (sd.PortAudioError, OSError) as exc:
            video.stop()
            stream.close()
            raise MediaAccessError(DEVICE_ACCESS_MESSAGE) from exc
        return MediaStream([video, audio])


class DevicePreviewManager:
    """Owns the camera and microphone while the user is on the pre-join screen.

    At most one stream is held at a time. Every exit path (join, cancel,
    teardown) goes through ``release()``, which is safe to call repeatedly.
    """

    def __init__(
        self,
        devices: Optional[MediaDevices] = None,
        *,
        video_enabled: bool = True,
        audio_enabled: bool = True,
        jpeg_quality: int = 70,
    ) -> None:
        self._devices = devices or MediaDevices()
        self._stream: Optional[MediaStream] = None
        self._lock = asyncio.Lock()
        self._generation = 0
        self._video_enabled = video_enabled
        self._audio_enabled = audio_enabled
        self._jpeg_quality = max(20, min(jpeg_quality, 90))
        self.error: Optional[str] = None

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    @property
    def video_enabled(self) -> bool:
        return self._video_enabled

    @property
    def audio_enabled(self) -> bool:
        return self._audio_enabled

    async def acquire(self) -> MediaStream:
        async with self._lock:
            if self._stream is not None and self._stream.active:
                return self._stream
            generation = self._generation
            opening = asyncio.ensure_future(asyncio.to_thread(self._devices.open_stream))
            try:
                stream = await asyncio.shield(opening)
            except asyncio.CancelledError:
                opening.add_done_callback(_stop_orphaned_stream)
                raise
            except MediaAccessError as exc:
                self.error = str(exc) or DEVICE_ACCESS_MESSAGE
                logger.warning("Error accessing media devices: %s", exc)
                raise
            except Exception as exc:
                self.error = DEVICE_ACCESS_MESSAGE
                logger.exception("Unexpected error while opening media devices")
                raise MediaAccessError(DEVICE_ACCESS_MESSAGE) from exc
            if generation != self._generation:
                stream.stop()
                raise MediaAccessError("Device preview was closed before the devices opened")
            self._stream = stream
            self._apply_flags()
            self.error = None
            logger.info("Acquired media preview stream %s", stream.id)
            return stream

    def toggle_video(self, enabled: bool) -> bool:
        self._video_enabled = enabled
        self._apply_flags()
        return enabled

    def toggle_audio(self, enabled: bool) -> bool:
        self._audio_enabled = enabled
        self._apply_flags()
        return enabled

    async def read_preview_frame(self) -> Optional[bytes]:
        """Return the current camera frame as JPEG bytes, if the camera is on."""

        stream = self._stream
        track = stream.video_track if stream else None
        if not isinstance(track, VideoTrack) or not self._video_enabled:
            return None
        frame = await asyncio.to_thread(track.read_frame)
        if frame is None:
            return None
        success, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self._jpeg_quality])
        if not success:
            return None
        return buffer.tobytes()

    def audio_level(self) -> float:
        track = self._stream.audio_track if self._stream else None
        if isinstance(track, AudioTrack) and self._audio_enabled:
            return track.level
        return 0.0

    def release(self) -> bool:
        """Stop every track of the held stream. Returns False when nothing was held."""

        self._generation += 1
        stream, self._stream = self._stream, None
        if stream is None:
            return False
        stream.stop()
        logger.info("Released media preview stream %s", stream.id)
        return True

    def validate_and_join(self, display_name: Optional[str]) -> JoinIntent:
        name = (display_name or "").strip()
        if not name:
            self.error = EMPTY_NAME_MESSAGE
            raise ValidationError(EMPTY_NAME_MESSAGE)
        self.release()
        self.error = None
        return JoinIntent(
            display_name=name,
            video_enabled=self._video_enabled,
            audio_enabled=self._audio_enabled,
        )

    def state(self) -> dict:
        return {
            "acquired": self._stream is not None,
            "video_enabled": self._video_enabled,
            "audio_enabled": self._audio_enabled,
            "audio_level": self.audio_level(),
            "error": self.error,
        }

    def _apply_flags(self) -> None:
        if self._stream is None:
            return
        video = self._stream.video_track
        if video is not None:
            video.enabled = self._video_enabled
        audio = self._stream.audio_track
        if audio is not None:
            audio.enabled = self._audio_enabled


def _stop_orphaned_stream(future: "asyncio.Future[MediaStream]") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().stop()
