"""Local media: toggleable outgoing tracks, device capture and surfaces.

Capture goes through FFmpeg devices via aiortc's MediaPlayer. Every captured
track is wrapped in a ToggleableTrack so that mute and camera-off only flip
``enabled`` (silence / black frames are sent) without replacing the track on
the peer connection.
"""

import asyncio
import logging
import platform
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from duo_call.exceptions import DeviceUnavailableError

logger = logging.getLogger(__name__)


# (file, format) per platform and source. Overridable through [call.capture].
DEFAULT_DEVICES: Dict[str, Dict[str, Tuple[str, str]]] = {
    "Linux": {
        "camera": ("/dev/video0", "v4l2"),
        "microphone": ("default", "pulse"),
        "screen": (":0.0", "x11grab"),
    },
    "Darwin": {
        "camera": ("default:none", "avfoundation"),
        "microphone": ("none:default", "avfoundation"),
        "screen": ("1:none", "avfoundation"),
    },
    "Windows": {
        "camera": ("video=Integrated Camera", "dshow"),
        "microphone": ("audio=Microphone", "dshow"),
        "screen": ("desktop", "gdigrab"),
    },
}

# Synthetic sources used when a device is disabled.
TEST_SOURCES: Dict[str, Tuple[str, str]] = {
    "camera": ("testsrc=size=640x480:rate=30", "lavfi"),
    "microphone": ("anullsrc=r=48000:cl=mono", "lavfi"),
}


def _silence(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(
        format=frame.format.name, layout=frame.layout.name, samples=frame.samples
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


def _black(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    luma, *chroma = black.planes
    luma.update(bytes([16]) * luma.buffer_size)
    for plane in chroma:
        plane.update(bytes([128]) * plane.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """Outgoing track whose ``enabled`` flag can be flipped in place.

    While disabled, audio frames are replaced with silence and video frames
    with black, keeping timestamps so the receiver sees a continuous stream.
    The wrapper ends when its source ends, emitting "ended".

    Attributes:
        source: Captured track being forwarded
        name: Label for logs ("camera", "microphone", "screen")
        enabled: Whether source frames are forwarded unchanged
    """

    def __init__(self, source: MediaStreamTrack, name: Optional[str] = None):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.name = name or source.kind
        self.enabled = True
        source.on("ended", self._on_source_ended)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence(frame)
        return _black(frame)

    def stop(self):
        already_ended = self.readyState == "ended"
        super().stop()
        if not already_ended:
            logger.debug(f"Stopping {self.name} track")
            self.source.stop()

    def _on_source_ended(self):
        if self.readyState != "ended":
            logger.info(f"{self.name} source ended")
            self.stop()


class MediaCapture:
    """Opens camera, microphone and screen sources as ToggleableTracks.

    Attributes:
        use_camera: Capture the camera (otherwise a test pattern is sent)
        use_microphone: Capture the microphone (otherwise silence is sent)
        devices: (file, format) per source name
        video_options: FFmpeg options for video sources
    """

    def __init__(
        self,
        use_camera: bool = True,
        use_microphone: bool = True,
        devices: Optional[Dict[str, Tuple[str, str]]] = None,
        video_options: Optional[Dict[str, str]] = None,
        player_factory: Callable[..., Any] = MediaPlayer,
    ):
        self.use_camera = use_camera
        self.use_microphone = use_microphone
        self.devices = dict(DEFAULT_DEVICES.get(platform.system(), DEFAULT_DEVICES["Linux"]))
        self.devices.update(devices or {})
        self.video_options = video_options or {"video_size": "640x480", "framerate": "30"}
        self._player_factory = player_factory

    async def open_user_media(self) -> Tuple[ToggleableTrack, ToggleableTrack]:
        """Open the camera and microphone.

        Returns:
            (camera, microphone) tracks

        Raises:
            DeviceUnavailableError: If either source cannot be opened
        """
        camera = await self._open("camera", "video", live=self.use_camera)
        try:
            microphone = await self._open(
                "microphone", "audio", live=self.use_microphone
            )
        except DeviceUnavailableError:
            camera.stop()
            raise
        return camera, microphone

    async def open_display_media(self) -> ToggleableTrack:
        """Open a screen capture source.

        Raises:
            DeviceUnavailableError: If the screen cannot be captured
        """
        return await self._open("screen", "video", live=True)

    async def _open(self, name: str, kind: str, live: bool) -> ToggleableTrack:
        file, fmt = self.devices[name] if live else TEST_SOURCES[name]
        options = self.video_options if kind == "video" and fmt != "lavfi" else {}
        logger.info(f"Opening {name}: {file} ({fmt})")

        try:
            player = await asyncio.to_thread(
                self._player_factory, file, format=fmt, options=options
            )
        except (OSError, FFmpegError) as e:
            raise DeviceUnavailableError(f"Cannot open {name} ({file}): {e}") from e

        source = player.video if kind == "video" else player.audio
        if source is None:
            raise DeviceUnavailableError(f"{name} ({file}) has no {kind} stream")
        return ToggleableTrack(source, name=name)


class VideoSurface:
    """Rendering surface a track is shown on.

    The base class only tracks what is attached; UIs subclass it and
    override ``attach``/``clear`` to draw.

    Attributes:
        name: Label for logs ("local", "remote")
        tracks: Attached tracks by kind
    """

    def __init__(self, name: str):
        self.name = name
        self.tracks: Dict[str, MediaStreamTrack] = {}

    @property
    def track(self) -> Optional[MediaStreamTrack]:
        """The attached video track, if any."""
        return self.tracks.get("video")

    def attach(self, track: MediaStreamTrack):
        logger.debug(f"{self.name} surface: showing {track.kind} track {track.id}")
        self.tracks[track.kind] = track

    def clear(self):
        if self.tracks:
            logger.debug(f"{self.name} surface cleared")
        self.tracks.clear()


class RecorderSurface(VideoSurface):
    """Surface that consumes attached tracks into files or a blackhole.

    Remote tracks must be read for media to flow. With ``record_dir`` set,
    video is written to ``<name>-video.mp4`` and audio to ``<name>-audio.wav``;
    otherwise frames are discarded.
    """

    SUFFIXES = {"video": ".mp4", "audio": ".wav"}

    def __init__(self, name: str, record_dir: Optional[Path] = None):
        super().__init__(name)
        self.record_dir = Path(record_dir) if record_dir else None
        self._sinks: Dict[str, Any] = {}
        self._tasks = set()

    def attach(self, track: MediaStreamTrack):
        self._stop_sink(track.kind)
        super().attach(track)

        if self.record_dir:
            self.record_dir.mkdir(parents=True, exist_ok=True)
            path = self.record_dir / f"{self.name}-{track.kind}{self.SUFFIXES.get(track.kind, '.mkv')}"
            sink = MediaRecorder(str(path))
            logger.info(f"Recording {self.name} {track.kind} to {path}")
        else:
            sink = MediaBlackhole()
        sink.addTrack(track)
        self._sinks[track.kind] = sink
        self._spawn(sink.start())

    def clear(self):
        for kind in list(self._sinks):
            self._stop_sink(kind)
        super().clear()

    def _stop_sink(self, kind: str):
        sink = self._sinks.pop(kind, None)
        if sink is not None:
            self._spawn(sink.stop())

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
