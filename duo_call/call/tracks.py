"""Outgoing media track control.

The TrackController owns the tracks this party sends and swaps them on the
live peer connection without renegotiation:

- mute / camera-off flip ``enabled`` on the microphone / camera track;
- screen-share replaces the outgoing video track with a screen capture and
  back, in place on the existing video sender.

Mute, camera-off and screen-sharing are read from the TrackSet rather than
stored as separate flags, so they cannot drift from the real track state.
None of these operations send signaling or touch the negotiation state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from duo_call.call.session import Session

logger = logging.getLogger(__name__)


@dataclass
class TrackSet:
    """Tracks currently owned by the controller.

    Attributes:
        camera: Camera track
        microphone: Microphone track
        active_video: Track bound to the outgoing video sender (camera or screen)
        screen: Screen capture track while sharing, else None
    """

    camera: object
    microphone: object
    active_video: object
    screen: Optional[object] = None


class TrackController:
    """Controls the outgoing tracks of one session.

    Attributes:
        session: Session the tracks belong to
        engine: Peer engine carrying the tracks
        capture: Source of screen capture tracks
        preview: Local preview surface
        tracks: Current TrackSet, None until ``attach()``
    """

    def __init__(self, session: Session, engine, capture, preview=None):
        self.session = session
        self.engine = engine
        self.capture = capture
        self.preview = preview
        self.tracks: Optional[TrackSet] = None

        self._screen_pending = False
        self._released = False

    # ===== Derived State =====

    @property
    def is_muted(self) -> bool:
        return self.tracks is not None and not self.tracks.microphone.enabled

    @property
    def is_camera_off(self) -> bool:
        return self.tracks is not None and not self.tracks.camera.enabled

    @property
    def is_screen_sharing(self) -> bool:
        return (
            self.tracks is not None
            and self.tracks.screen is not None
            and self.tracks.active_video is self.tracks.screen
        )

    # ===== Setup =====

    def attach(self, camera, microphone):
        """Bind captured tracks and start sending them.

        The camera becomes the outgoing video track and is shown in the
        local preview.
        """
        if self.tracks is not None:
            logger.warning("Tracks already attached, ignoring")
            return
        self.tracks = TrackSet(camera=camera, microphone=microphone, active_video=camera)
        self.engine.add_track(microphone)
        self.engine.add_track(camera)
        if self.preview:
            self.preview.attach(camera)
        logger.info("Local camera and microphone attached")

    # ===== Audio / Camera =====

    def set_muted(self, muted: bool):
        if not self._ready("mute"):
            return
        if self.is_muted == muted:
            return
        self.tracks.microphone.enabled = not muted
        logger.info("Microphone muted" if muted else "Microphone unmuted")

    def toggle_mute(self):
        if self._ready("mute"):
            self.set_muted(not self.is_muted)

    def set_camera_enabled(self, enabled: bool):
        if not self._ready("camera toggle"):
            return
        if self.is_screen_sharing:
            logger.warning("Camera toggle ignored while screen-sharing")
            return
        if self.tracks.camera.enabled == enabled:
            return
        self.tracks.camera.enabled = enabled
        logger.info("Camera on" if enabled else "Camera off")

    def toggle_camera(self):
        if self._ready("camera toggle"):
            self.set_camera_enabled(self.is_camera_off)

    # ===== Screen Share =====

    async def start_screen_share(self) -> bool:
        """Replace the outgoing video with a screen capture.

        Returns:
            True if sharing started, False if it was a no-op

        Raises:
            DeviceUnavailableError: If the screen cannot be captured
        """
        if not self._ready("screen share"):
            return False
        if self.is_screen_sharing or self._screen_pending:
            logger.debug("Screen share already active or starting")
            return False

        self._screen_pending = True
        try:
            screen = await self.capture.open_display_media()
        finally:
            self._screen_pending = False

        if self._released or self.session.ended:
            logger.info("Session ended during screen capture, discarding it")
            screen.stop()
            return False

        self.engine.replace_video_track(screen)
        self.tracks.screen = screen
        self.tracks.active_video = screen
        if self.preview:
            self.preview.attach(screen)
        screen.on("ended", self._on_screen_ended)
        logger.info("Screen share started")
        return True

    def stop_screen_share(self) -> bool:
        """Return the outgoing video to the camera.

        Returns:
            True if sharing stopped, False if it was a no-op
        """
        if self.tracks is None or not self.is_screen_sharing:
            return False

        screen = self.tracks.screen
        self.tracks.screen = None
        if not self._released:
            self.engine.replace_video_track(self.tracks.camera)
            if self.preview:
                self.preview.attach(self.tracks.camera)
        self.tracks.active_video = self.tracks.camera
        screen.stop()
        logger.info("Screen share stopped")
        return True

    def _on_screen_ended(self):
        if self.is_screen_sharing:
            logger.info("Screen capture ended externally")
            self.stop_screen_share()

    # ===== Teardown =====

    def release(self):
        """Stop every owned track. Later operations are no-ops."""
        if self._released:
            return
        self._released = True
        if self.tracks is None:
            return
        screen = self.tracks.screen
        self.tracks.screen = None
        self.tracks.active_video = self.tracks.camera
        for track in (screen, self.tracks.camera, self.tracks.microphone):
            if track is not None:
                track.stop()
        logger.info("Local media released")

    def _ready(self, operation: str) -> bool:
        if self._released:
            logger.debug(f"Ignoring {operation}: media released")
            return False
        if self.tracks is None:
            logger.warning(f"Ignoring {operation}: no local media attached")
            return False
        return True
