"""Shared fakes for coordinator, track and channel tests."""

import asyncio

import pytest

from duo_call.call.coordinator import CallCoordinator
from duo_call.call.session import Session
from duo_call.exceptions import DeviceUnavailableError
from duo_call.media import VideoSurface
from duo_call.protocol import SessionDescription


class FakeTrack:
    """Outgoing track stand-in with ``enabled`` and an "ended" event."""

    def __init__(self, kind, name):
        self.kind = kind
        self.name = name
        self.id = f"{name}-track"
        self.enabled = True
        self.stop_count = 0
        self._handlers = {}

    @property
    def readyState(self):
        return "ended" if self.stop_count else "live"

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def stop(self):
        if self.stop_count:
            return
        self.stop_count += 1
        for handler in self._handlers.get("ended", []):
            handler()

    def end_externally(self):
        """Simulate the OS or user ending the capture."""
        self.stop()


class FakeEngine:
    """Peer engine that records every call made to it."""

    def __init__(self):
        self.calls = []
        self.applied_candidates = []
        self.added_tracks = []
        self.video_replacements = []
        self.stats_report = []
        self.reject_remote = False
        self.reject_candidates = False
        self.closed = False

        self.local_candidate_callback = None
        self.remote_track_callback = None
        self.state_callback = None

    async def create_offer(self):
        self.calls.append("create_offer")
        return SessionDescription(type="offer", sdp="v=0 offer")

    async def create_answer(self):
        self.calls.append("create_answer")
        return SessionDescription(type="answer", sdp="v=0 answer")

    async def set_local_description(self, description):
        self.calls.append(f"set_local:{description.type}")
        return description

    async def set_remote_description(self, description):
        self.calls.append(f"set_remote:{description.type}")
        if self.reject_remote:
            raise ValueError("description rejected")

    async def add_remote_candidate(self, candidate):
        self.calls.append("add_candidate")
        if self.reject_candidates:
            raise ValueError("candidate rejected")
        self.applied_candidates.append(candidate)

    def add_track(self, track):
        self.added_tracks.append(track)

    def replace_video_track(self, track):
        self.video_replacements.append(track)

    def on_local_candidate(self, callback):
        self.local_candidate_callback = callback

    def on_remote_track(self, callback):
        self.remote_track_callback = callback

    def on_connection_state_change(self, callback):
        self.state_callback = callback

    async def get_stats(self):
        return list(self.stats_report)

    async def close(self):
        self.calls.append("close")
        self.closed = True

    def emit_local_candidate(self, candidate):
        self.local_candidate_callback(candidate)

    async def report_state(self, state):
        await self.state_callback(state)


class FakeChannel:
    """Signaling channel recording sent messages; inbound fed via ``push``."""

    def __init__(self):
        self.sent = []
        self.is_open = False
        self.closed = False
        self.connected_role = None
        self.gate = None
        self.fail_with = None
        self._inbound = asyncio.Queue()

    async def connect(self, local_role):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self.connected_role = local_role
        self.is_open = True

    def send(self, message):
        if not self.is_open:
            return False
        self.sent.append(message)
        return True

    def push(self, message):
        self._inbound.put_nowait(message)

    async def messages(self):
        while True:
            message = await self._inbound.get()
            if message is None:
                return
            yield message

    async def close(self):
        if not self.closed:
            self.closed = True
            self.is_open = False
            self._inbound.put_nowait(None)

    def sent_types(self):
        return [m.type.value for m in self.sent]


class FakeCapture:
    """Capture returning FakeTracks; gates let tests control completion order."""

    def __init__(self):
        self.fail = False
        self.fail_screen = False
        self.user_gate = None
        self.display_gate = None
        self.camera = FakeTrack("video", "camera")
        self.microphone = FakeTrack("audio", "microphone")
        self.screens = []

    async def open_user_media(self):
        if self.user_gate is not None:
            await self.user_gate.wait()
        if self.fail:
            raise DeviceUnavailableError("no camera")
        return self.camera, self.microphone

    async def open_display_media(self):
        if self.display_gate is not None:
            await self.display_gate.wait()
        if self.fail_screen:
            raise DeviceUnavailableError("screen capture denied")
        screen = FakeTrack("video", "screen")
        self.screens.append(screen)
        return screen


@pytest.fixture
def make_coordinator():
    """Factory building a coordinator wired to fakes for a role."""

    def factory(role, call_id="call1"):
        return CallCoordinator(
            session=Session.create(role, call_id),
            channel=FakeChannel(),
            engine=FakeEngine(),
            capture=FakeCapture(),
            local_surface=VideoSurface("local"),
            remote_surface=VideoSurface("remote"),
            stats_interval=0.01,
        )

    return factory
