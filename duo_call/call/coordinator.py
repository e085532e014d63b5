"""Call negotiation coordinator.

Drives one Session from IDLE to ENDED:

1. Local media capture and the signaling connection are started together;
   JOIN is sent only once both are ready.
2. The relay answers with READY once both parties joined. Role A then sends
   an OFFER; role B answers it. Only A ever offers, so the two sides never
   offer at the same time.
3. Path candidates are trickled both ways. Remote candidates that arrive
   before the remote description is applied are held in a FIFO queue and
   applied, in order, right after it is.
4. The engine reporting "connected" moves the call to CONNECTED and starts
   stats sampling. A LEAVE, a local leave, or the engine reporting
   "disconnected"/"failed"/"closed" ends the call and releases everything.

Inbound messages and engine state changes are processed one at a time under
a single lock, in arrival order. Engine rejections of descriptions or
candidates are logged and do not end the call; the engine's connection state
decides that.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from duo_call.call.session import CallState, Role, Session
from duo_call.call.stats import StatsSampler, StatsSnapshot
from duo_call.call.tracks import TrackController
from duo_call.protocol import (
    MessageType,
    SignalingMessage,
    create_answer,
    create_ice,
    create_join,
    create_leave,
    create_offer,
)

logger = logging.getLogger(__name__)

# Engine connection states that end the call.
TERMINAL_CONNECTION_STATES = {"disconnected", "failed", "closed"}


class CallCoordinator:
    """Negotiates and supervises one two-party call.

    Attributes:
        session: Session being driven (owned by the coordinator)
        channel: Signaling channel to the relay
        engine: Peer engine
        tracks: TrackController for the outgoing media
        stats: StatsSampler, running while CONNECTED
        pending_candidates: Remote candidates waiting for the remote description
        remote_description_set: Whether a remote description has been applied
    """

    def __init__(
        self,
        session: Session,
        channel,
        engine,
        capture,
        local_surface=None,
        remote_surface=None,
        stats_interval: float = 2.0,
        on_stats: Optional[Callable[[StatsSnapshot], None]] = None,
    ):
        """Initialize CallCoordinator.

        Args:
            session: Fresh IDLE session
            channel: Signaling channel (not yet connected)
            engine: Peer engine for this call
            capture: Media capture providing camera, microphone and screen
            local_surface: Local preview surface
            remote_surface: Surface remote tracks are shown on
            stats_interval: Seconds between stats samples
            on_stats: Called with every new StatsSnapshot
        """
        self.session = session
        self.channel = channel
        self.engine = engine
        self.capture = capture
        self.local_surface = local_surface
        self.remote_surface = remote_surface

        self.tracks = TrackController(session, engine, capture, preview=local_surface)
        self.stats = StatsSampler(engine, interval=stats_interval, on_sample=on_stats)

        self.pending_candidates: Deque[Dict[str, Any]] = deque()
        self.remote_description_set = False

        self._offer_sent = False
        self._media_ready = False
        self._channel_ready = False
        self._started = False
        self._lock = asyncio.Lock()
        self._ended = asyncio.Event()

    @property
    def call_id(self) -> str:
        return self.session.call_id

    @property
    def local_role(self) -> Role:
        return self.session.local_role

    @property
    def remote_role(self) -> Role:
        return self.session.remote_role

    # ===== Lifecycle =====

    async def start(self):
        """Capture media and connect the channel, then announce with JOIN.

        Raises:
            DeviceUnavailableError: If local media cannot be captured
            SignalingChannelError: If the relay cannot be reached
        """
        if self._started:
            logger.warning("Coordinator already started")
            return
        self._started = True
        self._register_engine_callbacks()

        media_task = asyncio.create_task(self._prepare_media())
        channel_task = asyncio.create_task(self._connect_channel())
        try:
            await asyncio.gather(media_task, channel_task)
        except BaseException as e:
            logger.error(f"Call setup failed: {e}")
            for task in (media_task, channel_task):
                task.cancel()
            await asyncio.gather(media_task, channel_task, return_exceptions=True)
            self.tracks.release()
            await self.channel.close()
            raise

    async def run(self):
        """Run the call until it ends."""
        await self.start()

        async for message in self.channel.messages():
            await self.handle_message(message)
            if self.session.ended:
                break

        async with self._lock:
            if self.session.call_state is CallState.IDLE:
                await self._end("signaling closed before joining")
            elif not self.session.ended:
                logger.warning(
                    "Signaling channel closed; call continues until media ends"
                )

        await self._ended.wait()

    async def leave(self):
        """Hang up: notify the remote party and end the call."""
        async with self._lock:
            if self.session.ended:
                return
            if self.channel.is_open:
                self.channel.send(create_leave(self.call_id, self.local_role.value))
            await self._end("local leave")

    async def discard(self):
        """Release a call that never joined. The Session stays IDLE."""
        self.tracks.release()
        await self.channel.close()
        await self.engine.close()

    async def wait_ended(self):
        await self._ended.wait()

    # ===== Setup Barrier =====

    def _register_engine_callbacks(self):
        self.engine.on_local_candidate(self._on_local_candidate)
        self.engine.on_remote_track(self._on_remote_track)
        self.engine.on_connection_state_change(self._on_connection_state)

    async def _prepare_media(self):
        camera, microphone = await self.capture.open_user_media()
        async with self._lock:
            if self.session.ended:
                camera.stop()
                microphone.stop()
                return
            self.tracks.attach(camera, microphone)
            self._media_ready = True
            self._maybe_join()

    async def _connect_channel(self):
        await self.channel.connect(self.local_role.value)
        async with self._lock:
            self._channel_ready = True
            self._maybe_join()

    def _maybe_join(self):
        """Send JOIN once media is ready and the channel is connected."""
        if not (self._media_ready and self._channel_ready):
            return
        if self.session.call_state is not CallState.IDLE:
            return

        if not self.channel.send(create_join(self.call_id, self.local_role.value)):
            logger.error("JOIN could not be sent; staying idle")
            return
        logger.info(f"Joined call {self.call_id} as {self.local_role.value}")
        self.session.transition(CallState.CONNECTING)

    # ===== Inbound Signaling =====

    async def handle_message(self, message: SignalingMessage):
        """Process one inbound signaling message."""
        async with self._lock:
            if self.session.ended:
                logger.debug(f"Call ended, ignoring {message.type.value}")
                return
            if message.call_id != self.call_id:
                logger.warning(
                    f"Ignoring {message.type.value} for call {message.call_id} "
                    f"(expected {self.call_id})"
                )
                return
            if message.to_role is not None and message.to_role != self.local_role.value:
                logger.warning(
                    f"Ignoring {message.type.value} addressed to {message.to_role}"
                )
                return

            logger.debug(f"Handling {message.type.value} from {message.from_role}")
            if message.type is MessageType.READY:
                await self._handle_ready()
            elif message.type is MessageType.OFFER:
                await self._handle_offer(message)
            elif message.type is MessageType.ANSWER:
                await self._handle_answer(message)
            elif message.type is MessageType.ICE:
                await self._handle_ice(message)
            elif message.type is MessageType.LEAVE:
                await self._end(f"{message.from_role or 'remote'} left the call")
            else:
                logger.debug(f"Ignoring {message.type.value}")

    async def _handle_ready(self):
        if self.local_role is not Role.A:
            logger.debug("READY received; waiting for offer from A")
            return
        if self.session.call_state is not CallState.CONNECTING:
            logger.warning(f"READY received while {self.session.call_state.name}, ignoring")
            return
        if self._offer_sent:
            logger.warning("Duplicate READY, offer already sent")
            return

        try:
            offer = await self.engine.create_offer()
            applied = await self.engine.set_local_description(offer)
        except Exception as e:
            logger.error(f"Failed to create offer: {e}")
            return

        self._offer_sent = True
        self.channel.send(
            create_offer(self.call_id, self.local_role.value, self.remote_role.value, applied)
        )
        logger.info(f"Sent offer to {self.remote_role.value}")

    async def _handle_offer(self, message: SignalingMessage):
        if self.local_role is not Role.B:
            logger.warning(f"Ignoring OFFER from {message.from_role}: only A offers")
            return
        if not await self._apply_remote_description(message):
            return

        try:
            answer = await self.engine.create_answer()
            applied = await self.engine.set_local_description(answer)
        except Exception as e:
            logger.error(f"Failed to create answer: {e}")
            return

        self.channel.send(
            create_answer(self.call_id, self.local_role.value, self.remote_role.value, applied)
        )
        logger.info(f"Sent answer to {self.remote_role.value}")

    async def _handle_answer(self, message: SignalingMessage):
        if not self._offer_sent:
            logger.warning("ANSWER received without a sent offer; applying anyway")
        await self._apply_remote_description(message)

    async def _handle_ice(self, message: SignalingMessage):
        if self.remote_description_set:
            await self._apply_candidate(message.payload)
        else:
            self.pending_candidates.append(message.payload)
            logger.debug(
                f"Queued ICE candidate ({len(self.pending_candidates)} pending)"
            )

    async def _apply_remote_description(self, message: SignalingMessage) -> bool:
        description = message.description
        try:
            await self.engine.set_remote_description(description)
        except Exception as e:
            logger.error(f"Remote {description.type} rejected: {e}")
            return False

        self.remote_description_set = True
        logger.info(f"Remote {description.type} applied")
        await self._drain_pending_candidates()
        return True

    async def _drain_pending_candidates(self):
        queued = list(self.pending_candidates)
        self.pending_candidates.clear()
        if queued:
            logger.info(f"Applying {len(queued)} queued ICE candidates")
        for candidate in queued:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: Dict[str, Any]):
        try:
            await self.engine.add_remote_candidate(candidate)
        except Exception as e:
            logger.error(f"Failed to add ICE candidate: {e}")

    # ===== Engine Events =====

    def _on_local_candidate(self, candidate: Dict[str, Any]):
        if self.session.ended:
            logger.debug("Call ended, dropping local ICE candidate")
            return
        self.channel.send(
            create_ice(self.call_id, self.local_role.value, self.remote_role.value, candidate)
        )

    def _on_remote_track(self, track):
        if self.session.ended:
            return
        if self.remote_surface:
            self.remote_surface.attach(track)

    async def _on_connection_state(self, state: str):
        async with self._lock:
            if self.session.ended:
                return
            if state == "connected":
                if self.session.call_state is CallState.CONNECTING:
                    self.session.transition(CallState.CONNECTED)
                    self.stats.start()
            elif state in TERMINAL_CONNECTION_STATES:
                await self._end(f"peer connection {state}")

    # ===== Teardown =====

    async def _end(self, reason: str):
        """Move to ENDED and release everything. Caller holds the lock."""
        if self.session.ended:
            return
        logger.info(f"Ending call {self.call_id}: {reason}")
        self.session.transition(CallState.ENDED)

        try:
            self.stats.stop()
            self.tracks.release()
            for surface in (self.local_surface, self.remote_surface):
                if surface:
                    surface.clear()
            self.pending_candidates.clear()

            try:
                await self.engine.close()
            except Exception as e:
                logger.error(f"Error closing peer engine: {e}")
            await self.channel.close()
        finally:
            self._ended.set()
