"""aiortc-backed peer engine.

Wraps one RTCPeerConnection behind the narrow interface the call coordinator
and track controller use. Session descriptions and candidates cross this
boundary in their wire form (SessionDescription / candidate dicts) so the
coordinator never touches aiortc types.
"""

import logging
from dataclasses import asdict, is_dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from duo_call.protocol import SessionDescription

logger = logging.getLogger(__name__)


def build_ice_servers(ice_servers: Optional[List[Dict[str, Any]]]) -> List[RTCIceServer]:
    """Convert ``{"urls", "username", "credential"}`` dicts to RTCIceServer."""
    return [
        RTCIceServer(
            urls=server["urls"],
            username=server.get("username"),
            credential=server.get("credential"),
        )
        for server in ice_servers or []
    ]


def candidate_from_payload(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Parse an ICE message payload into an RTCIceCandidate.

    Returns:
        The candidate, or None for an end-of-candidates marker (empty string)
    """
    text = payload.get("candidate") or ""
    if not text:
        return None
    if text.startswith("candidate:"):
        text = text[len("candidate:"):]
    candidate = candidate_from_sdp(text)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Format an RTCIceCandidate as an ICE message payload."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class AiortcPeerEngine:
    """Peer engine backed by aiortc's RTCPeerConnection.

    Attributes:
        pc: Underlying peer connection
    """

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None):
        """Initialize AiortcPeerEngine.

        Args:
            ice_servers: STUN/TURN servers as ``{"urls", "username", "credential"}``
        """
        self.pc = RTCPeerConnection(
            configuration=RTCConfiguration(iceServers=build_ice_servers(ice_servers))
        )
        self._video_sender = None

    # ===== Descriptions =====

    async def create_offer(self) -> SessionDescription:
        offer = await self.pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self.pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(
        self, description: SessionDescription
    ) -> SessionDescription:
        """Apply ``description`` locally.

        aiortc gathers candidates during this call, so the applied
        description (with candidates) is returned for sending.
        """
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        local = self.pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_remote_candidate(self, payload: Dict[str, Any]):
        candidate = candidate_from_payload(payload)
        if candidate is None:
            logger.debug("Received empty ICE candidate (end of candidates)")
            return
        await self.pc.addIceCandidate(candidate)

    # ===== Tracks =====

    def add_track(self, track: MediaStreamTrack):
        sender = self.pc.addTrack(track)
        if track.kind == "video":
            self._video_sender = sender

    def replace_video_track(self, track: MediaStreamTrack):
        """Swap the outgoing video track in place, without renegotiation."""
        if self._video_sender is None:
            raise RuntimeError("No outgoing video track to replace")
        self._video_sender.replaceTrack(track)

    # ===== Events =====

    def on_local_candidate(self, callback: Callable[[Dict[str, Any]], None]):
        @self.pc.on("icecandidate")
        def on_ice_candidate(event):
            candidate = getattr(event, "candidate", event)
            if candidate:
                callback(candidate_to_payload(candidate))

    def on_remote_track(self, callback: Callable[[MediaStreamTrack], None]):
        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            callback(track)

    def on_connection_state_change(self, callback: Callable[[str], Awaitable[None]]):
        @self.pc.on("connectionstatechange")
        async def on_state_change():
            logger.info(f"Peer connection state: {self.pc.connectionState}")
            await callback(self.pc.connectionState)

    # ===== Stats / Teardown =====

    async def get_stats(self) -> List[Dict[str, Any]]:
        report = await self.pc.getStats()
        entries = [asdict(s) if is_dataclass(s) else dict(s) for s in report.values()]
        entries.extend(self._selected_path_stats())
        return entries

    def _selected_path_stats(self) -> List[Dict[str, Any]]:
        """Report the nominated local candidate type as browser-style entries.

        aiortc does not expose the selected candidate pair, so this reads
        private attributes (``RTCIceTransport._connection`` and aioice's
        ``Connection._nominated``). If a later aiortc/aioice release renames
        them, nothing is returned and the path type reads "unknown".
        """
        for transceiver in self.pc.getTransceivers():
            transport = getattr(transceiver.sender.transport, "transport", None)
            connection = getattr(transport, "_connection", None)
            nominated = getattr(connection, "_nominated", None)
            if not nominated:
                continue
            pair = next(iter(nominated.values()))
            return [
                {"type": "local-candidate", "id": "selected", "candidateType": pair.local_candidate.type},
                {"type": "candidate-pair", "state": "succeeded", "nominated": True, "localCandidateId": "selected"},
            ]
        return []

    async def close(self):
        await self.pc.close()
