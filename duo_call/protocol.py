"""Signaling message protocol for duo-call.

This module defines the messages exchanged between the two call parties
through the websocket relay, and their JSON encoding.

Message Protocol Overview
-------------------------

Every message is a JSON object::

    {"type": "OFFER", "callId": "call1", "from": "A", "to": "B", "payload": {...}}

``to`` is absent on broadcast-style messages (JOIN, LEAVE) and ``from`` is
absent on relay-originated messages (READY).

Message Types
-------------

**JOIN**
    Sent by: either party, once local media is ready and the channel is open
    Purpose: Announces the party to the relay for ``callId``
    Payload: none

**READY**
    Sent by: the relay
    Purpose: Both parties have joined; role A starts negotiation
    Payload: none

**OFFER** / **ANSWER**
    Sent by: A (offer) / B (answer)
    Purpose: Session description exchange
    Payload: ``{"type": "offer" | "answer", "sdp": "..."}``

**ICE**
    Sent by: either party
    Purpose: Trickled network path candidate
    Payload: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``

**LEAVE**
    Sent by: either party
    Purpose: The sender hung up; the receiver ends its session
    Payload: none

Message Flow Example
--------------------

::

    A -> relay: JOIN          B -> relay: JOIN
    relay -> A, B: READY
    A -> B: OFFER
    B -> A: ANSWER
    A <-> B: ICE (any number, any time after the descriptions are created)
    A -> B: LEAVE
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from duo_call.exceptions import MalformedMessageError

logger = logging.getLogger(__name__)


class MessageType(Enum):
    """Signaling message types."""

    JOIN = "JOIN"
    READY = "READY"
    OFFER = "OFFER"
    ANSWER = "ANSWER"
    ICE = "ICE"
    LEAVE = "LEAVE"


DESCRIPTION_TYPES = {MessageType.OFFER, MessageType.ANSWER}


@dataclass
class SessionDescription:
    """Negotiated media description carried by OFFER and ANSWER.

    Attributes:
        type: "offer" or "answer"
        sdp: Session description text
    """

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDescription":
        return cls(type=data["type"], sdp=data["sdp"])


@dataclass
class SignalingMessage:
    """One message on the signaling channel.

    Attributes:
        type: Message kind
        call_id: Call the message belongs to (``callId`` on the wire)
        from_role: Sending role (``from`` on the wire)
        to_role: Target role (``to`` on the wire), None for broadcasts
        payload: Kind-specific payload, None when empty
    """

    type: MessageType
    call_id: str
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @property
    def description(self) -> SessionDescription:
        """Session description payload of an OFFER or ANSWER."""
        if self.type not in DESCRIPTION_TYPES:
            raise TypeError(f"{self.type.value} carries no session description")
        return SessionDescription.from_dict(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value, "callId": self.call_id}
        if self.from_role is not None:
            data["from"] = self.from_role
        if self.to_role is not None:
            data["to"] = self.to_role
        if self.payload is not None:
            data["payload"] = self.payload
        return data


def serialize_message(message: SignalingMessage) -> str:
    """Serialize a message to its JSON wire form.

    Args:
        message: SignalingMessage instance

    Returns:
        JSON string representation

    Raises:
        TypeError: If message is not a SignalingMessage
    """
    if not isinstance(message, SignalingMessage):
        raise TypeError(f"Expected SignalingMessage, got {type(message)}")
    return json.dumps(message.to_dict())


def parse_message(raw: Union[str, bytes]) -> SignalingMessage:
    """Parse a JSON wire frame into a SignalingMessage.

    Args:
        raw: Text (or UTF-8 bytes) received from the relay

    Returns:
        SignalingMessage instance

    Raises:
        MalformedMessageError: If the frame is not valid JSON, has an unknown
            type, or its payload does not match its type
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedMessageError(f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        raise MalformedMessageError("Message must be a JSON object")

    raw_type = data.get("type")
    if not isinstance(raw_type, str):
        raise MalformedMessageError("Message missing 'type' field")
    try:
        msg_type = MessageType(raw_type.upper())
    except ValueError:
        raise MalformedMessageError(f"Unknown message type: {raw_type}")

    call_id = data.get("callId")
    if not isinstance(call_id, str) or not call_id:
        raise MalformedMessageError("Message missing 'callId' field")

    from_role = data.get("from")
    to_role = data.get("to")
    for field, value in (("from", from_role), ("to", to_role)):
        if value is not None and not isinstance(value, str):
            raise MalformedMessageError(f"'{field}' must be a string")

    payload = data.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise MalformedMessageError("'payload' must be an object")

    if msg_type in DESCRIPTION_TYPES:
        if not payload or not isinstance(payload.get("sdp"), str):
            raise MalformedMessageError(f"{msg_type.value} payload missing 'sdp'")
        if payload.get("type") != msg_type.value.lower():
            raise MalformedMessageError(
                f"{msg_type.value} payload has description type {payload.get('type')!r}"
            )
    elif msg_type is MessageType.ICE:
        if not payload or not isinstance(payload.get("candidate"), str):
            raise MalformedMessageError("ICE payload missing 'candidate'")

    return SignalingMessage(
        type=msg_type,
        call_id=call_id,
        from_role=from_role,
        to_role=to_role,
        payload=payload,
    )


def create_join(call_id: str, from_role: str) -> SignalingMessage:
    """Create JOIN announcement.

    Args:
        call_id: Call to join
        from_role: Local role

    Returns:
        SignalingMessage instance
    """
    return SignalingMessage(MessageType.JOIN, call_id, from_role=from_role)


def create_ready(call_id: str) -> SignalingMessage:
    """Create READY notification (relay side)."""
    return SignalingMessage(MessageType.READY, call_id)


def create_offer(
    call_id: str, from_role: str, to_role: str, description: SessionDescription
) -> SignalingMessage:
    """Create OFFER message.

    Args:
        call_id: Call the offer belongs to
        from_role: Offering role (A)
        to_role: Answering role (B)
        description: Applied local description

    Returns:
        SignalingMessage instance
    """
    return SignalingMessage(
        MessageType.OFFER, call_id, from_role, to_role, description.to_dict()
    )


def create_answer(
    call_id: str, from_role: str, to_role: str, description: SessionDescription
) -> SignalingMessage:
    """Create ANSWER message.

    Args:
        call_id: Call the answer belongs to
        from_role: Answering role (B)
        to_role: Offering role (A)
        description: Applied local description

    Returns:
        SignalingMessage instance
    """
    return SignalingMessage(
        MessageType.ANSWER, call_id, from_role, to_role, description.to_dict()
    )


def create_ice(
    call_id: str, from_role: str, to_role: str, candidate: Dict[str, Any]
) -> SignalingMessage:
    """Create ICE message carrying one local path candidate.

    Args:
        call_id: Call the candidate belongs to
        from_role: Local role
        to_role: Remote role
        candidate: ``{"candidate", "sdpMid", "sdpMLineIndex"}`` dict

    Returns:
        SignalingMessage instance
    """
    return SignalingMessage(MessageType.ICE, call_id, from_role, to_role, candidate)


def create_leave(call_id: str, from_role: str) -> SignalingMessage:
    """Create LEAVE message."""
    return SignalingMessage(MessageType.LEAVE, call_id, from_role=from_role)
