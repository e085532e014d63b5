"""Websocket signaling channel.

Owns exactly one websocket to the relay for the lifetime of a call. Inbound
frames are parsed into SignalingMessage objects and handed out in arrival
order by ``messages()``. ``send()`` never blocks: while the socket is open
messages are written in call order by a background writer, and once it is
closed they are dropped with a warning.

A channel instance is single-use. Reconnecting means creating a new one.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from duo_call.exceptions import MalformedMessageError, SignalingChannelError
from duo_call.protocol import SignalingMessage, parse_message, serialize_message

logger = logging.getLogger(__name__)

# Marks the end of the inbound stream.
_END_OF_STREAM = object()


def build_signaling_url(base_url: str, user_id: str) -> str:
    """Add the per-user ``userId`` query parameter to the relay URL.

    Args:
        base_url: Relay endpoint, e.g. ``ws://host:8443/ws/signaling``
        user_id: Identifier the relay routes messages by (the local role)

    Returns:
        URL with ``userId`` set, other query parameters preserved.
    """
    parts = urlparse(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "userId"]
    query.append(("userId", user_id))
    return urlunparse(parts._replace(query=urlencode(query)))


class SignalingChannel:
    """Bidirectional message channel to the signaling relay.

    Attributes:
        url: Relay endpoint without the ``userId`` parameter
        websocket: Open connection, None before ``connect()``
        connected: Event set once the connection is open
    """

    def __init__(
        self,
        url: str,
        connector: Optional[Callable[[str], Awaitable]] = None,
    ):
        """Initialize SignalingChannel.

        Args:
            url: Relay endpoint
            connector: Coroutine factory opening a websocket for a URL
                (defaults to ``websockets.connect``)
        """
        self.url = url
        self._connector = connector or websockets.connect
        self.websocket = None
        self.connected = asyncio.Event()

        self._inbound: asyncio.Queue = asyncio.Queue()
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None

        self._used = False
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self, local_role: str) -> None:
        """Open the connection for ``local_role``.

        Raises:
            SignalingChannelError: If the channel was already used or the
                relay cannot be reached
        """
        if self._used:
            raise SignalingChannelError(
                "Signaling channel already used; create a new channel to reconnect"
            )
        self._used = True

        url = build_signaling_url(self.url, str(local_role))
        logger.info(f"Connecting to signaling relay: {url}")
        try:
            self.websocket = await self._connector(url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._mark_closed()
            raise SignalingChannelError(f"Failed to connect to {url}: {e}") from e

        if self._closed:
            # close() ran while the connection was being opened
            await self.websocket.close()
            raise SignalingChannelError("Signaling channel closed while connecting")

        self._open = True
        self._reader_task = asyncio.create_task(self._reader_loop())
        self._writer_task = asyncio.create_task(self._writer_loop())
        logger.info(f"Signaling channel open as {local_role}")
        self.connected.set()

    def send(self, message: SignalingMessage) -> bool:
        """Queue ``message`` for sending without waiting.

        Returns:
            True if the message was accepted, False if the channel is not open
            and the message was dropped
        """
        if not self._open:
            logger.warning(
                f"Signaling channel not open, dropping {message.type.value} message"
            )
            return False

        self._outbound.put_nowait(serialize_message(message))
        logger.debug(f"Queued {message.type.value} to {message.to_role or 'relay'}")
        return True

    async def messages(self) -> AsyncIterator[SignalingMessage]:
        """Yield inbound messages in arrival order until the channel closes."""
        while True:
            item = await self._inbound.get()
            if item is _END_OF_STREAM:
                return
            yield item

    async def close(self) -> None:
        """Flush queued messages, close the connection and end the stream."""
        was_open = self._open
        self._mark_closed()

        if self._writer_task and not self._writer_task.done():
            try:
                await asyncio.wait_for(self._writer_task, timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("Timed out flushing outbound signaling messages")

        if self.websocket is not None:
            try:
                await self.websocket.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing signaling websocket: {e}")
            if was_open:
                logger.info("Signaling channel closed")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

    def _mark_closed(self) -> None:
        self._open = False
        if self._closed:
            return
        self._closed = True
        self._inbound.put_nowait(_END_OF_STREAM)
        self._outbound.put_nowait(None)

    async def _reader_loop(self):
        """Parse inbound frames and queue them for ``messages()``."""
        try:
            async for raw in self.websocket:
                try:
                    message = parse_message(raw)
                except MalformedMessageError as e:
                    logger.warning(f"Dropping malformed signaling message: {e}")
                    continue

                logger.debug(
                    f"Received {message.type.value} from {message.from_role or 'relay'}"
                )
                self._inbound.put_nowait(message)
        except ConnectionClosed as e:
            logger.warning(f"Signaling connection closed: {e}")
        finally:
            self._mark_closed()

    async def _writer_loop(self):
        """Write queued frames in order until the channel closes."""
        while True:
            text = await self._outbound.get()
            if text is None:
                return
            try:
                await self.websocket.send(text)
            except ConnectionClosed as e:
                logger.warning(f"Signaling connection closed while sending: {e}")
                self._mark_closed()
                return
            except (WebSocketException, OSError) as e:
                logger.error(f"Failed to send signaling message: {e}")
                self._mark_closed()
                return
