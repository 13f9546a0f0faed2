"""Outbound leg: websocket client for ElevenLabs Conversational AI.

One ConvAIClient exists per call. It opens the signed conversation URL,
sends the initiation message, forwards caller audio, and dispatches the
agent's messages back to the telephony leg.

Message handling:
- conversation_initiation_metadata: logged
- audio: relayed to Twilio as a media frame once the stream has started
- interruption: Twilio is told to clear queued playback
- ping: answered immediately with a pong carrying the same event id
- agent_response / user_transcript: logged
"""

import asyncio
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .envelopes import (
    ConvAIMessageType,
    EnvelopeError,
    agent_audio_to_media_frame,
    clear_frame,
    encode_message,
    event_body,
    initiation_message,
    parse_message,
    pong_for,
)
from .logging_utils import CallLoggerAdapter, get_logger
from .session import CallSession, Leg

if TYPE_CHECKING:
    from .telephony import TelephonyHandler

logger = get_logger(__name__)

Connector = Callable[[str], Awaitable[Any]]


class AgentConnectionError(ConnectionError):
    """Raised when the conversation websocket cannot be opened."""

    pass


class ConvAIClient:
    """Client for one ElevenLabs conversation, bound to one call session.

    The client is the only writer on the conversation websocket. Caller
    audio arrives through ``forward_audio``; everything the agent sends is
    handled by ``run``.

    Example:
        client = ConvAIClient(session, telephony)
        await client.run(signed_url)
    """

    def __init__(
        self,
        session: CallSession,
        telephony: "TelephonyHandler",
        config_override: Optional[Mapping[str, Any]] = None,
        pre_open_frames: int = 0,
        connector: Optional[Connector] = None,
    ) -> None:
        """Initialize the client.

        Args:
            session: Session shared with the telephony leg.
            telephony: Handler owning the Twilio websocket.
            config_override: Optional conversation_config_override block.
            pre_open_frames: Caller frames kept, oldest first, while the
                websocket is still opening. 0 drops them.
            connector: Coroutine function opening a websocket for a URL.
                Defaults to websockets.connect.
        """
        self.session = session
        self.telephony = telephony
        self.config_override = config_override
        self._connector = connector or websockets.connect
        self._ws: Optional[Any] = None
        self._open = False
        self._closed = False
        self._pending: Optional[deque[str]] = (
            deque(maxlen=pre_open_frames) if pre_open_frames > 0 else None
        )
        self.log = CallLoggerAdapter(logger, session)

    @property
    def is_open(self) -> bool:
        """Whether the conversation is initiated and audio can be sent."""
        return self._open and not self._closed

    async def run(self, signed_url: str) -> None:
        """Connect and process agent messages until the websocket closes.

        Raises:
            AgentConnectionError: If the websocket cannot be opened.
        """
        try:
            await self.connect(signed_url)
            if not self.is_open:
                return

            async for raw in self._ws:
                await self.handle_message(raw)

        except ConnectionClosed as e:
            self.log.info("ElevenLabs connection closed: %s", e)

        finally:
            await self.close()

    async def connect(self, signed_url: str) -> None:
        """Open the websocket and send the initiation message.

        Caller audio held while connecting is flushed right after the
        initiation message, in arrival order.

        Raises:
            AgentConnectionError: If the websocket cannot be opened.
        """
        self.log.info("Connecting to ElevenLabs Conversational AI")
        try:
            self._ws = await self._connector(signed_url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self.log.error("ElevenLabs connection failed: %s", e)
            await self.close()
            raise AgentConnectionError(f"Failed to connect to ElevenLabs: {e}") from e

        if self._closed or self.session.is_closing:
            # The telephony leg ended while we were connecting
            self.log.info("Call ended before the conversation opened")
            await self._close_socket()
            await self.close()
            return

        init_message = initiation_message(self.session.custom_parameters, self.config_override)
        await self._send(init_message)
        self.log.info(
            "Sent conversation initiation",
            extra={"custom_parameters": init_message["custom_parameters"]},
        )

        while self._pending:
            await self._send({"user_audio_chunk": self._pending.popleft()})
            self.session.stats.inbound_chunks_forwarded += 1

        self._open = True

    async def forward_audio(self, payload: str) -> None:
        """Send one base64 caller audio chunk to the agent.

        Chunks arriving before the conversation is open are held in the
        bounded pre-open queue if one is configured, otherwise dropped.
        """
        if self.is_open:
            try:
                await self._send({"user_audio_chunk": payload})
                self.session.stats.inbound_chunks_forwarded += 1
            except ConnectionClosed:
                self.session.stats.inbound_chunks_dropped += 1
                self.log.debug("Dropped caller audio: ElevenLabs connection closed")
            return

        if self._pending is not None and not self._closed and not self.session.is_closing:
            if len(self._pending) == self._pending.maxlen:
                self.session.stats.inbound_chunks_dropped += 1
            self._pending.append(payload)
            return

        self.session.stats.inbound_chunks_dropped += 1
        self.log.debug("Dropped caller audio: conversation not open")

    async def handle_message(self, raw: Any) -> None:
        """Dispatch one message received from the agent.

        Malformed messages are logged and dropped; they never end the call.
        """
        try:
            message = parse_message(raw)
            await self._process_message(message)
        except EnvelopeError as e:
            self.session.stats.messages_rejected += 1
            self.log.warning("Dropped ElevenLabs message: %s", e)

    async def _process_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")

        if msg_type == ConvAIMessageType.PING.value:
            await self._send(pong_for(message))
            self.session.stats.pings_answered += 1

        elif msg_type == ConvAIMessageType.AUDIO.value:
            stream_sid = self.session.stream_sid
            if not stream_sid:
                self.session.stats.outbound_chunks_dropped += 1
                self.log.debug("Dropped agent audio: stream not started")
                return
            await self.telephony.send_frame(agent_audio_to_media_frame(message, stream_sid))
            self.session.stats.outbound_chunks_relayed += 1

        elif msg_type == ConvAIMessageType.INTERRUPTION.value:
            stream_sid = self.session.stream_sid
            if not stream_sid:
                self.log.debug("Interruption before stream start, nothing to clear")
                return
            self.log.info("Agent interrupted, clearing Twilio playback")
            await self.telephony.send_frame(clear_frame(stream_sid))
            self.session.stats.interruptions += 1

        elif msg_type == ConvAIMessageType.CONVERSATION_INITIATION_METADATA.value:
            metadata = event_body(message, "conversation_initiation_metadata_event")
            self.log.info(
                "Received initiation metadata",
                extra={"conversation_id": metadata.get("conversation_id")},
            )

        elif msg_type == ConvAIMessageType.AGENT_RESPONSE.value:
            event = event_body(message, "agent_response_event")
            self.log.info("Agent response: %s", event.get("agent_response"))

        elif msg_type == ConvAIMessageType.USER_TRANSCRIPT.value:
            event = event_body(message, "user_transcription_event")
            self.log.info("User transcript: %s", event.get("user_transcript"))

        else:
            self.log.info("Unhandled ElevenLabs message type: %s", msg_type)

    async def _send(self, message: Mapping[str, Any]) -> None:
        if self._ws is None or self._closed:
            return
        await self._ws.send(encode_message(message))

    async def close(self) -> None:
        """Close the conversation websocket and mark the outbound leg closed."""
        if self._closed:
            return
        self._closed = True
        self._open = False
        if self._pending:
            self.session.stats.inbound_chunks_dropped += len(self._pending)
            self._pending.clear()

        await self._close_socket()
        self.session.mark_leg_closed(Leg.OUTBOUND)
        self.log.info("ElevenLabs disconnected")

    async def _close_socket(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except Exception as e:
            self.log.debug("Error closing ElevenLabs connection: %s", e)
