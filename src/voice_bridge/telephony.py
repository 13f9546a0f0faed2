"""Inbound leg: handler for the Twilio Media Streams websocket.

The handler owns the websocket Twilio opened to ``/media-stream``. It reads
Twilio frames in arrival order, records the stream identifiers, hands
caller audio to the conversation client, and is the only writer of
frames going back to Twilio.
"""

from typing import TYPE_CHECKING, Any, Mapping, Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from .envelopes import (
    EnvelopeError,
    TwilioEvent,
    encode_message,
    extract_stream_start,
    media_frame_to_user_audio,
    parse_message,
)
from .logging_utils import CallLoggerAdapter, get_logger
from .session import CallSession, Leg, SessionEvent

if TYPE_CHECKING:
    from .convai_client import ConvAIClient

logger = get_logger(__name__)


class TelephonyHandler:
    """Handler for one Twilio media stream, bound to one call session.

    Attributes:
        session: Session shared with the conversation client.
        websocket: Accepted FastAPI websocket from Twilio.
        agent: Conversation client receiving caller audio. Attached by the
            supervisor once the signed URL is known.
    """

    def __init__(
        self,
        session: CallSession,
        websocket: WebSocket,
        agent: Optional["ConvAIClient"] = None,
    ) -> None:
        self.session = session
        self.websocket = websocket
        self.agent = agent
        self._closed = False
        self.log = CallLoggerAdapter(logger, session)

    async def run(self) -> None:
        """Process Twilio frames until the websocket closes."""
        try:
            while not self._closed:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(
                        message.get("code", status.WS_1000_NORMAL_CLOSURE),
                        message.get("reason"),
                    )
                # Text or binary, parse_message accepts both
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                await self.handle_frame(raw)

        except WebSocketDisconnect as e:
            self.log.info("Twilio client disconnected (code=%s)", e.code)
            # The peer is gone, there is nothing left to close on our side
            self._closed = True
            self.session.mark_leg_closed(Leg.INBOUND)

        except RuntimeError as e:
            # Starlette raises once the socket was closed from our side
            if not self._closed:
                raise
            self.log.debug("Twilio receive stopped after close: %s", e)

        finally:
            await self.close()

    async def handle_frame(self, raw: Any) -> None:
        """Dispatch one Twilio frame.

        Malformed frames are logged and dropped; they never end the call.
        """
        try:
            frame = parse_message(raw)
            await self._process_frame(frame)
        except EnvelopeError as e:
            self.session.stats.messages_rejected += 1
            self.log.warning("Dropped Twilio frame: %s", e)

    async def _process_frame(self, frame: dict[str, Any]) -> None:
        event = frame.get("event")

        if event != TwilioEvent.MEDIA.value:
            self.log.debug("Received Twilio event: %s", event)

        if event == TwilioEvent.MEDIA.value:
            audio = media_frame_to_user_audio(frame)
            if self.agent is None:
                self.session.stats.inbound_chunks_dropped += 1
                return
            await self.agent.forward_audio(audio["user_audio_chunk"])

        elif event == TwilioEvent.START.value:
            stream_sid, call_sid = extract_stream_start(frame)
            if self.session.record_stream_start(stream_sid, call_sid):
                self.log.info("Stream started - StreamSid: %s, CallSid: %s", stream_sid, call_sid)

        elif event == TwilioEvent.STOP.value:
            self.session.transition(SessionEvent.STREAM_STOPPED)
            self.log.info("Stream %s ended", self.session.stream_sid)
            if self.agent is not None:
                await self.agent.close()

        elif event in (TwilioEvent.CONNECTED.value, TwilioEvent.MARK.value):
            pass

        else:
            self.log.info("Unhandled Twilio event: %s", event)

    async def send_frame(self, frame: Mapping[str, Any]) -> None:
        """Send one frame to Twilio if the inbound leg is still open."""
        if self._closed or self.session.is_leg_closed(Leg.INBOUND):
            self.log.debug("Skipped send to Twilio: connection closed")
            return
        try:
            await self.websocket.send_text(encode_message(frame))
        except (WebSocketDisconnect, RuntimeError) as e:
            self.log.debug("Send to Twilio failed: %s", e)

    async def close(self, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
        """Close the Twilio websocket, then the conversation.

        Safe to call more than once and from either leg.
        """
        if not self.session.is_leg_closed(Leg.INBOUND):
            self._closed = True
            try:
                await self.websocket.close(code=code)
            except Exception as e:
                self.log.debug("Error closing Twilio connection: %s", e)
            self.session.mark_leg_closed(Leg.INBOUND)
            self.log.info("Twilio connection closed")

        self._closed = True
        if self.agent is not None:
            await self.agent.close()
