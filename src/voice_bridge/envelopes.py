"""Message envelopes for Twilio Media Streams and ElevenLabs Conversational AI.

This module holds the pure mapping functions between the two wire schemas.
Audio payloads are base64 on both sides, so translation only rewraps the
payload in the other side's envelope; the bytes are never decoded.

Twilio frames (inbound leg):
- {"event": "start", "start": {"streamSid": ..., "callSid": ...}}
- {"event": "media", "media": {"payload": "<base64>"}}
- {"event": "stop"}

ElevenLabs messages (outbound leg):
- {"type": "audio", "audio_event": {"audio_base_64": "<base64>"}}
- {"type": "interruption", ...}
- {"type": "ping", "ping_event": {"event_id": ...}}
"""

import json
from enum import Enum
from typing import Any, Mapping, Optional

UNKNOWN_PARAMETER = "unknown"


class EnvelopeError(ValueError):
    """Raised when a message cannot be parsed or translated."""

    pass


class TwilioEvent(str, Enum):
    """Twilio Media Streams event names."""

    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"
    CLEAR = "clear"


class ConvAIMessageType(str, Enum):
    """ElevenLabs Conversational AI message types."""

    # Client messages (sent to ElevenLabs)
    CONVERSATION_INITIATION_CLIENT_DATA = "conversation_initiation_client_data"
    PONG = "pong"

    # Server messages (received from ElevenLabs)
    CONVERSATION_INITIATION_METADATA = "conversation_initiation_metadata"
    AUDIO = "audio"
    INTERRUPTION = "interruption"
    PING = "ping"
    AGENT_RESPONSE = "agent_response"
    USER_TRANSCRIPT = "user_transcript"


def parse_message(raw: Any) -> dict[str, Any]:
    """Decode one websocket frame into a JSON object.

    Args:
        raw: Text (or bytes) frame as received from either leg.

    Returns:
        The decoded message.

    Raises:
        EnvelopeError: If the frame is not JSON or not a JSON object.
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EnvelopeError(f"Invalid JSON frame: {e}") from e

    if not isinstance(message, dict):
        raise EnvelopeError(f"Expected a JSON object, got {type(message).__name__}")

    return message


def encode_message(message: Mapping[str, Any]) -> str:
    """Serialize a message for sending."""
    return json.dumps(message)


def _require_dict(message: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = message.get(key)
    if not isinstance(value, dict):
        raise EnvelopeError(f"Missing '{key}' object in {message.get('event') or message.get('type')!r} message")
    return value


def event_body(message: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Return the ``<type>_event`` object of a message, or {} if absent or malformed."""
    value = message.get(key)
    return value if isinstance(value, dict) else {}


def extract_stream_start(frame: Mapping[str, Any]) -> tuple[str, Optional[str]]:
    """Read the stream and call identifiers from a Twilio start frame.

    Returns:
        Tuple of (stream_sid, call_sid). call_sid may be None.

    Raises:
        EnvelopeError: If the frame carries no streamSid.
    """
    start = _require_dict(frame, "start")
    stream_sid = start.get("streamSid") or frame.get("streamSid")
    if not stream_sid:
        raise EnvelopeError("Start frame without streamSid")
    return stream_sid, start.get("callSid")


def media_frame_to_user_audio(frame: Mapping[str, Any]) -> dict[str, str]:
    """Translate a Twilio media frame into an ElevenLabs user audio chunk.

    Raises:
        EnvelopeError: If the frame has no media payload.
    """
    media = _require_dict(frame, "media")
    payload = media.get("payload")
    if not payload or not isinstance(payload, str):
        raise EnvelopeError("Media frame without payload")
    return {"user_audio_chunk": payload}


def extract_agent_audio(message: Mapping[str, Any]) -> Optional[str]:
    """Return the base64 audio carried by an ElevenLabs audio message.

    Two payload locations are accepted: the older ``audio.chunk`` and the
    current ``audio_event.audio_base_64``. The first non-empty one wins.
    """
    for container, field_name in (("audio", "chunk"), ("audio_event", "audio_base_64")):
        section = message.get(container)
        if isinstance(section, dict):
            payload = section.get(field_name)
            if payload and isinstance(payload, str):
                return payload
    return None


def agent_audio_to_media_frame(message: Mapping[str, Any], stream_sid: str) -> dict[str, Any]:
    """Translate an ElevenLabs audio message into a Twilio media frame.

    Raises:
        EnvelopeError: If the message carries no audio payload.
    """
    payload = extract_agent_audio(message)
    if payload is None:
        raise EnvelopeError("Audio message without payload")
    return {
        "event": TwilioEvent.MEDIA.value,
        "streamSid": stream_sid,
        "media": {"payload": payload},
    }


def clear_frame(stream_sid: str) -> dict[str, str]:
    """Build the Twilio frame that discards queued playback audio."""
    return {"event": TwilioEvent.CLEAR.value, "streamSid": stream_sid}


def pong_for(message: Mapping[str, Any]) -> dict[str, Any]:
    """Build the pong answering an ElevenLabs ping.

    Raises:
        EnvelopeError: If the ping carries no event id.
    """
    ping_event = message.get("ping_event")
    event_id = ping_event.get("event_id") if isinstance(ping_event, dict) else None
    if event_id is None:
        raise EnvelopeError("Ping without ping_event.event_id")
    return {"type": ConvAIMessageType.PONG.value, "event_id": event_id}


def initiation_message(
    custom_parameters: Mapping[str, Optional[str]],
    config_override: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Build the conversation initiation message sent once per call.

    Args:
        custom_parameters: Routing parameters captured at accept time.
            Missing or empty values are sent as "unknown".
        config_override: Optional conversation_config_override block.

    Returns:
        The initiation message.
    """
    message: dict[str, Any] = {
        "type": ConvAIMessageType.CONVERSATION_INITIATION_CLIENT_DATA.value,
        "custom_parameters": {
            name: value or UNKNOWN_PARAMETER
            for name, value in custom_parameters.items()
        },
    }
    if config_override:
        message["conversation_config_override"] = dict(config_override)
    return message
