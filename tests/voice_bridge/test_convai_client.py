"""Unit tests for the ElevenLabs conversation client.

Tests cover:
- Initiation message sent first, with "unknown" defaults
- Caller audio forwarding and the pre-open policy
- Agent audio relay gated on the stream SID
- Interruption to clear translation
- Ping / pong liveness
- Malformed and unknown messages
- Connection failure and close handling
"""

import asyncio

import pytest
from websockets.exceptions import InvalidURI

from voice_bridge.convai_client import AgentConnectionError, ConvAIClient
from voice_bridge.session import CallPhase, CallSession, Leg

from fakes import FakeAgentSocket, FakeTelephony, make_connector, wait_until


def make_client(session=None, agent_socket=None, **kwargs):
    session = session or CallSession(custom_parameters={"phone": "+15550100", "client_id": "acme"})
    agent_socket = agent_socket or FakeAgentSocket()
    telephony = FakeTelephony()
    client = ConvAIClient(session, telephony, connector=make_connector(agent_socket), **kwargs)
    return client, session, agent_socket, telephony


class TestConnect:
    """Tests for opening the conversation."""

    @pytest.mark.asyncio
    async def test_initiation_is_first_message(self):
        client, _, agent_socket, _ = make_client()

        await client.connect("wss://signed")

        assert client.is_open
        assert agent_socket.sent == [{
            "type": "conversation_initiation_client_data",
            "custom_parameters": {"phone": "+15550100", "client_id": "acme"},
        }]

    @pytest.mark.asyncio
    async def test_missing_parameters_sent_as_unknown(self):
        session = CallSession(custom_parameters={"phone": None, "client_id": None})
        client, _, agent_socket, _ = make_client(session=session)

        await client.connect("wss://signed")

        assert agent_socket.sent[0]["custom_parameters"] == {
            "phone": "unknown",
            "client_id": "unknown",
        }

    @pytest.mark.asyncio
    async def test_config_override_sent(self):
        override = {"agent": {"first_message": "Hi there"}}
        client, _, agent_socket, _ = make_client(config_override=override)

        await client.connect("wss://signed")

        assert agent_socket.sent[0]["conversation_config_override"] == override

    @pytest.mark.asyncio
    async def test_connect_failure_raises_and_closes_leg(self):
        session = CallSession()

        async def failing_connector(url):
            raise OSError("connection refused")

        client = ConvAIClient(session, FakeTelephony(), connector=failing_connector)

        with pytest.raises(AgentConnectionError):
            await client.run("wss://signed")

        assert session.is_leg_closed(Leg.OUTBOUND)
        assert not client.is_open

    @pytest.mark.asyncio
    async def test_handshake_error_wrapped(self):
        async def failing_connector(url):
            raise InvalidURI(url, "bad scheme")

        client = ConvAIClient(CallSession(), FakeTelephony(), connector=failing_connector)

        with pytest.raises(AgentConnectionError):
            await client.connect("http://not-a-websocket")

    @pytest.mark.asyncio
    async def test_call_ended_while_connecting(self):
        client, session, agent_socket, _ = make_client()
        session.mark_leg_closed(Leg.INBOUND)

        await client.connect("wss://signed")

        assert agent_socket.sent == []
        assert agent_socket.closed
        assert session.is_closed


class TestForwardAudio:
    """Tests for caller audio sent to the agent."""

    @pytest.mark.asyncio
    async def test_audio_forwarded_when_open(self):
        client, session, agent_socket, _ = make_client()
        await client.connect("wss://signed")

        await client.forward_audio("AAAA")

        assert agent_socket.sent[-1] == {"user_audio_chunk": "AAAA"}
        assert session.stats.inbound_chunks_forwarded == 1

    @pytest.mark.asyncio
    async def test_audio_forwarded_without_stream_sid(self):
        client, session, agent_socket, _ = make_client()
        await client.connect("wss://signed")
        assert session.stream_sid is None

        await client.forward_audio("AAAA")

        assert {"user_audio_chunk": "AAAA"} in agent_socket.sent

    @pytest.mark.asyncio
    async def test_audio_before_open_dropped_by_default(self):
        client, session, agent_socket, _ = make_client()

        await client.forward_audio("EARLY")
        await client.connect("wss://signed")

        assert {"user_audio_chunk": "EARLY"} not in agent_socket.sent
        assert session.stats.inbound_chunks_dropped == 1

    @pytest.mark.asyncio
    async def test_pre_open_audio_flushed_after_initiation(self):
        client, session, agent_socket, _ = make_client(pre_open_frames=2)

        for payload in ("one", "two", "three"):
            await client.forward_audio(payload)
        await client.connect("wss://signed")

        assert [m.get("type") or m["user_audio_chunk"] for m in agent_socket.sent] == [
            "conversation_initiation_client_data",
            "two",
            "three",
        ]
        assert session.stats.inbound_chunks_dropped == 1
        assert session.stats.inbound_chunks_forwarded == 2

    @pytest.mark.asyncio
    async def test_audio_after_close_dropped(self):
        client, session, agent_socket, _ = make_client()
        await client.connect("wss://signed")
        await client.close()

        await client.forward_audio("LATE")

        assert {"user_audio_chunk": "LATE"} not in agent_socket.sent
        assert session.stats.inbound_chunks_dropped == 1


class TestAgentMessages:
    """Tests for messages received from the agent."""

    @pytest.mark.asyncio
    async def test_audio_relayed_once_stream_started(self):
        client, session, _, telephony = make_client()
        session.record_stream_start("SID1", "CA1")

        await client.handle_message('{"type": "audio", "audio_event": {"audio_base_64": "UklG"}}')

        assert telephony.frames == [
            {"event": "media", "streamSid": "SID1", "media": {"payload": "UklG"}},
        ]
        assert session.stats.outbound_chunks_relayed == 1

    @pytest.mark.asyncio
    async def test_audio_dropped_before_stream_start(self):
        client, session, _, telephony = make_client()

        for _ in range(3):
            await client.handle_message('{"type": "audio", "audio_event": {"audio_base_64": "UklG"}}')

        assert telephony.frames == []
        assert session.stats.outbound_chunks_dropped == 3

    @pytest.mark.asyncio
    async def test_interruption_clears_playback(self):
        client, session, _, telephony = make_client()
        session.record_stream_start("SID1", None)

        await client.handle_message('{"type": "interruption", "interruption_event": {"event_id": 9}}')

        assert telephony.frames == [{"event": "clear", "streamSid": "SID1"}]
        assert session.stats.interruptions == 1

    @pytest.mark.asyncio
    async def test_interruption_before_stream_start_ignored(self):
        client, session, _, telephony = make_client()

        await client.handle_message('{"type": "interruption"}')

        assert telephony.frames == []
        assert session.stats.interruptions == 0

    @pytest.mark.asyncio
    async def test_ping_answered_with_pong(self):
        client, session, agent_socket, telephony = make_client()
        await client.connect("wss://signed")

        await client.handle_message('{"type": "ping", "ping_event": {"event_id": "abc"}}')

        pongs = [m for m in agent_socket.sent if m.get("type") == "pong"]
        assert pongs == [{"type": "pong", "event_id": "abc"}]
        assert telephony.frames == []
        assert session.stats.pings_answered == 1

    @pytest.mark.asyncio
    async def test_pong_precedes_later_sends(self):
        client, _, agent_socket, _ = make_client()
        await client.connect("wss://signed")

        await client.handle_message('{"type": "ping", "ping_event": {"event_id": "abc"}}')
        await client.forward_audio("AAAA")

        assert agent_socket.sent[1:] == [
            {"type": "pong", "event_id": "abc"},
            {"user_audio_chunk": "AAAA"},
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        '{"type": "conversation_initiation_metadata", "conversation_initiation_metadata_event": {"conversation_id": "c1"}}',
        '{"type": "agent_response", "agent_response_event": {"agent_response": "Hello"}}',
        '{"type": "user_transcript", "user_transcription_event": {"user_transcript": "Hi"}}',
        '{"type": "vad_score", "vad_score_event": {"vad_score": 0.4}}',
    ])
    async def test_informational_messages_not_relayed(self, raw):
        client, session, agent_socket, telephony = make_client()
        session.record_stream_start("SID1", None)
        await client.connect("wss://signed")

        await client.handle_message(raw)

        assert telephony.frames == []
        assert len(agent_socket.sent) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "garbage",
        "[]",
        '{"type": "ping"}',
        '{"type": "audio", "audio_event": {}}',
    ])
    async def test_malformed_message_dropped(self, raw):
        client, session, _, telephony = make_client()
        session.record_stream_start("SID1", None)

        await client.handle_message(raw)

        assert telephony.frames == []
        assert session.stats.messages_rejected == 1


class TestRunLoop:
    """Tests for the receive loop and close behavior."""

    @pytest.mark.asyncio
    async def test_messages_processed_in_order_until_close(self):
        client, session, agent_socket, telephony = make_client()
        session.record_stream_start("SID1", None)
        for payload in ("a", "b", "c"):
            agent_socket.push({"type": "audio", "audio_event": {"audio_base_64": payload}})
        agent_socket.hang_up()

        await client.run("wss://signed")

        assert [f["media"]["payload"] for f in telephony.frames] == ["a", "b", "c"]
        assert session.is_leg_closed(Leg.OUTBOUND)

    @pytest.mark.asyncio
    async def test_bad_message_does_not_end_loop(self):
        client, session, agent_socket, telephony = make_client()
        session.record_stream_start("SID1", None)
        agent_socket.push("not json")
        agent_socket.push({"type": "audio", "audio_event": {"audio_base_64": "ok"}})
        agent_socket.hang_up()

        await client.run("wss://signed")

        assert telephony.frames[0]["media"]["payload"] == "ok"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        {"type": "agent_response", "agent_response_event": "oops"},
        {"type": "user_transcript", "user_transcription_event": ["x"]},
        {"type": "conversation_initiation_metadata", "conversation_initiation_metadata_event": "x"},
    ])
    async def test_malformed_event_body_does_not_end_loop(self, message):
        client, session, agent_socket, _ = make_client()
        task = asyncio.create_task(client.run("wss://signed"))
        await wait_until(lambda: client.is_open)

        agent_socket.push(message)
        agent_socket.push({"type": "ping", "ping_event": {"event_id": "abc"}})
        await wait_until(lambda: {"type": "pong", "event_id": "abc"} in agent_socket.sent)

        assert not task.done()
        assert not session.is_leg_closed(Leg.OUTBOUND)

        agent_socket.hang_up()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_close_from_other_leg_ends_loop(self):
        client, session, agent_socket, _ = make_client()
        task = asyncio.create_task(client.run("wss://signed"))
        await wait_until(lambda: client.is_open)

        await client.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert agent_socket.closed
        assert session.is_leg_closed(Leg.OUTBOUND)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        client, session, agent_socket, _ = make_client()
        await client.connect("wss://signed")

        await client.close()
        await client.close()

        assert agent_socket.closed
        assert session.phase == CallPhase.CLOSING

    @pytest.mark.asyncio
    async def test_no_sends_after_close(self):
        client, session, agent_socket, _ = make_client()
        await client.connect("wss://signed")
        await client.close()
        sent_before = list(agent_socket.sent)

        await client.handle_message('{"type": "ping", "ping_event": {"event_id": "late"}}')

        assert agent_socket.sent == sent_before
