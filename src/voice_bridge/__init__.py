"""Voice bridge between Twilio Media Streams and ElevenLabs Conversational AI.

Each phone call arrives as a Twilio media stream websocket and is bridged
to its own ElevenLabs conversation websocket. Audio is relayed opaquely in
both directions; stream start/stop, barge-in and keepalive pings are
translated between the two protocols.

Endpoints:
- GET|POST /twilio/inbound_call - Twilio webhook for incoming calls
- WebSocket /media-stream - Media stream bridge
- GET /health - Health check endpoint
"""

__version__ = "1.0.0"
