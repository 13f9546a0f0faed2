"""FastAPI server bridging Twilio phone calls to ElevenLabs Conversational AI.

Endpoints:
- GET /                       - Liveness message
- GET /health                 - Readiness payload
- GET|POST /twilio/inbound_call - Twilio voice webhook (returns TwiML)
- WebSocket /media-stream     - Twilio Media Streams, bridged per call

Environment Variables:
- ELEVENLABS_AGENT_ID: Conversational AI agent ID (required)
- ELEVENLABS_API_KEY: ElevenLabs API key (required)
- PORT: Listener port (default: 8000)
- LOG_LEVEL: Logging level (default: INFO)

Example:
    voice-bridge
    uvicorn voice_bridge.main:app --host 0.0.0.0 --port 8000
"""

import sys
from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.responses import Response
from twilio.twiml.voice_response import Connect, Stream, VoiceResponse

from .bridge import BridgeSupervisor
from .config import config
from .logging_utils import get_logger, setup_logging

logger = get_logger(__name__)

SERVICE_NAME = "voice-bridge"
MEDIA_STREAM_PATH = "/media-stream"

_supervisor: Optional[BridgeSupervisor] = None


def get_supervisor() -> BridgeSupervisor:
    """Dependency returning the process-wide bridge supervisor."""
    global _supervisor
    if _supervisor is None:
        _supervisor = BridgeSupervisor()
    return _supervisor


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    missing = config.validate()
    if missing:
        logger.warning("Missing configuration: %s - calls will fail", ", ".join(missing))
    logger.info("Voice bridge ready")

    yield

    logger.info("Voice bridge shutting down")


app = FastAPI(
    title="Voice Bridge",
    description="Twilio Media Streams to ElevenLabs Conversational AI bridge",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root() -> dict[str, str]:
    """Liveness endpoint."""
    return {"message": "Server is running"}


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Readiness endpoint.

    Returns:
        Static readiness payload.
    """
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": app.version,
    }


def build_stream_twiml(host: str, routing_params: dict[str, str]) -> str:
    """Build the TwiML connecting a call to the media stream websocket.

    Args:
        host: Public host name Twilio should connect to.
        routing_params: Routing parameters carried onto the stream URL.

    Returns:
        TwiML document as XML string.

    Example TwiML Response:
        <?xml version="1.0" encoding="UTF-8"?>
        <Response>
            <Connect>
                <Stream url="wss://example.com/media-stream?phone=%2B15550100" />
            </Connect>
        </Response>
    """
    stream_url = f"wss://{host}{MEDIA_STREAM_PATH}"
    if routing_params:
        stream_url = f"{stream_url}?{urlencode(routing_params)}"

    response = VoiceResponse()
    connect = Connect()
    connect.append(Stream(url=stream_url))
    response.append(connect)
    return str(response)


@app.api_route("/twilio/inbound_call", methods=["GET", "POST"])
async def handle_inbound_call(request: Request) -> Response:
    """Handle the Twilio voice webhook for an incoming call.

    Returns TwiML instructing Twilio to open a media stream to this
    server. Routing parameters on the webhook URL are passed through.
    """
    host = request.headers.get("host", f"localhost:{config.PORT}")
    routing_params = {
        name: request.query_params[name]
        for name in config.routing_parameters
        if request.query_params.get(name)
    }

    twiml = build_stream_twiml(host, routing_params)
    logger.info("Inbound call, streaming to %s", host, extra={"routing": routing_params})

    return Response(content=twiml, media_type="text/xml")


@app.websocket(MEDIA_STREAM_PATH)
async def media_stream(
    websocket: WebSocket,
    supervisor: BridgeSupervisor = Depends(get_supervisor),
) -> None:
    """WebSocket endpoint for Twilio Media Streams.

    Each connection is one call; the supervisor bridges it to a fresh
    ElevenLabs conversation and returns once both legs have closed.
    """
    await websocket.accept()
    await supervisor.handle_call(websocket, websocket.query_params)


def main() -> None:
    """Console entry point: validate configuration and serve."""
    import uvicorn

    setup_logging(level=config.LOG_LEVEL, structured=config.APP_ENV != "dev")

    missing = config.validate()
    if missing:
        logger.error(
            "Missing %s in environment variables", " or ".join(missing)
        )
        sys.exit(1)

    logger.info("Starting voice bridge on %s:%d", config.HOST, config.PORT)
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_config=None)


if __name__ == "__main__":
    main()
