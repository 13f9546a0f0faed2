"""Per-call supervisor joining a Twilio media stream to an ElevenLabs agent.

For each accepted media stream the supervisor:
1. Captures the routing parameters from the request query string.
2. Creates the CallSession.
3. Fetches a signed conversation URL (failure ends the call).
4. Runs the telephony and conversation legs as two concurrent tasks.
5. Closes both legs as soon as either one ends.
"""

import asyncio
from typing import Any, Mapping, Optional

from fastapi import WebSocket, status

from .config import BridgeConfig, config
from .convai_client import AgentConnectionError, ConvAIClient, Connector
from .credentials import CredentialError, SignedUrlClient
from .logging_utils import CallLoggerAdapter, get_logger
from .session import CallSession, Leg, SessionEvent
from .telephony import TelephonyHandler

logger = get_logger(__name__)


class BridgeSupervisor:
    """Accepts media streams and owns the lifetime of each bridged call.

    The supervisor holds no per-call state of its own; every call gets an
    independent CallSession, so calls never contend with each other.

    Example:
        supervisor = BridgeSupervisor()
        session = await supervisor.handle_call(websocket, websocket.query_params)
    """

    def __init__(
        self,
        signed_url_client: Optional[SignedUrlClient] = None,
        connector: Optional[Connector] = None,
        settings: Optional[BridgeConfig] = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            signed_url_client: Client fetching signed conversation URLs.
            connector: Optional websocket connector for the outbound leg.
            settings: Bridge configuration. Defaults to the global config.
        """
        self.settings = settings or config
        self.signed_url_client = signed_url_client or SignedUrlClient()
        self.connector = connector

    def capture_parameters(self, query_params: Mapping[str, Any]) -> dict[str, Optional[str]]:
        """Read the routing parameters from the media stream query string."""
        return {name: query_params.get(name) for name in self.settings.routing_parameters}

    async def handle_call(self, websocket: WebSocket, query_params: Mapping[str, Any]) -> CallSession:
        """Bridge one accepted Twilio websocket until both legs have closed.

        Args:
            websocket: Accepted websocket from Twilio.
            query_params: Query parameters of the websocket request.

        Returns:
            The call session, in phase CLOSED.
        """
        session = CallSession(custom_parameters=self.capture_parameters(query_params))
        log = CallLoggerAdapter(logger, session)
        log.info("Twilio connected to media stream")

        telephony = TelephonyHandler(session, websocket)

        try:
            signed_url = await self.signed_url_client.get_signed_url()
        except CredentialError as e:
            log.error("Call rejected, no conversation URL: %s", e)
            session.mark_leg_closed(Leg.OUTBOUND)
            await telephony.close(code=status.WS_1011_INTERNAL_ERROR)
            return session

        agent = ConvAIClient(
            session,
            telephony,
            config_override=self.settings.CONVERSATION_CONFIG_OVERRIDE,
            pre_open_frames=self.settings.PRE_OPEN_AUDIO_FRAMES,
            connector=self.connector,
        )
        telephony.agent = agent
        session.transition(SessionEvent.LEGS_STARTED)

        await self._run_legs(session, telephony, agent, signed_url)

        log.info("Call ended", extra={"summary": session.to_dict()})
        return session

    async def _run_legs(
        self,
        session: CallSession,
        telephony: TelephonyHandler,
        agent: ConvAIClient,
        signed_url: str,
    ) -> None:
        """Run both legs and tear them down together."""
        log = CallLoggerAdapter(logger, session)
        inbound_task = asyncio.create_task(telephony.run(), name="bridge-inbound")
        outbound_task = asyncio.create_task(agent.run(signed_url), name="bridge-outbound")
        tasks = {inbound_task, outbound_task}

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

            close_code = status.WS_1000_NORMAL_CLOSURE
            if outbound_task in done and isinstance(outbound_task.exception(), AgentConnectionError):
                close_code = status.WS_1011_INTERNAL_ERROR

            # Whichever leg ended first, close the other one directly
            await telephony.close(code=close_code)
            await agent.close()

            if pending:
                _, pending = await asyncio.wait(pending, timeout=self.settings.LEG_CLOSE_TIMEOUT)
            for task in pending:
                log.warning("Leg did not stop after close, cancelling %s", task.get_name())
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        finally:
            # Server shutdown cancels us mid-call; leave no leg behind
            for task in tasks:
                if not task.done():
                    task.cancel()
            await telephony.close()
            await agent.close()

        for task in tasks:
            if task.cancelled():
                continue
            error = task.exception()
            if isinstance(error, AgentConnectionError):
                log.error("Call failed: %s", error)
            elif error is not None:
                log.error("Bridge leg %s failed: %s", task.get_name(), error, exc_info=error)
