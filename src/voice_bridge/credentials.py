"""Signed conversation URL client for ElevenLabs Conversational AI.

Each call needs its own one-time signed websocket URL. It is obtained with
a single authenticated GET; any failure is fatal for that call and is
never retried.
"""

from typing import Optional

import httpx

from .config import config
from .logging_utils import get_logger

logger = get_logger(__name__)


class CredentialError(Exception):
    """Raised when a signed conversation URL cannot be obtained."""

    pass


class SignedUrlClient:
    """Fetches signed conversation URLs for an agent.

    Example:
        client = SignedUrlClient(agent_id="agent_123", api_key="xi-...")
        signed_url = await client.get_signed_url()
    """

    def __init__(
        self,
        agent_id: Optional[str] = None,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            agent_id: Agent identifier. Defaults to config value.
            api_key: API key sent as xi-api-key. Defaults to config value.
            endpoint: Signed URL endpoint. Defaults to config value.
            timeout: Request timeout in seconds. Defaults to config value.
            transport: Optional httpx transport, used by tests.
        """
        self.agent_id = agent_id or config.ELEVENLABS_AGENT_ID
        self._api_key = api_key or config.ELEVENLABS_API_KEY
        self.endpoint = endpoint or config.signed_url_endpoint
        self.timeout = timeout if timeout is not None else config.SIGNED_URL_TIMEOUT
        self._transport = transport

    async def get_signed_url(self) -> str:
        """Request a signed conversation URL.

        Returns:
            The signed websocket URL.

        Raises:
            CredentialError: If the request fails or the response has no URL.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    self.endpoint,
                    params={"agent_id": self.agent_id},
                    headers={"xi-api-key": self._api_key},
                )
        except httpx.HTTPError as e:
            logger.error("Signed URL request failed: %s", e)
            raise CredentialError(f"Failed to get signed URL: {e}") from e

        if response.status_code != 200:
            logger.error(
                "Signed URL request rejected: %d %s",
                response.status_code,
                response.reason_phrase,
            )
            raise CredentialError(
                f"Failed to get signed URL: {response.status_code} {response.reason_phrase}"
            )

        try:
            signed_url = response.json().get("signed_url")
        except (ValueError, AttributeError) as e:
            raise CredentialError(f"Invalid signed URL response: {e}") from e

        if not signed_url:
            raise CredentialError("No signed_url in response")

        logger.debug("Obtained signed URL for agent %s", self.agent_id)
        return signed_url
