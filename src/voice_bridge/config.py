# config.py
import json
import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

REQUIRED_VARIABLES = ("ELEVENLABS_AGENT_ID", "ELEVENLABS_API_KEY")


class BridgeConfig:
    """Voice bridge configuration loaded from environment variables."""

    def __init__(self):
        """Initialize the bridge configuration with environment variables."""
        self.logger = logging.getLogger(__name__)

        # ElevenLabs Conversational AI
        self.ELEVENLABS_AGENT_ID = self._get_optional("ELEVENLABS_AGENT_ID")
        self.ELEVENLABS_API_KEY = self._get_optional("ELEVENLABS_API_KEY")
        self.ELEVENLABS_API_BASE = self._get_optional(
            "ELEVENLABS_API_BASE", "https://api.elevenlabs.io"
        ).rstrip("/")
        self.SIGNED_URL_TIMEOUT = float(self._get_optional("SIGNED_URL_TIMEOUT", "10"))
        self.CONVERSATION_CONFIG_OVERRIDE = self._get_json_object(
            "CONVERSATION_CONFIG_OVERRIDE"
        )

        # Server
        self.HOST = self._get_optional("HOST", "0.0.0.0")
        self.PORT = self._get_int("PORT", 8000)

        # Routing parameter names on the media stream URL
        self.PHONE_PARAM = self._get_optional("PHONE_PARAM", "phone")
        self.CLIENT_ID_PARAM = self._get_optional("CLIENT_ID_PARAM", "client_id")

        # Bridge behavior
        self.PRE_OPEN_AUDIO_FRAMES = self._get_int("PRE_OPEN_AUDIO_FRAMES", 0)
        self.LEG_CLOSE_TIMEOUT = float(self._get_optional("LEG_CLOSE_TIMEOUT", "5"))

        # Logging
        self.APP_ENV = self._get_optional("APP_ENV", "prod")
        self.LOG_LEVEL = self._get_optional("LOG_LEVEL", "INFO").upper()

    @property
    def routing_parameters(self) -> tuple[str, str]:
        """Query keys captured from the media stream request."""
        return (self.PHONE_PARAM, self.CLIENT_ID_PARAM)

    @property
    def signed_url_endpoint(self) -> str:
        """REST endpoint returning a signed conversation URL."""
        return f"{self.ELEVENLABS_API_BASE}/v1/convai/conversation/get_signed_url"

    def validate(self) -> list[str]:
        """Return the names of missing required variables."""
        return [name for name in REQUIRED_VARIABLES if not getattr(self, name)]

    def _get_optional(self, name: str, default: str = "") -> str:
        """Get an optional configuration value from environment variables.

        Args:
            name: The name of the environment variable
            default: Default value if not found (default: "")

        Returns:
            The value of the environment variable or the default value
        """
        if name in os.environ:
            return os.environ[name]
        return default

    def _get_int(self, name: str, default: int) -> int:
        """Get an integer configuration value, falling back on bad input."""
        raw = self._get_optional(name)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            self.logger.warning(
                "Environment variable %s=%r is not an integer, using %d", name, raw, default
            )
            return default

    def _get_json_object(self, name: str) -> Optional[dict[str, Any]]:
        """Get a JSON object from an environment variable.

        Raises:
            ValueError: If the variable is set but is not a JSON object
        """
        raw = self._get_optional(name).strip()
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Environment variable {name} is not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise ValueError(f"Environment variable {name} must be a JSON object")
        return value


# Create a global instance of BridgeConfig
config = BridgeConfig()
