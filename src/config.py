"""
Configuration management for the MrLarbin DLive chat bot.

This module handles all configuration settings, validation, and provides
a centralized place for managing environment variables and constants.
"""

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging once at process start."""
    handlers: list = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """Configuration class for the DLive chat bot."""

    # Required environment variables
    DLIVE_CLIENT_ID: str
    DLIVE_CLIENT_SECRET: str
    DLIVE_REDIRECT_URI: str

    # Optional environment variables with defaults
    DLIVE_TARGET_DISPLAYNAME: str = "skrymi"
    DLIVE_MESSAGE: str = "Hello from MrLarbin"
    DLIVE_BOT_USERNAME: Optional[str] = None
    DLIVE_LISTENER_ENABLED: bool = True
    DLIVE_AUTH_SCHEME: str = "Bearer"
    DLIVE_CHAT_ROLE: str = "Member"
    DLIVE_MUTATION_STYLE: str = "input"

    # Token persistence
    TOKEN_STORE: str = "file"
    TOKEN_FILE: str = "tokens.json"
    TOKEN_DB_PATH: str = "tokens.db"
    TOKEN_ENV_FILE: Optional[str] = None

    # Command table persistence
    COMMANDS_FILE: Optional[str] = None
    COMMAND_PREFIX: str = "!"

    # Application constants
    RECONNECT_DELAY_SECONDS: float = 3.0
    HTTP_TIMEOUT_SECONDS: float = 10.0
    TOKEN_REFRESH_MARGIN_SECONDS: float = 10.0
    DEFAULT_TOKEN_LIFETIME_SECONDS: int = 3600
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    FASTAPI_HOST: str = "0.0.0.0"
    FASTAPI_PORT: int = 3000

    # Scopes required for DLive API
    REQUIRED_DLIVE_SCOPES = ["identity", "chat:write"]

    # DLive URL constants
    DLIVE_AUTHORIZE_URL = "https://dlive.tv/o/authorize"
    DLIVE_TOKEN_URL = "https://dlive.tv/o/token"
    DLIVE_GRAPHQL_URL = "https://graphigo.prd.dlive.tv/"
    DLIVE_WS_URL = "wss://graphigostream.prd.dlive.tv/"

    VALID_TOKEN_STORES = ("memory", "file", "env", "sqlite")

    def __init__(self):
        """Initialize configuration and validate required settings."""
        self._load_configuration()
        self._validate_configuration()

    def _as_bool(self, value: Optional[str], default: bool) -> bool:
        if value is None:
            return default
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}

    def _as_float(self, name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            return float(raw)
        except ValueError:
            raise ConfigurationError(f"{name} must be a number, got {raw!r}")

    def _load_configuration(self) -> None:
        """Load configuration from environment variables."""
        # Required settings
        self.DLIVE_CLIENT_ID = os.getenv('DLIVE_CLIENT_ID', '')
        self.DLIVE_CLIENT_SECRET = os.getenv('DLIVE_CLIENT_SECRET', '')
        self.DLIVE_REDIRECT_URI = os.getenv('DLIVE_REDIRECT_URI', '')

        # Optional settings
        self.DLIVE_TARGET_DISPLAYNAME = os.getenv('DLIVE_TARGET_DISPLAYNAME', self.DLIVE_TARGET_DISPLAYNAME)
        self.DLIVE_MESSAGE = os.getenv('DLIVE_MESSAGE', self.DLIVE_MESSAGE)
        self.DLIVE_BOT_USERNAME = os.getenv('DLIVE_BOT_USERNAME') or None
        self.DLIVE_LISTENER_ENABLED = self._as_bool(os.getenv('DLIVE_LISTENER_ENABLED'), self.DLIVE_LISTENER_ENABLED)
        # An empty scheme means the raw token is sent as the Authorization header
        self.DLIVE_AUTH_SCHEME = os.getenv('DLIVE_AUTH_SCHEME', self.DLIVE_AUTH_SCHEME).strip()
        self.DLIVE_CHAT_ROLE = os.getenv('DLIVE_CHAT_ROLE', self.DLIVE_CHAT_ROLE)
        self.DLIVE_MUTATION_STYLE = os.getenv('DLIVE_MUTATION_STYLE', self.DLIVE_MUTATION_STYLE).strip().lower()

        self.DLIVE_TOKEN_URL = os.getenv('DLIVE_TOKEN_URL', self.DLIVE_TOKEN_URL)
        self.DLIVE_GRAPHQL_URL = os.getenv('DLIVE_GRAPHQL_URL', self.DLIVE_GRAPHQL_URL)
        self.DLIVE_WS_URL = os.getenv('DLIVE_WS_URL', self.DLIVE_WS_URL)

        self.TOKEN_STORE = os.getenv('TOKEN_STORE', self.TOKEN_STORE).strip().lower()
        self.TOKEN_FILE = os.getenv('TOKEN_FILE', self.TOKEN_FILE)
        self.TOKEN_DB_PATH = os.getenv('TOKEN_DB_PATH', self.TOKEN_DB_PATH)
        self.TOKEN_ENV_FILE = os.getenv('TOKEN_ENV_FILE') or None

        self.COMMANDS_FILE = os.getenv('COMMANDS_FILE') or None

        self.RECONNECT_DELAY_SECONDS = self._as_float('RECONNECT_DELAY_SECONDS', self.RECONNECT_DELAY_SECONDS)
        self.HTTP_TIMEOUT_SECONDS = self._as_float('HTTP_TIMEOUT_SECONDS', self.HTTP_TIMEOUT_SECONDS)
        self.TOKEN_REFRESH_MARGIN_SECONDS = self._as_float('TOKEN_REFRESH_MARGIN_SECONDS', self.TOKEN_REFRESH_MARGIN_SECONDS)
        self.DEFAULT_TOKEN_LIFETIME_SECONDS = int(
            self._as_float('DEFAULT_TOKEN_LIFETIME_SECONDS', self.DEFAULT_TOKEN_LIFETIME_SECONDS)
        )

        self.LOG_LEVEL = os.getenv('LOG_LEVEL', self.LOG_LEVEL)
        self.LOG_FILE = os.getenv('LOG_FILE') or None

        # Server settings
        self.FASTAPI_HOST = os.getenv('HOST', self.FASTAPI_HOST)
        self.FASTAPI_PORT = int(self._as_float('PORT', self.FASTAPI_PORT))

        logger.info("Configuration loaded from environment variables")

    def _validate_configuration(self) -> None:
        """Validate that all required configuration is present."""
        errors = []

        if not self.DLIVE_CLIENT_ID:
            errors.append("DLIVE_CLIENT_ID is required")

        if not self.DLIVE_CLIENT_SECRET:
            errors.append("DLIVE_CLIENT_SECRET is required")

        if not self.DLIVE_REDIRECT_URI:
            errors.append("DLIVE_REDIRECT_URI is required")

        if self.TOKEN_STORE not in self.VALID_TOKEN_STORES:
            errors.append(f"TOKEN_STORE must be one of {', '.join(self.VALID_TOKEN_STORES)}")

        if self.DLIVE_MUTATION_STYLE not in ("input", "simple"):
            errors.append("DLIVE_MUTATION_STYLE must be 'input' or 'simple'")

        if self.RECONNECT_DELAY_SECONDS <= 0:
            errors.append("RECONNECT_DELAY_SECONDS must be positive")

        if self.TOKEN_REFRESH_MARGIN_SECONDS < 0:
            errors.append("TOKEN_REFRESH_MARGIN_SECONDS cannot be negative")

        if self.DEFAULT_TOKEN_LIFETIME_SECONDS <= 0:
            errors.append("DEFAULT_TOKEN_LIFETIME_SECONDS must be positive")

        if errors:
            error_message = "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
            logger.error(error_message)
            raise ConfigurationError(error_message)

        logger.info("Configuration validation successful")

    def get_reconnect_config(self) -> tuple[float, float]:
        """Get listener configuration as (reconnect_delay, open_timeout)."""
        return self.RECONNECT_DELAY_SECONDS, self.HTTP_TIMEOUT_SECONDS

    def get_fastapi_config(self) -> tuple[str, int]:
        """Get FastAPI HTTP server configuration as (host, port)."""
        return self.FASTAPI_HOST, self.FASTAPI_PORT
