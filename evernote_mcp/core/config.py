"""Runtime configuration loaded from the environment and an optional .env file."""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from evernote_mcp.core.errors import ConfigurationError

PLACEHOLDER_CONSUMER_KEY = "your-consumer-key"
PLACEHOLDER_CONSUMER_SECRET = "your-consumer-secret"

SERVER_NAME = "evernote-mcp-server"
SERVER_VERSION = "1.1.0"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Everything the bridge needs to know about its environment."""

    consumer_key: str = PLACEHOLDER_CONSUMER_KEY
    consumer_secret: str = PLACEHOLDER_CONSUMER_SECRET
    callback_url: str = "https://localhost:3443/oauth/callback"
    base_url: str = "https://www.evernote.com"

    credential_backend: str = "file"
    credential_path: str = os.path.expanduser("~/.evernote-mcp/credentials.json")
    env_file: str = ".env"

    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl: int = 3600
    sweep_interval: int = 1800

    request_timeout: float = 30.0
    dev_mode: bool = False
    log_level: str = "INFO"

    @property
    def request_token_url(self) -> str:
        return f"{self.base_url}/oauth"

    @property
    def access_token_url(self) -> str:
        return f"{self.base_url}/oauth"

    @property
    def authorize_url(self) -> str:
        return f"{self.base_url}/OAuth.action"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from ``os.environ`` after loading ``.env``."""
        load_dotenv(env_file or os.getenv("EVERNOTE_ENV_FILE", ".env"))

        defaults = cls()
        return cls(
            consumer_key=os.getenv("EVERNOTE_CONSUMER_KEY", defaults.consumer_key),
            consumer_secret=os.getenv(
                "EVERNOTE_CONSUMER_SECRET", defaults.consumer_secret
            ),
            callback_url=os.getenv("EVERNOTE_CALLBACK_URL", defaults.callback_url),
            base_url=os.getenv("EVERNOTE_BASE_URL", defaults.base_url).rstrip("/"),
            credential_backend=os.getenv(
                "EVERNOTE_CREDENTIAL_BACKEND", defaults.credential_backend
            ),
            credential_path=os.path.expanduser(
                os.getenv("EVERNOTE_CREDENTIAL_PATH", defaults.credential_path)
            ),
            env_file=env_file or os.getenv("EVERNOTE_ENV_FILE", defaults.env_file),
            cache_backend=os.getenv("EVERNOTE_CACHE_BACKEND", defaults.cache_backend),
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            cache_ttl=int(os.getenv("SEARCH_CACHE_TTL", str(defaults.cache_ttl))),
            sweep_interval=int(
                os.getenv("SEARCH_CACHE_SWEEP_INTERVAL", str(defaults.sweep_interval))
            ),
            request_timeout=float(
                os.getenv("REQUEST_TIMEOUT", str(defaults.request_timeout))
            ),
            dev_mode=_env_bool("DEV_MODE"),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )

    def require_consumer_credentials(self):
        """Fail fast when the app key pair has not been configured."""
        if not self.consumer_key or self.consumer_key == PLACEHOLDER_CONSUMER_KEY:
            raise ConfigurationError(
                "Please set the EVERNOTE_CONSUMER_KEY environment variable"
            )
        if (
            not self.consumer_secret
            or self.consumer_secret == PLACEHOLDER_CONSUMER_SECRET
        ):
            raise ConfigurationError(
                "Please set the EVERNOTE_CONSUMER_SECRET environment variable"
            )
