"""Durable storage for the Evernote credential, plus expiry checks."""

import json
import logging
import os
import tempfile
import time
from typing import Dict, Optional

import keyring
from dotenv import dotenv_values
from keyring.errors import KeyringError, PasswordDeleteError

from evernote_mcp.core.config import SERVER_NAME, Settings
from evernote_mcp.core.errors import ConfigurationError
from evernote_mcp.models.schemas import (
    EMPTY_SECRET_PLACEHOLDER,
    Credential,
    ExpirationStatus,
)

logger = logging.getLogger(__name__)

# Anything smaller is a seconds-based timestamp (ms values passed 1e11 in 1973).
_MILLISECOND_THRESHOLD = 10**11


def normalize_expiry_ms(value: Optional[int]) -> Optional[int]:
    """Return ``value`` as epoch milliseconds.

    Evernote sends ``edam_expires`` in milliseconds. Older stored credentials
    and hand-injected environment values sometimes carry seconds instead.
    """
    if value is None:
        return None
    value = int(value)
    if value < _MILLISECOND_THRESHOLD:
        return value * 1000
    return value


def check_expiration(
    credential: Optional[Credential], now: Optional[float] = None
) -> ExpirationStatus:
    if credential is None:
        return ExpirationStatus(
            has_credential=False,
            is_expired=False,
            message="No Evernote credential stored. Authentication required.",
        )

    if credential.expires_at is None:
        return ExpirationStatus(
            has_credential=True,
            is_expired=False,
            message="Credential has no expiration date; assuming it is still valid.",
        )

    now_ms = int((now if now is not None else time.time()) * 1000)
    expires_at = normalize_expiry_ms(credential.expires_at)
    expires_iso = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(expires_at / 1000))

    if now_ms > expires_at:
        return ExpirationStatus(
            has_credential=True,
            is_expired=True,
            message=f"Evernote credential expired at {expires_iso}. Re-authentication required.",
            expires_at=expires_at,
        )

    days_left = (expires_at - now_ms) // (24 * 60 * 60 * 1000)
    return ExpirationStatus(
        has_credential=True,
        is_expired=False,
        message=f"Credential valid until {expires_iso} ({days_left} days left).",
        expires_at=expires_at,
    )


def _atomic_write(path: str, text: str, mode: int = 0o600):
    """Write ``text`` to ``path`` via a sibling temp file and ``os.replace``."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".cred")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class CredentialStore:
    """Interface for credential persistence backends."""

    async def load(self) -> Optional[Credential]:
        raise NotImplementedError

    async def persist(self, credential: Credential):
        raise NotImplementedError

    async def clear(self):
        raise NotImplementedError


class FileCredentialStore(CredentialStore):
    """JSON file in the user's home directory."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.path.expanduser("~/.evernote-mcp/credentials.json")

    async def load(self) -> Optional[Credential]:
        if not os.path.exists(self.path):
            return None

        try:
            with open(self.path, encoding="utf-8") as handle:
                data = json.load(handle)
            return Credential.model_validate(data)
        except (OSError, ValueError) as e:
            # pydantic.ValidationError is a ValueError
            logger.error(f"Failed to read stored credential at {self.path}: {e}")
            return None

    async def persist(self, credential: Credential):
        document = credential.model_dump()
        if not document["token_secret"]:
            document["token_secret"] = EMPTY_SECRET_PLACEHOLDER
        _atomic_write(self.path, json.dumps(document, indent=2))
        logger.info(f"Credential stored at {self.path}")

    async def clear(self):
        if os.path.exists(self.path):
            os.unlink(self.path)
            logger.info("Stored credential removed")


ENV_KEYS = {
    "access_token": "EVERNOTE_ACCESS_TOKEN",
    "token_secret": "EVERNOTE_TOKEN_SECRET",
    "shard_id": "EVERNOTE_SHARD",
    "user_id": "EVERNOTE_USER_ID",
    "expires_at": "EVERNOTE_EXPIRES",
    "note_store_url": "EVERNOTE_NOTESTORE_URL",
    "web_api_url_prefix": "EVERNOTE_WEBAPI_URL_PREFIX",
}


def _quote_env(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class EnvCredentialStore(CredentialStore):
    """Credential injected through environment variables or a ``.env`` file."""

    def __init__(self, env_file: str = ".env"):
        self.env_file = env_file

    async def load(self) -> Optional[Credential]:
        values: Dict[str, Optional[str]] = {}
        if os.path.exists(self.env_file):
            values.update(dotenv_values(self.env_file))
        for env_key in ENV_KEYS.values():
            if os.getenv(env_key) is not None:
                values[env_key] = os.environ[env_key]

        access_token = values.get(ENV_KEYS["access_token"])
        if not access_token:
            return None

        fields = {
            field: values.get(env_key) or None for field, env_key in ENV_KEYS.items()
        }
        try:
            if fields["expires_at"] is not None:
                fields["expires_at"] = normalize_expiry_ms(int(fields["expires_at"]))
            return Credential.model_validate(fields)
        except ValueError as e:
            logger.error(f"Ignoring malformed credential in environment: {e}")
            return None

    def _rewrite(self, updates: Dict[str, Optional[str]]):
        existing = {}
        if os.path.exists(self.env_file):
            existing = dotenv_values(self.env_file)

        for key, value in updates.items():
            if value is None:
                existing.pop(key, None)
            else:
                existing[key] = value

        lines = [
            f"{key}={_quote_env(value)}" if value is not None else key
            for key, value in existing.items()
        ]
        _atomic_write(self.env_file, "\n".join(lines) + "\n" if lines else "")

    async def persist(self, credential: Credential):
        data = credential.model_dump()
        updates = {
            env_key: (str(data[field]) if data[field] is not None else None)
            for field, env_key in ENV_KEYS.items()
        }
        updates[ENV_KEYS["token_secret"]] = (
            credential.token_secret or EMPTY_SECRET_PLACEHOLDER
        )
        self._rewrite(updates)

        for key, value in updates.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        logger.info(f"Credential written to {self.env_file}")

    async def clear(self):
        self._rewrite({env_key: None for env_key in ENV_KEYS.values()})
        for env_key in ENV_KEYS.values():
            os.environ.pop(env_key, None)
        logger.info("Credential removed from environment")


class KeyringCredentialStore(CredentialStore):
    """OS keychain entries under one service name.

    Three items are kept: ``access_token``, ``token_secret`` (never empty, the
    keychain rejects blank passwords) and ``edam_data``, a JSON document with
    the shard, user id, expiry and store URLs.
    """

    def __init__(self, service: str = SERVER_NAME, backend=None):
        self.service = service
        self.backend = backend or keyring.get_keyring()

    async def load(self) -> Optional[Credential]:
        try:
            access_token = self.backend.get_password(self.service, "access_token")
            token_secret = self.backend.get_password(self.service, "token_secret")
            edam_json = self.backend.get_password(self.service, "edam_data")
        except KeyringError as e:
            logger.error(f"Failed to read credential from keychain: {e}")
            return None

        if not access_token:
            return None

        edam: Dict[str, object] = {}
        if edam_json:
            try:
                edam = json.loads(edam_json)
            except ValueError:
                logger.warning("Ignoring unreadable Evernote data in keychain")
            if not isinstance(edam, dict):
                edam = {}

        try:
            return Credential(
                access_token=access_token,
                token_secret=token_secret,
                shard_id=edam.get("shard"),
                user_id=edam.get("userId"),
                expires_at=normalize_expiry_ms(edam.get("expires")),
                note_store_url=edam.get("noteStoreUrl"),
                web_api_url_prefix=edam.get("webApiUrlPrefix"),
            )
        except ValueError as e:
            logger.error(f"Ignoring malformed credential in keychain: {e}")
            return None

    async def persist(self, credential: Credential):
        edam = {
            "shard": credential.shard_id,
            "userId": credential.user_id,
            "expires": credential.expires_at,
            "noteStoreUrl": credential.note_store_url,
            "webApiUrlPrefix": credential.web_api_url_prefix,
        }
        try:
            # access_token last: load() treats its presence as "credential stored"
            self.backend.set_password(self.service, "edam_data", json.dumps(edam))
            self.backend.set_password(
                self.service,
                "token_secret",
                credential.token_secret or EMPTY_SECRET_PLACEHOLDER,
            )
            self.backend.set_password(self.service, "access_token", credential.access_token)
        except KeyringError as e:
            logger.error(f"Failed to store credential in keychain: {e}")
            raise ConfigurationError(f"Could not write to the OS keychain: {e}") from e
        logger.info("Access token and Evernote data stored in keychain")

    async def clear(self):
        for item in ("access_token", "token_secret", "edam_data"):
            try:
                self.backend.delete_password(self.service, item)
            except PasswordDeleteError:
                # already absent
                pass
        logger.info("Credential removed from keychain")


def create_credential_store(settings: Settings) -> CredentialStore:
    if settings.credential_backend == "file":
        return FileCredentialStore(settings.credential_path)
    if settings.credential_backend == "env":
        return EnvCredentialStore(settings.env_file)
    if settings.credential_backend == "keychain":
        return KeyringCredentialStore()
    raise ConfigurationError(
        f"Unknown EVERNOTE_CREDENTIAL_BACKEND {settings.credential_backend!r} "
        "(expected 'file', 'env' or 'keychain')"
    )
