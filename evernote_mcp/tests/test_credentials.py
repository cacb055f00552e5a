"""Tests for credential persistence and expiration checks."""

import json
import os
import stat
import time

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError

from evernote_mcp.core.config import Settings
from evernote_mcp.core.credentials import (
    ENV_KEYS,
    EnvCredentialStore,
    FileCredentialStore,
    KeyringCredentialStore,
    check_expiration,
    create_credential_store,
    normalize_expiry_ms,
)
from evernote_mcp.core.errors import ConfigurationError
from evernote_mcp.models.schemas import Credential


@pytest.fixture
def credential():
    return Credential(
        access_token="S=s1:U=12345:E=abc",
        token_secret="",
        shard_id="s1",
        user_id="12345",
        expires_at=1767225600000,
        note_store_url="https://www.evernote.com/shard/s1/notestore",
        web_api_url_prefix="https://www.evernote.com/shard/s1/",
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Make sure credential variables set during a test are removed afterwards."""
    for env_key in ENV_KEYS.values():
        monkeypatch.setenv(env_key, "placeholder")
        monkeypatch.delenv(env_key)
    return monkeypatch


class TestFileCredentialStore:
    """JSON file backend."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path, credential):
        """A fresh store instance reads back what another one wrote."""
        path = str(tmp_path / "nested" / "credentials.json")
        await FileCredentialStore(path).persist(credential)

        loaded = await FileCredentialStore(path).load()

        assert loaded == credential

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        assert await FileCredentialStore(str(tmp_path / "none.json")).load() is None

    @pytest.mark.asyncio
    async def test_atomic_write_leaves_no_temp_files(self, tmp_path, credential):
        store = FileCredentialStore(str(tmp_path / "credentials.json"))
        await store.persist(credential)
        await store.persist(credential.model_copy(update={"user_id": "999"}))

        assert os.listdir(tmp_path) == ["credentials.json"]
        assert (await store.load()).user_id == "999"

    @pytest.mark.asyncio
    async def test_file_is_private(self, tmp_path, credential):
        path = tmp_path / "credentials.json"
        await FileCredentialStore(str(path)).persist(credential)

        if os.name == "posix":
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_empty_secret_placeholder(self, tmp_path, credential):
        """Empty secrets are written as a placeholder and read back as ''."""
        path = tmp_path / "credentials.json"
        await FileCredentialStore(str(path)).persist(credential)

        assert json.loads(path.read_text())["token_secret"] == "EMPTY_TOKEN_SECRET"
        assert (await FileCredentialStore(str(path)).load()).token_secret == ""

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json")

        assert await FileCredentialStore(str(path)).load() is None

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path, credential):
        store = FileCredentialStore(str(tmp_path / "credentials.json"))
        await store.persist(credential)

        await store.clear()
        await store.clear()

        assert await store.load() is None


class TestEnvCredentialStore:
    """Environment / .env backend."""

    @pytest.mark.asyncio
    async def test_load_from_environment(self, tmp_path, clean_env):
        clean_env.setenv("EVERNOTE_ACCESS_TOKEN", "env-token")
        clean_env.setenv("EVERNOTE_TOKEN_SECRET", "EMPTY_TOKEN_SECRET")
        clean_env.setenv("EVERNOTE_NOTESTORE_URL", "https://n")
        clean_env.setenv("EVERNOTE_EXPIRES", "1767225600")

        credential = await EnvCredentialStore(str(tmp_path / ".env")).load()

        assert credential.access_token == "env-token"
        assert credential.token_secret == ""
        assert credential.note_store_url == "https://n"
        assert credential.expires_at == 1767225600000

    @pytest.mark.asyncio
    async def test_no_token(self, tmp_path, clean_env):
        assert await EnvCredentialStore(str(tmp_path / ".env")).load() is None

    @pytest.mark.asyncio
    async def test_persist_preserves_other_keys(self, tmp_path, clean_env, credential):
        env_file = tmp_path / ".env"
        env_file.write_text("EVERNOTE_CONSUMER_KEY=my-key\nEVERNOTE_ACCESS_TOKEN=old\n")

        await EnvCredentialStore(str(env_file)).persist(credential)

        text = env_file.read_text()
        assert 'EVERNOTE_CONSUMER_KEY="my-key"' in text
        assert 'EVERNOTE_ACCESS_TOKEN="S=s1:U=12345:E=abc"' in text
        assert 'EVERNOTE_TOKEN_SECRET="EMPTY_TOKEN_SECRET"' in text
        assert os.environ["EVERNOTE_ACCESS_TOKEN"] == credential.access_token

    @pytest.mark.asyncio
    async def test_round_trip_through_file(self, tmp_path, clean_env, credential):
        """A new process sees only the .env file, not our os.environ writes."""
        env_file = str(tmp_path / ".env")
        await EnvCredentialStore(env_file).persist(credential)
        for env_key in ENV_KEYS.values():
            clean_env.delenv(env_key, raising=False)

        loaded = await EnvCredentialStore(env_file).load()

        assert loaded == credential

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path, clean_env, credential):
        env_file = tmp_path / ".env"
        env_file.write_text("EVERNOTE_CONSUMER_KEY=my-key\n")
        store = EnvCredentialStore(str(env_file))
        await store.persist(credential)

        await store.clear()

        assert await store.load() is None
        assert "EVERNOTE_ACCESS_TOKEN" not in env_file.read_text()
        assert "EVERNOTE_CONSUMER_KEY" in env_file.read_text()


class InMemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError(username)


class BrokenKeyring(InMemoryKeyring):
    def get_password(self, service, username):
        raise KeyringError("locked")

    def set_password(self, service, username, password):
        raise KeyringError("locked")


class TestKeyringCredentialStore:
    """OS keychain backend, against an in-memory keyring."""

    @pytest.fixture
    def backend(self):
        return InMemoryKeyring()

    @pytest.mark.asyncio
    async def test_round_trip(self, backend, credential):
        await KeyringCredentialStore(backend=backend).persist(credential)

        loaded = await KeyringCredentialStore(backend=backend).load()

        assert loaded == credential

    @pytest.mark.asyncio
    async def test_stored_items(self, backend, credential):
        await KeyringCredentialStore(backend=backend).persist(credential)

        service = "evernote-mcp-server"
        assert backend.passwords[(service, "access_token")] == credential.access_token
        assert backend.passwords[(service, "token_secret")] == "EMPTY_TOKEN_SECRET"
        assert json.loads(backend.passwords[(service, "edam_data")]) == {
            "shard": "s1",
            "userId": "12345",
            "expires": 1767225600000,
            "noteStoreUrl": "https://www.evernote.com/shard/s1/notestore",
            "webApiUrlPrefix": "https://www.evernote.com/shard/s1/",
        }

    @pytest.mark.asyncio
    async def test_token_without_edam_data(self, backend):
        backend.set_password("evernote-mcp-server", "access_token", "only-token")

        loaded = await KeyringCredentialStore(backend=backend).load()

        assert loaded.access_token == "only-token"
        assert loaded.token_secret == ""
        assert loaded.note_store_url is None

    @pytest.mark.asyncio
    async def test_unreadable_edam_data(self, backend):
        backend.set_password("evernote-mcp-server", "access_token", "t")
        backend.set_password("evernote-mcp-server", "edam_data", "{broken")

        loaded = await KeyringCredentialStore(backend=backend).load()

        assert loaded.access_token == "t"
        assert loaded.shard_id is None

    @pytest.mark.asyncio
    async def test_empty_keychain(self, backend):
        assert await KeyringCredentialStore(backend=backend).load() is None

    @pytest.mark.asyncio
    async def test_clear(self, backend, credential):
        store = KeyringCredentialStore(backend=backend)
        await store.persist(credential)

        await store.clear()
        await store.clear()

        assert backend.passwords == {}
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_keychain_errors(self, credential):
        store = KeyringCredentialStore(backend=BrokenKeyring())

        assert await store.load() is None
        with pytest.raises(ConfigurationError):
            await store.persist(credential)


class TestExpiration:
    """check_expiration and timestamp units."""

    def test_no_credential(self):
        status = check_expiration(None)

        assert status.has_credential is False
        assert status.is_expired is False
        assert "Authentication required" in status.message

    def test_no_expiry_assumed_valid(self):
        status = check_expiration(Credential(access_token="t"))

        assert status.has_credential is True
        assert status.is_expired is False
        assert "assuming it is still valid" in status.message

    def test_expired(self):
        now = 1_700_000_000.0
        credential = Credential(access_token="t", expires_at=int(now * 1000) - 1)

        status = check_expiration(credential, now=now)

        assert status.is_expired is True
        assert "Re-authentication required" in status.message

    def test_valid(self):
        now = 1_700_000_000.0
        ten_days = 10 * 24 * 60 * 60 * 1000
        credential = Credential(access_token="t", expires_at=int(now * 1000) + ten_days)

        status = check_expiration(credential, now=now)

        assert status.is_expired is False
        assert "10 days left" in status.message

    def test_seconds_expiry_is_not_misread(self):
        """A seconds value in the future must not look like 1970."""
        future_seconds = int(time.time()) + 3600

        status = check_expiration(Credential(access_token="t", expires_at=future_seconds))

        assert status.is_expired is False
        assert status.expires_at == future_seconds * 1000

    def test_normalize_expiry_ms(self):
        assert normalize_expiry_ms(None) is None
        assert normalize_expiry_ms(1767225600) == 1767225600000
        assert normalize_expiry_ms(1767225600000) == 1767225600000


class TestStoreFactory:
    def test_backends(self, tmp_path):
        file_store = create_credential_store(
            Settings(credential_path=str(tmp_path / "c.json"))
        )
        env_store = create_credential_store(
            Settings(credential_backend="env", env_file=str(tmp_path / ".env"))
        )

        assert isinstance(file_store, FileCredentialStore)
        assert isinstance(env_store, EnvCredentialStore)

    def test_keychain_backend(self):
        store = create_credential_store(Settings(credential_backend="keychain"))

        assert isinstance(store, KeyringCredentialStore)
        assert store.service == "evernote-mcp-server"

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            create_credential_store(Settings(credential_backend="vault"))
