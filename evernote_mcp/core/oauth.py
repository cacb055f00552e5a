"""Evernote OAuth 1.0a: request signing and the three-legged token flow."""

import logging
import secrets
import subprocess
import sys
import time
from typing import Callable, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
from oauthlib.oauth1.rfc5849 import signature as oauth_signature
from oauthlib.oauth1.rfc5849.utils import escape
from pydantic import ValidationError as SchemaError

from evernote_mcp.core.config import Settings
from evernote_mcp.core.credentials import (
    CredentialStore,
    check_expiration,
    normalize_expiry_ms,
)
from evernote_mcp.core.errors import (
    AuthenticationRequiredError,
    MalformedResponseError,
    NetworkError,
    NotFoundError,
    ProtocolError,
)
from evernote_mcp.models.schemas import (
    AccessTokenResponse,
    Credential,
    RequestTokenResponse,
    RequestTokenTransaction,
)

logger = logging.getLogger(__name__)


def percent_encode(value: str) -> str:
    """RFC 3986 encoding: everything but ``A-Z a-z 0-9 - . _ ~`` is escaped."""
    return escape(str(value))


def generate_signature(
    method: str,
    base_url: str,
    params: Mapping[str, str],
    token_secret: str = "",
    *,
    consumer_secret: str,
) -> str:
    """Compute the base64 HMAC-SHA1 signature for a request.

    ``base_url`` must not carry a query string. The caller supplies a fresh
    nonce and timestamp inside ``params`` for every request.
    """
    normalized = oauth_signature.normalize_parameters(
        [(str(key), str(value)) for key, value in params.items()]
    )
    base_string = oauth_signature.signature_base_string(method, base_url, normalized)
    return oauth_signature.sign_hmac_sha1(base_string, consumer_secret, token_secret or "")


def build_auth_params(
    consumer_key: str,
    callback_url: str,
    token: Optional[str] = None,
    verifier: Optional[str] = None,
) -> Dict[str, str]:
    """Build the ``oauth_*`` parameter set for one request."""
    params = {
        "oauth_consumer_key": consumer_key,
        "oauth_nonce": secrets.token_hex(16),
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": str(int(time.time())),
        "oauth_version": "1.0",
    }

    # The callback only belongs on the unauthenticated leg
    if token:
        params["oauth_token"] = token
    else:
        params["oauth_callback"] = callback_url

    if verifier:
        params["oauth_verifier"] = verifier

    return params


def _browser_command(url: str) -> list:
    if sys.platform == "darwin":
        return ["open", url]
    if sys.platform == "win32":
        return ["rundll32", "url.dll,FileProtocolHandler", url]
    return ["xdg-open", url]


def open_browser(url: str) -> bool:
    """Launch the platform URL opener without waiting for it."""
    try:
        subprocess.Popen(
            _browser_command(url),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Failed to open browser: {e}")
        logger.error(f"Please open this URL manually to authorize: {url}")
        return False

    logger.info("Browser opened for Evernote authorization")
    return True


def parse_callback_url(callback_url: str) -> Tuple[str, str]:
    """Pull ``oauth_token`` and ``oauth_verifier`` out of a redirect URL."""
    query = dict(parse_qsl(urlsplit(callback_url).query, keep_blank_values=True))
    token = query.get("oauth_token")
    verifier = query.get("oauth_verifier")

    if not token:
        raise MalformedResponseError("Callback URL does not contain oauth_token")
    if not verifier:
        raise AuthenticationRequiredError(
            "Authorization was declined in the browser (no oauth_verifier in callback)"
        )
    return token, verifier


class PendingAuthorizations:
    """Request-token transactions waiting for their browser callback."""

    def __init__(self):
        self._transactions: Dict[str, RequestTokenTransaction] = {}

    def add(self, transaction: RequestTokenTransaction):
        self._transactions[transaction.request_token] = transaction

    def pop(self, request_token: str) -> RequestTokenTransaction:
        try:
            return self._transactions.pop(request_token)
        except KeyError:
            raise NotFoundError(
                f"No pending authorization for request token {request_token!r}. "
                "Start a new authentication."
            ) from None

    def __contains__(self, request_token: str) -> bool:
        return request_token in self._transactions

    def __len__(self) -> int:
        return len(self._transactions)


class EvernoteOAuth:
    """OAuth 1.0a client bound to one consumer key pair and one credential store."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        browser: Callable[[str], bool] = open_browser,
    ):
        self.settings = settings
        self.store = store
        self.transport = transport
        self.browser = browser

    def sign(
        self, method: str, url: str, params: Dict[str, str], token_secret: str = ""
    ) -> Dict[str, str]:
        """Return ``params`` plus ``oauth_signature`` for a request to ``url``."""
        signature = generate_signature(
            method,
            oauth_signature.base_string_uri(url),
            params,
            token_secret,
            consumer_secret=self.settings.consumer_secret,
        )
        return {**params, "oauth_signature": signature}

    async def _signed_get(
        self, url: str, params: Dict[str, str], token_secret: str = ""
    ) -> Dict[str, str]:
        signed = self.sign("GET", url, params, token_secret)

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.request_timeout, transport=self.transport
            ) as client:
                response = await client.get(f"{url}?{urlencode(signed)}")
        except httpx.HTTPError as e:
            logger.error(f"Network error during OAuth request: {e}")
            raise NetworkError(f"Could not reach Evernote OAuth endpoint: {e}") from e

        if response.status_code != 200:
            logger.error(f"OAuth HTTP {response.status_code}: {response.text}")
            raise ProtocolError(
                f"HTTP {response.status_code}: {response.text}",
                status=response.status_code,
                body=response.text,
            )

        return dict(parse_qsl(response.text, keep_blank_values=True))

    async def request_token(self) -> Tuple[str, str]:
        """Leg one: obtain a temporary request token and its secret."""
        logger.info("Requesting temporary token from Evernote")
        params = build_auth_params(
            self.settings.consumer_key, self.settings.callback_url
        )
        body = await self._signed_get(self.settings.request_token_url, params)

        try:
            parsed = RequestTokenResponse.model_validate(body)
        except SchemaError as e:
            raise MalformedResponseError(
                f"Invalid response from Evernote: missing token data ({sorted(body)})",
                status=200,
                body=urlencode(body),
            ) from e

        return parsed.oauth_token, parsed.oauth_token_secret

    def authorization_url(self, request_token: str) -> str:
        return f"{self.settings.authorize_url}?{urlencode({'oauth_token': request_token})}"

    async def exchange_token(
        self, request_token: str, request_token_secret: str, verifier: str
    ) -> Credential:
        """Leg three: trade the authorized request token for an access token."""
        logger.info("Exchanging request token for access token")
        params = build_auth_params(
            self.settings.consumer_key,
            self.settings.callback_url,
            token=request_token,
            verifier=verifier,
        )
        body = await self._signed_get(
            self.settings.access_token_url, params, request_token_secret
        )

        try:
            parsed = AccessTokenResponse.model_validate(body)
        except SchemaError as e:
            raise MalformedResponseError(
                f"Invalid response from Evernote: missing access token ({sorted(body)})",
                status=200,
                body=urlencode(body),
            ) from e

        return Credential(
            access_token=parsed.oauth_token,
            token_secret=parsed.oauth_token_secret,
            shard_id=parsed.edam_shard,
            user_id=parsed.edam_user_id,
            expires_at=normalize_expiry_ms(parsed.edam_expires),
            note_store_url=parsed.edam_note_store_url,
            web_api_url_prefix=parsed.edam_web_api_url_prefix,
        )

    async def authenticate(self) -> Union[Credential, RequestTokenTransaction]:
        """Return a stored valid credential, or start the browser flow."""
        credential = await self.store.load()
        if credential is not None:
            status = check_expiration(credential)
            if not status.is_expired:
                logger.info("Using existing Evernote access token")
                return credential
            logger.warning(status.message)

        self.settings.require_consumer_credentials()

        logger.info("Starting Evernote OAuth flow")
        token, token_secret = await self.request_token()
        url = self.authorization_url(token)
        self.browser(url)

        return RequestTokenTransaction(
            request_token=token, request_token_secret=token_secret, authorize_url=url
        )

    async def complete_authentication(
        self, token: str, verifier: str, request_token_secret: str
    ) -> Credential:
        credential = await self.exchange_token(token, request_token_secret, verifier)
        await self.store.persist(credential)
        logger.info("Evernote access token stored")
        return credential

    async def reauthenticate(self) -> Union[Credential, RequestTokenTransaction]:
        """Forget the stored credential and start over."""
        await self.store.clear()
        return await self.authenticate()
