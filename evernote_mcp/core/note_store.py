"""HTTP client for the Evernote NoteStore API."""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as SchemaError

from evernote_mcp.core.config import SERVER_NAME, SERVER_VERSION
from evernote_mcp.core.errors import (
    AuthenticationRequiredError,
    ConfigurationError,
    MalformedResponseError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    QuotaExceededError,
)
from evernote_mcp.models.schemas import (
    Credential,
    Note,
    Notebook,
    NotesMetadataList,
    Tag,
)

logger = logging.getLogger(__name__)

SENSITIVE_MARKERS = ("token", "secret", "key", "password", "auth")

DEFAULT_RESULT_SPEC = {
    "includeTitle": True,
    "includeContentLength": True,
    "includeCreated": True,
    "includeUpdated": True,
    "includeDeleted": False,
    "includeUpdateSequenceNum": True,
    "includeNotebookGuid": True,
    "includeTagGuids": True,
    "includeAttributes": False,
    "includeLargestResourceMime": False,
    "includeLargestResourceSize": False,
}


def redact(value: Any) -> Any:
    """Mask credential-looking fields before they reach a log line."""
    if isinstance(value, list):
        return [redact(item) for item in value]
    if not isinstance(value, dict):
        return value

    redacted = {}
    for key, item in value.items():
        if any(marker in key.lower() for marker in SENSITIVE_MARKERS):
            redacted[key] = f"[REDACTED:{len(str(item))}chars]" if item else item
        else:
            redacted[key] = redact(item)
    return redacted


def _summarize(data: Any) -> Any:
    if not isinstance(data, dict):
        return type(data).__name__
    return {
        "keys": sorted(data),
        "noteCount": len(data["notes"]) if isinstance(data.get("notes"), list) else None,
        "totalNotes": data.get("totalNotes"),
        "title": data.get("title"),
        "guid": data.get("guid"),
    }


class NoteStoreClient:
    """Thin JSON client bound to one credential."""

    def __init__(
        self,
        credential: Credential,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dev_mode: bool = False,
    ):
        if not credential.note_store_url:
            raise ConfigurationError(
                "Note store URL not available in the stored credential. "
                "Re-authenticate to obtain it."
            )
        self.credential = credential
        self.base_url = credential.note_store_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.dev_mode = dev_mode

    async def call(self, method: str, payload: Dict[str, Any]) -> Any:
        body = {"authenticationToken": self.credential.access_token, **payload}
        url = f"{self.base_url}/{method}"

        if self.dev_mode:
            logger.debug(f"Evernote API request {method}: {json.dumps(redact(body))}")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self.credential.access_token}",
                        "User-Agent": f"{SERVER_NAME}/{SERVER_VERSION}",
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Network error calling Evernote {method}: {e}")
            raise NetworkError(f"Could not reach Evernote ({method}): {e}") from e

        self._raise_for_status(method, response)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Invalid JSON from Evernote {method}",
                status=response.status_code,
                body=response.text,
            ) from e

        if self.dev_mode:
            logger.debug(f"Evernote API response {method}: {_summarize(data)}")
        return data

    def _raise_for_status(self, method: str, response: httpx.Response):
        status = response.status_code
        if status == 200:
            return

        logger.error(f"Evernote API error {method}: {status} {response.text}")
        if status in (401, 403):
            raise AuthenticationRequiredError(
                f"Evernote rejected the access token for {method} (HTTP {status})"
            )
        if status == 404:
            raise NotFoundError(f"Evernote {method}: resource not found")
        if status == 429:
            raise QuotaExceededError(
                f"Evernote rate limit hit on {method}", status=status, body=response.text
            )
        raise ProtocolError(
            f"Evernote API error {status} on {method}: {response.text}",
            status=status,
            body=response.text,
        )

    async def find_notes_metadata(
        self,
        note_filter: Dict[str, Any],
        offset: int = 0,
        max_notes: int = 20,
        result_spec: Optional[Dict[str, Any]] = None,
    ) -> NotesMetadataList:
        data = await self.call(
            "findNotesMetadata",
            {
                "filter": note_filter,
                "offset": offset,
                "maxNotes": max_notes,
                "resultSpec": result_spec or DEFAULT_RESULT_SPEC,
            },
        )
        return _parse(NotesMetadataList, data, "findNotesMetadata")

    async def get_note(self, guid: str, with_content: bool = False) -> Note:
        data = await self.call(
            "getNote",
            {
                "guid": guid,
                "withContent": with_content,
                "withResourcesData": False,
                "withResourcesRecognition": False,
                "withResourcesAlternateData": False,
            },
        )
        return _parse(Note, data, "getNote")

    async def get_tags(self, guids: List[str]) -> List[Tag]:
        data = await self.call("getTags", {"guids": guids})
        if not isinstance(data, list):
            raise MalformedResponseError("Evernote getTags did not return a list", status=200)
        return [_parse(Tag, item, "getTags") for item in data]

    async def get_notebook(self, guid: str) -> Notebook:
        data = await self.call("getNotebook", {"guid": guid})
        return _parse(Notebook, data, "getNotebook")


def _parse(model, data: Any, method: str):
    try:
        return model.model_validate(data)
    except SchemaError as e:
        raise MalformedResponseError(
            f"Unexpected response shape from Evernote {method}: {e.error_count()} problem(s)",
            status=200,
            body=json.dumps(data, default=str)[:2000],
        ) from e
