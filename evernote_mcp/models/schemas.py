"""Data models for the Evernote MCP bridge."""

import time
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMPTY_SECRET_PLACEHOLDER = "EMPTY_TOKEN_SECRET"


class Credential(BaseModel):
    """Authorized session with Evernote. Replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    token_secret: str = ""
    shard_id: Optional[str] = None
    user_id: Optional[str] = None
    expires_at: Optional[int] = None  # epoch milliseconds
    note_store_url: Optional[str] = None
    web_api_url_prefix: Optional[str] = None

    @field_validator("token_secret", mode="before")
    @classmethod
    def _normalize_secret(cls, value: Any) -> str:
        if value is None or value == EMPTY_SECRET_PLACEHOLDER:
            return ""
        return value


class RequestTokenTransaction(BaseModel):
    """State held between the authorize redirect and the callback."""

    model_config = ConfigDict(frozen=True)

    request_token: str
    request_token_secret: str
    authorize_url: str
    created_at: float = Field(default_factory=time.time)


class ExpirationStatus(BaseModel):
    has_credential: bool
    is_expired: bool
    message: str
    expires_at: Optional[int] = None


class SearchArguments(BaseModel):
    """Arguments accepted by the createSearch tool."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: Optional[str] = None
    max_results: int = Field(default=20, ge=1, le=100, alias="maxResults")
    offset: int = Field(default=0, ge=0)
    notebook_name: Optional[str] = Field(default=None, alias="notebookName")
    notebook_guid: Optional[str] = Field(default=None, alias="notebookGuid")
    tags: Optional[List[str]] = None
    created_after: Optional[str] = Field(default=None, alias="createdAfter")
    updated_after: Optional[str] = Field(default=None, alias="updatedAfter")

    @field_validator("created_after", "updated_after")
    @classmethod
    def _normalize_date(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            return date.fromisoformat(value[:10]).isoformat()
        except ValueError:
            raise ValueError(f"expected a YYYY-MM-DD date, got {value!r}")

    def has_criteria(self) -> bool:
        return bool(self.query or self.notebook_name or self.tags)


class SearchEntry(BaseModel):
    """A cached search result set."""

    search_id: str
    query: str
    data: Dict[str, Any]
    created_at: float
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


# Provider responses. Unknown fields are ignored; missing required ones fail.


class RequestTokenResponse(BaseModel):
    oauth_token: str = Field(min_length=1)
    oauth_token_secret: str = Field(min_length=1)


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    oauth_token: str = Field(min_length=1)
    # Evernote returns an empty secret on this leg
    oauth_token_secret: str = ""
    edam_shard: Optional[str] = None
    edam_user_id: Optional[str] = Field(default=None, alias="edam_userId")
    edam_expires: Optional[int] = None
    edam_note_store_url: Optional[str] = Field(default=None, alias="edam_noteStoreUrl")
    edam_web_api_url_prefix: Optional[str] = Field(
        default=None, alias="edam_webApiUrlPrefix"
    )

    @field_validator("edam_expires", mode="before")
    @classmethod
    def _blank_expiry(cls, value: Any) -> Any:
        return None if value == "" else value


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoteMetadata(_ProviderModel):
    guid: str = Field(min_length=1)
    title: Optional[str] = None
    created: Optional[int] = None
    updated: Optional[int] = None
    notebook_guid: Optional[str] = Field(default=None, alias="notebookGuid")
    content_length: Optional[int] = Field(default=None, alias="contentLength")
    update_sequence_num: Optional[int] = Field(default=None, alias="updateSequenceNum")
    tag_guids: List[str] = Field(default_factory=list, alias="tagGuids")

    @field_validator("tag_guids", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return value or []


class NotesMetadataList(_ProviderModel):
    notes: List[NoteMetadata] = Field(default_factory=list)
    total_notes: int = Field(default=0, alias="totalNotes")


class Resource(_ProviderModel):
    guid: Optional[str] = None
    note_guid: Optional[str] = Field(default=None, alias="noteGuid")
    mime: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None
    active: Optional[bool] = None
    update_sequence_num: Optional[int] = Field(default=None, alias="updateSequenceNum")
    recognition: Optional[Dict[str, Any]] = None
    attributes: Optional[Dict[str, Any]] = None


class Note(NoteMetadata):
    content: Optional[str] = None
    content_hash: Optional[Any] = Field(default=None, alias="contentHash")
    deleted: Optional[int] = None
    active: Optional[bool] = None
    attributes: Optional[Dict[str, Any]] = None
    resources: List[Resource] = Field(default_factory=list)

    @field_validator("resources", mode="before")
    @classmethod
    def _no_resources(cls, value: Any) -> Any:
        return value or []


class Tag(_ProviderModel):
    guid: Optional[str] = None
    name: str


class Notebook(_ProviderModel):
    guid: Optional[str] = None
    name: str
