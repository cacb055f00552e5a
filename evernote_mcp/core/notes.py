"""Search and note retrieval operations behind the MCP tools."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as SchemaError

from evernote_mcp.core.cache import SearchCache
from evernote_mcp.core.config import Settings
from evernote_mcp.core.enml import enml_to_html, enml_to_plain_text
from evernote_mcp.core.errors import EvernoteError, NotFoundError, ValidationError
from evernote_mcp.core.note_store import NoteStoreClient
from evernote_mcp.core.query import build_query, require_criteria
from evernote_mcp.models.schemas import Credential, Note, Resource, SearchArguments

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "text": "text/plain",
    "html": "text/html",
    "enml": "application/enml+xml",
}


def iso_timestamp(millis: Optional[int]) -> Optional[str]:
    """Evernote millisecond timestamps as ISO-8601 UTC strings."""
    if millis is None:
        return None
    moment = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_string(args: Dict[str, Any], name: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value


def _format_resource(resource: Resource, full: bool = True) -> Dict[str, Any]:
    attributes = resource.attributes or {}
    result = {
        "guid": resource.guid,
        "mime": resource.mime,
        "width": resource.width,
        "height": resource.height,
        "duration": resource.duration,
        "recognition": (
            {
                "bodyHash": resource.recognition.get("bodyHash"),
                "size": resource.recognition.get("size"),
            }
            if resource.recognition
            else None
        ),
        "attributes": (
            {
                "sourceURL": attributes.get("sourceURL"),
                "timestamp": iso_timestamp(attributes.get("timestamp")),
                "fileName": attributes.get("fileName"),
                "attachment": attributes.get("attachment"),
            }
            if resource.attributes
            else None
        ),
    }
    if full:
        result.update(
            {
                "noteGuid": resource.note_guid,
                "active": resource.active is not False,
                "updateSequenceNum": resource.update_sequence_num,
            }
        )
        if resource.attributes:
            result["attributes"].update(
                {
                    key: attributes.get(key)
                    for key in (
                        "latitude",
                        "longitude",
                        "altitude",
                        "cameraMake",
                        "cameraModel",
                        "clientWillIndex",
                    )
                }
            )
    return result


_DATE_ATTRIBUTES = ("subjectDate", "shareDate", "reminderDoneTime", "reminderTime")


def _format_note_attributes(attributes: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not attributes:
        return None
    formatted = dict(attributes)
    for key in _DATE_ATTRIBUTES:
        formatted[key] = iso_timestamp(attributes.get(key))
    return formatted


class NoteService:
    """Implements the four read tools against one cache and the NoteStore API."""

    def __init__(
        self,
        settings: Settings,
        cache: SearchCache,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.cache = cache
        self.transport = transport

    def client_for(self, credential: Credential) -> NoteStoreClient:
        return NoteStoreClient(
            credential,
            timeout=self.settings.request_timeout,
            transport=self.transport,
            dev_mode=self.settings.dev_mode,
        )

    async def create_search(
        self, args: Dict[str, Any], credential: Credential
    ) -> Dict[str, Any]:
        try:
            filters = SearchArguments.model_validate(args)
        except SchemaError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationError(f"Invalid search arguments: {problems}") from e
        require_criteria(filters)

        search_id = self.cache.identifier_for(filters)
        cached = await self.cache.get(search_id)
        if cached is not None:
            logger.info(f"Serving {search_id} from cache")
            return {
                **cached.data,
                "searchId": search_id,
                "cached": True,
                "timestamp": cached.created_at,
            }

        search_query = build_query(filters)
        logger.info(f"Built search query: {search_query}")

        note_filter: Dict[str, Any] = {"words": search_query, "inactive": False}
        if filters.notebook_guid:
            note_filter["notebookGuid"] = filters.notebook_guid

        response = await self.client_for(credential).find_notes_metadata(
            note_filter, offset=filters.offset, max_notes=filters.max_results
        )
        logger.info(f"Found {len(response.notes)} notes ({response.total_notes} total)")

        data = {
            "results": [
                {
                    "guid": note.guid,
                    "title": note.title or "Untitled",
                    "created": iso_timestamp(note.created),
                    "updated": iso_timestamp(note.updated),
                    "notebookGuid": note.notebook_guid,
                    "contentLength": note.content_length,
                    "updateSequenceNum": note.update_sequence_num,
                    # Tag names need a separate getTags call; these are GUIDs
                    "tags": note.tag_guids,
                }
                for note in response.notes
            ],
            "totalFound": response.total_notes,
            "query": search_query,
            "offset": filters.offset,
            "maxResults": filters.max_results,
        }

        entry = await self.cache.put(search_id, search_query, data)
        return {**data, "searchId": search_id, "cached": False, "timestamp": entry.created_at}

    async def get_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        search_id = _require_string(args, "searchId")

        cached = await self.cache.get(search_id)
        if cached is None:
            raise NotFoundError(
                f"Search ID {search_id} not found or expired. Please create a new search."
            )

        return {
            **cached.data,
            "searchId": search_id,
            "cached": True,
            "timestamp": cached.created_at,
        }

    async def _tag_names(self, client: NoteStoreClient, guids: List[str]) -> List[str]:
        if not guids:
            return []
        try:
            return [tag.name for tag in await client.get_tags(guids)]
        except EvernoteError as e:
            logger.warning(f"Failed to resolve tag names: {e.message}")
            return []

    async def _notebook_name(
        self, client: NoteStoreClient, guid: Optional[str]
    ) -> Optional[str]:
        if not guid:
            return None
        try:
            return (await client.get_notebook(guid)).name
        except EvernoteError as e:
            logger.warning(f"Failed to resolve notebook name: {e.message}")
            return None

    async def get_note(self, args: Dict[str, Any], credential: Credential) -> Dict[str, Any]:
        guid = _require_string(args, "noteGuid")
        client = self.client_for(credential)

        note = await client.get_note(guid, with_content=False)
        tag_names = await self._tag_names(client, note.tag_guids)
        notebook_name = await self._notebook_name(client, note.notebook_guid)

        return {
            "guid": note.guid,
            "title": note.title or "Untitled",
            "created": iso_timestamp(note.created),
            "updated": iso_timestamp(note.updated),
            "deleted": iso_timestamp(note.deleted),
            "active": note.active is not False,
            "updateSequenceNum": note.update_sequence_num,
            "notebookGuid": note.notebook_guid,
            "notebookName": notebook_name,
            "tagGuids": note.tag_guids,
            "tagNames": tag_names,
            "contentLength": note.content_length,
            "contentHash": note.content_hash,
            "attributes": _format_note_attributes(note.attributes),
            "resources": [_format_resource(resource) for resource in note.resources],
        }

    async def get_note_content(
        self, args: Dict[str, Any], credential: Credential
    ) -> Dict[str, Any]:
        guid = _require_string(args, "noteGuid")
        output_format = args.get("format") or "text"
        if not isinstance(output_format, str) or output_format not in CONTENT_TYPES:
            raise ValidationError("format must be one of: text, html, enml")

        note: Note = await self.client_for(credential).get_note(guid, with_content=True)
        raw = note.content or ""

        if output_format == "enml":
            content = raw
        elif output_format == "html":
            content = enml_to_html(raw)
        else:
            content = enml_to_plain_text(raw)

        logger.info(f"Processed note {guid} as {output_format} ({len(content)} characters)")
        return {
            "guid": note.guid,
            "title": note.title or "Untitled",
            "content": content,
            "contentType": CONTENT_TYPES[output_format],
            "format": output_format,
            "contentLength": note.content_length,
            "contentHash": note.content_hash,
            "created": iso_timestamp(note.created),
            "updated": iso_timestamp(note.updated),
            "resources": [
                _format_resource(resource, full=False) for resource in note.resources
            ],
        }
