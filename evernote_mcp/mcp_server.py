#!/usr/bin/env python3
"""Evernote MCP Server - read-only Evernote access for MCP clients."""

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent
from mcp.server.models import InitializationOptions
from mcp.server.lowlevel import NotificationOptions

from evernote_mcp.core.cache import SearchCache
from evernote_mcp.core.config import SERVER_NAME, SERVER_VERSION, Settings
from evernote_mcp.core.credentials import check_expiration, create_credential_store
from evernote_mcp.core.errors import (
    AuthenticationRequiredError,
    EvernoteError,
    ValidationError,
    error_payload,
)
from evernote_mcp.core.note_store import redact
from evernote_mcp.core.notes import NoteService
from evernote_mcp.core.oauth import (
    EvernoteOAuth,
    PendingAuthorizations,
    parse_callback_url,
)
from evernote_mcp.models.schemas import Credential

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def success_response(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": "success", "timestamp": _timestamp(), "data": data, "error": None}


def error_response(exc: Exception) -> Dict[str, Any]:
    return {"status": "error", "timestamp": _timestamp(), "data": None, **error_payload(exc)}


class EvernoteMCPServer:
    """MCP server exposing Evernote search and note retrieval."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.store = create_credential_store(self.settings)
        self.oauth = EvernoteOAuth(self.settings, self.store)
        self.cache = SearchCache.from_settings(self.settings)
        self.notes = NoteService(self.settings, self.cache)
        self.pending = PendingAuthorizations()

        self.app = Server(SERVER_NAME)
        self._register_handlers()

    def _register_handlers(self):
        """Register MCP protocol handlers."""

        @self.app.list_tools()
        async def list_tools() -> List[Tool]:
            return TOOLS

        @self.app.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            result = await self.handle_tool_call(name, arguments or {})
            return [
                TextContent(
                    type="text",
                    text=json.dumps(result, indent=2, ensure_ascii=False),
                )
            ]

    async def handle_tool_call(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run one tool and wrap the outcome; never raises."""
        self._log_invocation(name, arguments)
        try:
            data = await self._dispatch_tool_call(name, arguments)
        except EvernoteError as e:
            logger.error(f"{name} failed [{e.category}]: {e.message}")
            return error_response(e)
        except Exception as e:
            logger.exception(f"Unexpected error in tool {name}")
            return error_response(e)

        logger.info(f"{name} succeeded")
        return success_response(data)

    async def _dispatch_tool_call(
        self, name: str, arguments: Dict[str, Any]
    ) -> Dict[str, Any]:
        handlers = {
            "createSearch": self._handle_create_search,
            "getSearch": self._handle_get_search,
            "getNote": self._handle_get_note,
            "getNoteContent": self._handle_get_note_content,
            "authenticate": self._handle_authenticate,
            "completeAuthentication": self._handle_complete_authentication,
            "checkAuthStatus": self._handle_check_auth_status,
        }

        handler = handlers.get(name)
        if not handler:
            raise ValidationError(f"Unknown tool: {name}")

        return await handler(arguments)

    def _log_invocation(self, name: str, arguments: Dict[str, Any]):
        if self.settings.dev_mode:
            logger.debug(f"Tool invocation {name}: {json.dumps(redact(arguments))}")
        else:
            logger.info(f"Tool invocation {name}: [{', '.join(arguments)}]")

    async def _require_credential(self) -> Credential:
        credential = await self.store.load()
        status = check_expiration(credential)
        if credential is None or status.is_expired:
            raise AuthenticationRequiredError(status.message)
        return credential

    async def _handle_create_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        credential = await self._require_credential()
        return await self.notes.create_search(args, credential)

    async def _handle_get_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.notes.get_search(args)

    async def _handle_get_note(self, args: Dict[str, Any]) -> Dict[str, Any]:
        credential = await self._require_credential()
        return await self.notes.get_note(args, credential)

    async def _handle_get_note_content(self, args: Dict[str, Any]) -> Dict[str, Any]:
        credential = await self._require_credential()
        return await self.notes.get_note_content(args, credential)

    async def _handle_authenticate(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if args.get("force"):
            outcome = await self.oauth.reauthenticate()
        else:
            outcome = await self.oauth.authenticate()

        if isinstance(outcome, Credential):
            return {
                "authenticated": True,
                "userId": outcome.user_id,
                "shardId": outcome.shard_id,
                "message": check_expiration(outcome).message,
            }

        self.pending.add(outcome)
        return {
            "authenticated": False,
            "needsCallback": True,
            "requestToken": outcome.request_token,
            "authorizeUrl": outcome.authorize_url,
            "message": (
                "Approve access in the browser window, then call "
                "completeAuthentication with the URL you were redirected to."
            ),
        }

    async def _handle_complete_authentication(
        self, args: Dict[str, Any]
    ) -> Dict[str, Any]:
        callback_url = args.get("callbackUrl")
        if callback_url:
            if not isinstance(callback_url, str):
                raise ValidationError("callbackUrl must be a string")
            token, verifier = parse_callback_url(callback_url)
        else:
            token = args.get("oauthToken")
            verifier = args.get("oauthVerifier")
            if not (isinstance(token, str) and token and isinstance(verifier, str) and verifier):
                raise ValidationError(
                    "Provide callbackUrl, or both oauthToken and oauthVerifier"
                )

        transaction = self.pending.pop(token)
        credential = await self.oauth.complete_authentication(
            token, verifier, transaction.request_token_secret
        )
        return {
            "authenticated": True,
            "userId": credential.user_id,
            "shardId": credential.shard_id,
            "message": check_expiration(credential).message,
        }

    async def _handle_check_auth_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        credential = await self.store.load()
        status = check_expiration(credential)
        return {
            "hasCredential": status.has_credential,
            "isExpired": status.is_expired,
            "expiresAt": status.expires_at,
            "message": status.message,
            "pendingAuthorizations": len(self.pending),
        }

    async def run(self):
        """Serve MCP over stdio until the client disconnects."""
        sweeper = asyncio.create_task(self.cache.run_sweeper())
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.app.run(
                    read_stream,
                    write_stream,
                    InitializationOptions(
                        server_name=SERVER_NAME,
                        server_version=SERVER_VERSION,
                        capabilities=self.app.get_capabilities(
                            notification_options=NotificationOptions(),
                            experimental_capabilities={},
                        ),
                    ),
                )
        finally:
            sweeper.cancel()


TOOLS = [
    Tool(
        name="createSearch",
        description="Search for notes in Evernote using natural language queries",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": 'Search text (e.g. "boat repair notes")',
                },
                "maxResults": {
                    "type": "integer",
                    "description": "Maximum number of results to return",
                    "minimum": 1,
                    "maximum": 100,
                    "default": 20,
                },
                "offset": {
                    "type": "integer",
                    "description": "Number of results to skip for pagination",
                    "minimum": 0,
                    "default": 0,
                },
                "notebookName": {
                    "type": "string",
                    "description": "Only search within this notebook",
                },
                "notebookGuid": {
                    "type": "string",
                    "description": "Only search within the notebook with this GUID",
                },
                "tags": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Tag names to filter by",
                },
                "createdAfter": {
                    "type": "string",
                    "format": "date",
                    "description": "Only notes created after this date (YYYY-MM-DD)",
                },
                "updatedAfter": {
                    "type": "string",
                    "format": "date",
                    "description": "Only notes updated after this date (YYYY-MM-DD)",
                },
            },
        },
    ),
    Tool(
        name="getSearch",
        description="Get the results of a previously executed search by its ID",
        inputSchema={
            "type": "object",
            "properties": {
                "searchId": {
                    "type": "string",
                    "description": "Identifier returned by createSearch",
                },
            },
            "required": ["searchId"],
        },
    ),
    Tool(
        name="getNote",
        description="Retrieve metadata for a specific note by its GUID",
        inputSchema={
            "type": "object",
            "properties": {
                "noteGuid": {
                    "type": "string",
                    "description": "The GUID of the note",
                },
            },
            "required": ["noteGuid"],
        },
    ),
    Tool(
        name="getNoteContent",
        description="Retrieve the full content of a note in a readable format",
        inputSchema={
            "type": "object",
            "properties": {
                "noteGuid": {
                    "type": "string",
                    "description": "The GUID of the note",
                },
                "format": {
                    "type": "string",
                    "enum": ["text", "html", "enml"],
                    "description": "Output format",
                    "default": "text",
                },
            },
            "required": ["noteGuid"],
        },
    ),
    Tool(
        name="authenticate",
        description="Connect to Evernote, opening the browser if no valid login is stored",
        inputSchema={
            "type": "object",
            "properties": {
                "force": {
                    "type": "boolean",
                    "description": "Discard the stored login and start over",
                    "default": False,
                },
            },
        },
    ),
    Tool(
        name="completeAuthentication",
        description="Finish the Evernote login with the browser redirect URL",
        inputSchema={
            "type": "object",
            "properties": {
                "callbackUrl": {
                    "type": "string",
                    "description": "Full URL the browser was redirected to",
                },
                "oauthToken": {"type": "string"},
                "oauthVerifier": {"type": "string"},
            },
        },
    ),
    Tool(
        name="checkAuthStatus",
        description="Report whether a stored Evernote login exists and when it expires",
        inputSchema={"type": "object", "properties": {}},
    ),
]


async def async_main(settings: Settings):
    server = EvernoteMCPServer(settings)
    await server.run()


def main():
    """Synchronous entry point for console script."""
    settings = Settings.from_env()
    # stdout carries the protocol
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(async_main(settings))
    except KeyboardInterrupt:
        logger.info("Evernote MCP Server stopped")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise


if __name__ == "__main__":
    main()
