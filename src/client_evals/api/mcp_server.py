"""MCP binding: exposes benchmark sessions as tools and resources.

Each transport session gets its own ``BenchmarkContext`` and capability
registry. ``list_tools`` and ``list_resources`` only return the handles the
session's current state has enabled, and list-changed notifications are sent
after every request that toggled something.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from typing import Any

import mcp.types as types
from fastapi.responses import JSONResponse
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.models import InitializationOptions
from mcp.server.session import ServerSession
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.datastructures import Headers
from starlette.types import Receive, Scope, Send

from client_evals.config import Settings
from client_evals.containers import AppContainer
from client_evals.domain.actions import ActionResult, format_validation_errors
from client_evals.domain.catalog import Catalog
from client_evals.domain.reservations import ReservationDetails
from client_evals.errors import (
    ResourceUnavailableError,
    SessionNotFoundError,
    ToolCallError,
)
from client_evals.services.context import (
    BenchmarkContext,
    BenchmarkRepository,
    ClientChannel,
    ElicitationResponse,
)
from client_evals.services.ranking import RankingService, format_results
from client_evals.services.registry import (
    CapabilityRegistry,
    HandleKind,
    Resource,
    SessionEntry,
    SessionRegistry,
    Tool,
)

logger = logging.getLogger(__name__)

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

_RUN_SESSION_IDS: ContextVar[set[str]] = ContextVar("run_session_ids")


class ChooseCategoryArguments(BaseModel):
    category: str = Field(description="The food category to book.")


class SelectMenuArguments(BaseModel):
    menu_id: str = Field(
        min_length=1, description="Menu id taken from the restaurant list."
    )


class VerifyCodeArguments(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    confirmation_code: str = Field(
        alias="confirmationCode",
        min_length=6,
        max_length=6,
        description="The confirmation code sent in your email.",
    )


ToolInvoker = Callable[[BenchmarkContext, dict[str, Any]], Awaitable[ActionResult]]


@dataclass(frozen=True)
class ToolDefinition:
    """Static description of one benchmark tool."""

    name: Tool
    title: str
    description: str
    input_schema: dict[str, Any]
    invoke: ToolInvoker


@dataclass(frozen=True)
class ResourceDefinition:
    """Static description of one benchmark resource."""

    name: Resource
    uri: str
    title: str
    description: str
    mime_type: str


async def _start_benchmark(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    return await context.start_benchmark()


async def _choose_category(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    parsed = ChooseCategoryArguments.model_validate(arguments)
    return await context.choose_category(parsed.category)


async def _select_menu(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    parsed = SelectMenuArguments.model_validate(arguments)
    return await context.select_menu(parsed.menu_id)


async def _submit_details(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    return await context.submit_details(dict(arguments))


async def _get_confirmation_email(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    return await context.get_confirmation_email()


async def _verify_code(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    parsed = VerifyCodeArguments.model_validate(arguments)
    return await context.verify_code(parsed.confirmation_code)


async def _try_again(
    context: BenchmarkContext, arguments: dict[str, Any]
) -> ActionResult:
    return await context.try_again()


TOOL_DEFINITIONS: dict[str, ToolDefinition] = {
    definition.name.value: definition
    for definition in (
        ToolDefinition(
            Tool.START_BENCHMARK,
            "Start Benchmark",
            "Begin the MCP benchmark evaluation.",
            _EMPTY_SCHEMA,
            _start_benchmark,
        ),
        ToolDefinition(
            Tool.CHOOSE_CATEGORY,
            "Choose Food Category",
            "Select a food category for the reservation.",
            ChooseCategoryArguments.model_json_schema(),
            _choose_category,
        ),
        ToolDefinition(
            Tool.SELECT_MENU,
            "Select Menu",
            "Select a specific restaurant menu.",
            SelectMenuArguments.model_json_schema(),
            _select_menu,
        ),
        ToolDefinition(
            Tool.SUBMIT_DETAILS,
            "Submit Reservation Details",
            "Submit the final details for the reservation.",
            ReservationDetails.model_json_schema(),
            _submit_details,
        ),
        ToolDefinition(
            Tool.GET_CONFIRMATION_EMAIL,
            "Get Confirmation Email",
            "Generates the confirmation email for your reservation.",
            _EMPTY_SCHEMA,
            _get_confirmation_email,
        ),
        ToolDefinition(
            Tool.VERIFY_CODE,
            "Verify Confirmation Code",
            "Submit the confirmation code from the email to finalize the "
            "benchmark.",
            VerifyCodeArguments.model_json_schema(by_alias=True),
            _verify_code,
        ),
        ToolDefinition(
            Tool.TRY_AGAIN,
            "Try Again",
            "Resets the session and starts a new benchmark run.",
            _EMPTY_SCHEMA,
            _try_again,
        ),
    )
}

RESOURCE_DEFINITIONS: dict[str, ResourceDefinition] = {
    definition.name.value: definition
    for definition in (
        ResourceDefinition(
            Resource.RESTAURANT_LIST,
            "mcp://benchmark/restaurants",
            "Restaurant List",
            "Available restaurants and food categories.",
            "application/json",
        ),
        ResourceDefinition(
            Resource.CONFIRMATION_EMAIL,
            "mcp://benchmark-server/confirmation_email",
            "Confirmation Email",
            "The confirmation email text for your reservation.",
            "text/plain",
        ),
        ResourceDefinition(
            Resource.BENCHMARK_RESULTS,
            "mcp://benchmark-server/results",
            "Benchmark Results",
            "Score, time taken and ranking of your benchmark run.",
            "text/plain",
        ),
    )
}


@dataclass
class McpClientChannel(ClientChannel):
    """Sends server-initiated requests over the session of the current request."""

    server: Server

    async def elicit(
        self, message: str, requested_schema: dict[str, object]
    ) -> ElicitationResponse:
        request = self.server.request_context
        result = await request.session.elicit(
            message=message,
            requestedSchema=requested_schema,
            related_request_id=request.request_id,
        )
        return ElicitationResponse(action=result.action, content=result.content)

    async def create_message(self, prompt: str, max_tokens: int) -> str | None:
        request = self.server.request_context
        result = await request.session.create_message(
            messages=[
                types.SamplingMessage(
                    role="user", content=types.TextContent(type="text", text=prompt)
                )
            ],
            max_tokens=max_tokens,
            related_request_id=request.request_id,
        )
        return _sampled_text(result.content)


class _BenchmarkLowLevelServer(Server):
    """Low-level server that advertises list-changed notifications.

    Each transport session runs the server once. Request handlers run in tasks
    spawned by that run, so the session ids they record are visible to it and
    are dropped from the live registry when the run ends, however it ends.
    """

    def __init__(self, name: str, version: str, sessions: SessionRegistry) -> None:
        super().__init__(name, version=version)
        self.sessions = sessions

    async def run(self, *args: Any, **kwargs: Any) -> None:
        session_ids: set[str] = set()
        token = _RUN_SESSION_IDS.set(session_ids)
        try:
            await super().run(*args, **kwargs)
        finally:
            _RUN_SESSION_IDS.reset(token)
            for session_id in session_ids:
                self.sessions.remove(session_id)

    def track_session(self, session_id: str) -> None:
        """Tie ``session_id`` to the server run handling the current request."""
        session_ids = _RUN_SESSION_IDS.get(None)
        if session_ids is not None:
            session_ids.add(session_id)

    def create_initialization_options(
        self,
        notification_options: NotificationOptions | None = None,
        experimental_capabilities: dict[str, dict[str, Any]] | None = None,
    ) -> InitializationOptions:
        return super().create_initialization_options(
            notification_options
            or NotificationOptions(tools_changed=True, resources_changed=True),
            experimental_capabilities,
        )


@dataclass
class McpBenchmarkServer:
    """Binds MCP requests to per-session benchmark contexts."""

    settings: Settings
    repository: BenchmarkRepository
    catalog: Catalog
    sessions: SessionRegistry
    ranking_service: RankingService
    opening_locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)

    @classmethod
    def from_container(cls, container: AppContainer) -> "McpBenchmarkServer":
        return cls(
            settings=container.settings,
            repository=container.repository,
            catalog=container.catalog,
            sessions=container.session_registry,
            ranking_service=container.ranking_service,
        )

    async def open_session(
        self,
        session_id: str,
        init_params: dict[str, object],
        channel: ClientChannel,
    ) -> SessionEntry:
        """Load or create the stored session and re-enter its state."""
        record = self.repository.get_or_create_session(session_id, init_params)
        registry = CapabilityRegistry.create()
        context = BenchmarkContext.create(
            record,
            repository=self.repository,
            registry=registry,
            channel=channel,
            catalog=self.catalog,
            sampling_timeout_seconds=self.settings.sampling_timeout_seconds,
            sampling_max_tokens=self.settings.sampling_max_tokens,
        )
        await context.resume()
        entry = SessionEntry(context=context, registry=registry)
        self.sessions.add(session_id, entry)
        return entry

    async def get_or_open_session(
        self,
        session_id: str,
        init_params: dict[str, object],
        channel: ClientChannel,
    ) -> SessionEntry:
        """Return the live entry for ``session_id``, opening it at most once."""
        lock = self.opening_locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                entry = self.sessions.get(session_id)
                if entry is None:
                    entry = await self.open_session(session_id, init_params, channel)
                return entry
        finally:
            self.opening_locks.pop(session_id, None)

    def list_tools(self, entry: SessionEntry) -> list[types.Tool]:
        """Return definitions of the tools enabled for the session."""
        return [
            types.Tool(
                name=definition.name.value,
                title=definition.title,
                description=definition.description,
                inputSchema=definition.input_schema,
            )
            for definition in TOOL_DEFINITIONS.values()
            if entry.registry.is_enabled(definition.name)
        ]

    def list_resources(self, entry: SessionEntry) -> list[types.Resource]:
        """Return definitions of the resources enabled for the session."""
        return [
            types.Resource(
                name=definition.name.value,
                uri=definition.uri,
                title=definition.title,
                description=definition.description,
                mimeType=definition.mime_type,
            )
            for definition in RESOURCE_DEFINITIONS.values()
            if entry.registry.is_enabled(definition.name)
        ]

    async def call_tool(
        self, entry: SessionEntry, name: str, arguments: dict[str, Any] | None
    ) -> ActionResult:
        """Dispatch a tool call to the session's current state."""
        definition = TOOL_DEFINITIONS.get(name)
        if definition is None:
            return ActionResult(text=f"Error: Unknown tool '{name}'.", is_error=True)
        async with entry.lock:
            try:
                return await definition.invoke(entry.context, arguments or {})
            except ValidationError as exc:
                return ActionResult(
                    text=f"Error: Invalid arguments. {format_validation_errors(exc)}",
                    is_error=True,
                )

    def read_resource(self, entry: SessionEntry, uri: str) -> ReadResourceContents:
        """Render an enabled resource of the session."""
        definition = next(
            (item for item in RESOURCE_DEFINITIONS.values() if item.uri == uri), None
        )
        if definition is None:
            raise ResourceUnavailableError(f"Unknown resource {uri}")
        if not entry.registry.is_enabled(definition.name):
            raise ResourceUnavailableError(
                f"Resource {definition.name} is not available in the current state"
            )

        context = entry.context
        if definition.name is Resource.RESTAURANT_LIST:
            text = self._restaurant_list(context)
        elif definition.name is Resource.CONFIRMATION_EMAIL:
            text = (
                context.reservation.confirmation_email
                or "No confirmation email has been generated yet."
            )
        else:
            results = self.ranking_service.results_for_session(context.session_id)
            text = (
                format_results(results)
                if results is not None
                else "Could not find results for this session."
            )
        return ReadResourceContents(content=text, mime_type=definition.mime_type)

    def build_server(self) -> Server:
        """Create the low-level MCP server with benchmark handlers."""
        server = _BenchmarkLowLevelServer(
            self.settings.server_name, self.settings.server_version, self.sessions
        )
        channel = McpClientChannel(server)

        @server.list_tools()
        async def list_tools() -> list[types.Tool]:
            entry, session = await self._entry_for_request(server, channel)
            await flush_list_changes(entry.registry, session)
            return self.list_tools(entry)

        # Arguments are validated per state so invalid details can be reported.
        @server.call_tool(validate_input=False)
        async def call_tool(
            name: str, arguments: dict[str, Any]
        ) -> list[types.TextContent]:
            entry, session = await self._entry_for_request(server, channel)
            try:
                result = await self.call_tool(entry, name, arguments)
            finally:
                await flush_list_changes(entry.registry, session)
            if result.is_error:
                raise ToolCallError(result.text)
            return [types.TextContent(type="text", text=result.text)]

        @server.list_resources()
        async def list_resources() -> list[types.Resource]:
            entry, session = await self._entry_for_request(server, channel)
            await flush_list_changes(entry.registry, session)
            return self.list_resources(entry)

        @server.read_resource()
        async def read_resource(uri: Any) -> list[ReadResourceContents]:
            entry, _session = await self._entry_for_request(server, channel)
            return [self.read_resource(entry, str(uri))]

        return server

    def create_session_manager(self) -> StreamableHTTPSessionManager:
        return StreamableHTTPSessionManager(app=self.build_server(), stateless=False)

    async def _entry_for_request(
        self, server: _BenchmarkLowLevelServer, channel: ClientChannel
    ) -> tuple[SessionEntry, ServerSession]:
        request = server.request_context
        headers = request.request.headers if request.request is not None else {}
        session_id = headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            raise SessionNotFoundError("Request carries no MCP session id")

        server.track_session(session_id)
        entry = self.sessions.get(session_id)
        if entry is None:
            client_params = request.session.client_params
            init_params = (
                client_params.model_dump(mode="json", by_alias=True, exclude_none=True)
                if client_params is not None
                else {}
            )
            entry = await self.get_or_open_session(session_id, init_params, channel)
        return entry, request.session

    def _restaurant_list(self, context: BenchmarkContext) -> str:
        category = context.reservation.category
        if category and self.catalog.has_category(category):
            data = {
                "title": f"Menus for {category}",
                "items": [
                    asdict(option)
                    for option in self.catalog.options_for(
                        context.session_id, category
                    )
                ],
            }
        else:
            data = {
                "title": "Available Food Categories",
                "items": [
                    {"id": name, "name": name} for name in self.catalog.categories()
                ],
            }
        return json.dumps(data, indent=2)


class McpEndpoint:
    """ASGI app forwarding to the session manager.

    The session manager only exists while the application lifespan runs. A
    DELETE request closes the transport session, so its registry entry is
    dropped afterwards.
    """

    def __init__(self, sessions: SessionRegistry) -> None:
        self.sessions = sessions
        self.session_manager: StreamableHTTPSessionManager | None = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self.session_manager is None:
            response = JSONResponse(
                {"detail": "MCP endpoint is not running"}, status_code=503
            )
            await response(scope, receive, send)
            return

        await self.session_manager.handle_request(scope, receive, send)
        if scope["type"] == "http" and scope["method"] == "DELETE":
            session_id = Headers(scope=scope).get(MCP_SESSION_ID_HEADER)
            if session_id:
                self.sessions.remove(session_id)


async def flush_list_changes(
    registry: CapabilityRegistry, session: ServerSession
) -> None:
    """Notify the client once per handle kind toggled since the last flush."""
    changes = registry.take_pending_changes()
    if HandleKind.TOOL in changes:
        await session.send_tool_list_changed()
    if HandleKind.RESOURCE in changes:
        await session.send_resource_list_changed()


def _sampled_text(content: object) -> str | None:
    blocks = content if isinstance(content, list) else [content]
    texts = [block.text for block in blocks if isinstance(block, types.TextContent)]
    return "\n".join(texts) or None
