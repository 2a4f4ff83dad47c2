"""Per-session capability handles and the live session registry."""

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from client_evals.services.context import BenchmarkContext

logger = logging.getLogger(__name__)

ToggleAction = Callable[[], None]


class HandleKind(StrEnum):
    TOOL = "tool"
    RESOURCE = "resource"


class Tool(StrEnum):
    """Tool names exposed to clients."""

    START_BENCHMARK = "start_benchmark"
    CHOOSE_CATEGORY = "choose_food_category"
    SELECT_MENU = "select_menu"
    SUBMIT_DETAILS = "submit_reservation_details"
    GET_CONFIRMATION_EMAIL = "get_confirmation_email"
    VERIFY_CODE = "verify_confirmation_code"
    TRY_AGAIN = "try_again"


class Resource(StrEnum):
    """Resource names exposed to clients."""

    RESTAURANT_LIST = "restaurant_list"
    CONFIRMATION_EMAIL = "confirmation_email"
    BENCHMARK_RESULTS = "benchmark_results"


@dataclass
class CapabilityHandle:
    """A named tool or resource that can be switched on and off."""

    name: str
    kind: HandleKind
    enabled: bool = False
    _on_change: Callable[["CapabilityHandle"], None] | None = field(
        default=None, repr=False
    )

    def enable(self) -> None:
        self._set(True)

    def disable(self) -> None:
        self._set(False)

    def _set(self, enabled: bool) -> None:
        if self.enabled == enabled:
            return
        self.enabled = enabled
        if self._on_change is not None:
            self._on_change(self)


@dataclass
class CapabilityRegistry:
    """The tools and resources of one session.

    Toggles are applied in batches; a batch that changes anything leaves one
    pending list-changed flag per handle kind for the transport to flush.
    """

    handles: dict[str, CapabilityHandle] = field(default_factory=dict)
    pending_changes: set[HandleKind] = field(default_factory=set)

    @classmethod
    def create(cls) -> "CapabilityRegistry":
        """Register every tool and resource, all disabled."""
        registry = cls()
        for tool in Tool:
            registry.register(tool.value, HandleKind.TOOL)
        for resource in Resource:
            registry.register(resource.value, HandleKind.RESOURCE)
        return registry

    def register(self, name: str, kind: HandleKind) -> CapabilityHandle:
        handle = CapabilityHandle(name=name, kind=kind, _on_change=self._mark_changed)
        self.handles[name] = handle
        return handle

    def enable(self, name: str) -> ToggleAction:
        """Return a deferred action that enables ``name``."""
        return self.handles[name].enable

    def disable(self, name: str) -> ToggleAction:
        """Return a deferred action that disables ``name``."""
        return self.handles[name].disable

    def apply_batch(self, actions: Iterable[ToggleAction]) -> None:
        """Run toggle actions in order as a single unit."""
        for action in actions:
            action()

    def is_enabled(self, name: str) -> bool:
        handle = self.handles.get(name)
        return handle is not None and handle.enabled

    def enabled_names(self, kind: HandleKind) -> list[str]:
        return [
            handle.name
            for handle in self.handles.values()
            if handle.kind == kind and handle.enabled
        ]

    def take_pending_changes(self) -> set[HandleKind]:
        """Return and clear the kinds whose list changed since the last call."""
        changes = set(self.pending_changes)
        self.pending_changes.clear()
        return changes

    def _mark_changed(self, handle: CapabilityHandle) -> None:
        self.pending_changes.add(handle.kind)


@dataclass
class SessionEntry:
    """Live objects held for one connected session."""

    context: "BenchmarkContext"
    registry: CapabilityRegistry
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass
class SessionRegistry:
    """In-memory map of connected sessions.

    Entries are added on the first request of a session and removed when its
    transport session is closed.
    """

    entries: dict[str, SessionEntry] = field(default_factory=dict)

    def get(self, session_id: str) -> SessionEntry | None:
        return self.entries.get(session_id)

    def add(self, session_id: str, entry: SessionEntry) -> None:
        logger.info("Registered session %s", session_id)
        self.entries[session_id] = entry

    def remove(self, session_id: str) -> None:
        if self.entries.pop(session_id, None) is not None:
            logger.info("Removed session %s", session_id)

    def clear(self) -> None:
        self.entries.clear()

    def __len__(self) -> int:
        return len(self.entries)
