"""Exceptions raised by the benchmark core and its adapters."""


class BenchmarkError(Exception):
    """Base class for benchmark errors surfaced to callers."""


class UnknownStateError(BenchmarkError):
    """A persisted session references a state tag this build does not know."""

    def __init__(self, state_tag: str) -> None:
        super().__init__(f"Unknown state loaded from storage: {state_tag!r}")
        self.state_tag = state_tag


class SessionNotFoundError(BenchmarkError):
    """No stored session exists for the given id."""


class PersistenceError(BenchmarkError):
    """A storage call did not return the row it was expected to write."""


class RunNotFoundError(BenchmarkError):
    """No stored run exists for the given id."""


class ToolCallError(BenchmarkError):
    """A client action was rejected; the transport reports it as a tool error."""


class ResourceUnavailableError(BenchmarkError):
    """A resource was read while it is not enabled for the session."""
