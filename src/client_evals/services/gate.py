"""Capability-driven path selection."""

from enum import StrEnum

from client_evals.domain.capabilities import DeclaredCapabilities


class Continuation(StrEnum):
    """How reservation details are collected after a menu is selected."""

    ELICITATION = "elicitation"
    TOOL = "tool"


def choose_continuation(capabilities: DeclaredCapabilities) -> Continuation:
    """Pick the interactive path when the client declared elicitation."""
    if capabilities.elicitation:
        return Continuation.ELICITATION
    return Continuation.TOOL


def should_attempt_sampling(capabilities: DeclaredCapabilities) -> bool:
    """Return whether the confirmation email should be generated by the client."""
    return capabilities.sampling
