"""Results returned to the transport for client actions."""

from dataclasses import dataclass

from pydantic import ValidationError


@dataclass(frozen=True)
class ActionResult:
    """User-facing outcome of a client action."""

    text: str
    is_error: bool = False


def format_validation_errors(exc: ValidationError) -> str:
    """Flatten pydantic errors into one ``Errors: field: message`` line."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "payload"
        messages.append(f"{location}: {error['msg']}")
    return "Errors: " + "; ".join(messages)
