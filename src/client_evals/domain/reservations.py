"""Reservation data collected during a benchmark run."""

from dataclasses import asdict, dataclass, fields, replace

from pydantic import BaseModel, ConfigDict, Field

MIN_GUESTS = 1
MAX_GUESTS = 20
TIME_PATTERN = r"^[0-9]{2}:[0-9]{2}$"


@dataclass(frozen=True)
class ReservationRecord:
    """Answers accumulated along the happy path."""

    category: str | None = None
    menu: str | None = None
    guests: int | None = None
    time: str | None = None
    confirmation_email: str | None = None
    confirmation_code: str | None = None

    def merge(self, **changes: object) -> "ReservationRecord":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Return the non-empty fields for persistence."""
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, raw: dict[str, object] | None) -> "ReservationRecord":
        """Build a record from persisted session data, ignoring unknown keys."""
        if not raw:
            return cls()
        names = {field.name for field in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in names})


class ReservationDetails(BaseModel):
    """Guest count and time supplied by elicitation or the fallback tool."""

    model_config = ConfigDict(strict=True)

    guests: int = Field(
        ge=MIN_GUESTS,
        le=MAX_GUESTS,
        description=f"Number of guests ({MIN_GUESTS}-{MAX_GUESTS})",
    )
    time: str = Field(pattern=TIME_PATTERN, description="Reservation time (HH:MM)")


ELICITATION_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "guests": {
            "type": "integer",
            "description": f"Number of guests ({MIN_GUESTS}-{MAX_GUESTS})",
            "minimum": MIN_GUESTS,
            "maximum": MAX_GUESTS,
        },
        "time": {
            "type": "string",
            "description": "Reservation time (HH:MM)",
            "pattern": TIME_PATTERN,
        },
    },
    "required": ["guests", "time"],
}
