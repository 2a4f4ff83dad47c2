"""Domain models for benchmark sessions and runs."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class RunStatus(StrEnum):
    """Lifecycle status of a benchmark run."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SessionRecord:
    """Represents a persisted benchmark session."""

    id: str
    run_id: str | None
    current_step: str
    session_data: dict[str, object]
    init_params: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class RunRecord:
    """Represents a persisted benchmark run."""

    id: str
    client_id: str | None
    declared_capabilities: dict[str, object]
    status: RunStatus
    created_at: datetime
    success: bool | None = None
    score: int | None = None
    results: dict[str, object] | None = None
    time_to_completion_ms: int | None = None
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == RunStatus.COMPLETED
