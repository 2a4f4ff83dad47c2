"""Rubric and scorecard models."""

from dataclasses import asdict, dataclass
from enum import StrEnum


class CheckStatus(StrEnum):
    """Outcome of a single rubric check."""

    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    SKIPPED = "SKIPPED"


ELICITATION_SUPPORT = "elicitation_support"
SAMPLING_SUPPORT = "sampling_support"
RESOURCE_READING = "resource_reading"
CODE_VERIFICATION = "code_verification"

# check id -> (description, max points)
RUBRIC: dict[str, tuple[str, int]] = {
    ELICITATION_SUPPORT: ("Client correctly handles an elicitation request.", 25),
    SAMPLING_SUPPORT: ("Client uses sampling to generate confirmation email.", 20),
    RESOURCE_READING: ("Client can read from a dynamically enabled resource.", 25),
    CODE_VERIFICATION: (
        "Client submits correct data from a resource to a tool.",
        25,
    ),
}


@dataclass
class ScorecardLineItem:
    """A single rubric line item with its current award."""

    description: str
    max_points: int
    status: CheckStatus = CheckStatus.PENDING
    points_earned: int = 0
    notes: str | None = None

    def award(self, status: CheckStatus, points: int, notes: str | None) -> None:
        """Record an award, clamping points into ``[0, max_points]``."""
        self.status = status
        self.points_earned = max(0, min(points, self.max_points))
        self.notes = notes

    def to_dict(self) -> dict[str, object]:
        """Return the JSON form stored in the run results."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


Scorecard = dict[str, ScorecardLineItem]


def build_scorecard() -> Scorecard:
    """Create a fresh scorecard with every check pending."""
    return {
        check_id: ScorecardLineItem(description=description, max_points=max_points)
        for check_id, (description, max_points) in RUBRIC.items()
    }


def total_score(scorecard: Scorecard) -> int:
    """Return the live sum of earned points."""
    return sum(item.points_earned for item in scorecard.values())


def scorecard_to_dict(scorecard: Scorecard) -> dict[str, dict[str, object]]:
    """Serialize a scorecard for persistence."""
    return {check_id: item.to_dict() for check_id, item in scorecard.items()}


def scorecard_from_dict(raw: dict[str, object] | None) -> Scorecard:
    """Restore a scorecard from persisted details.

    Checks missing from ``raw`` keep their pending defaults, and persisted
    entries for checks no longer in the rubric are dropped.
    """
    scorecard = build_scorecard()
    if not raw:
        return scorecard
    for check_id, item in scorecard.items():
        stored = raw.get(check_id)
        if not isinstance(stored, dict):
            continue
        try:
            status = CheckStatus(str(stored.get("status", CheckStatus.PENDING)))
        except ValueError:
            status = CheckStatus.PENDING
        notes = stored.get("notes")
        item.award(
            status,
            int(stored.get("points_earned", 0) or 0),
            str(notes) if notes is not None else None,
        )
    return scorecard
