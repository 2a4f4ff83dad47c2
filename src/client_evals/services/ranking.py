"""Final results and ranking across completed runs."""

import json
from dataclasses import dataclass
from typing import Protocol

from client_evals.domain.sessions import RunRecord


class RankingRepository(Protocol):
    """Read access needed to rank runs."""

    def get_latest_run_for_session(self, session_id: str) -> RunRecord | None:
        """Return the run the session currently points at, if any."""

    def get_all_successful_runs_ranked(self) -> list[RunRecord]:
        """Return successful runs ordered by score, then completion time."""


@dataclass(frozen=True)
class RunResults:
    """A run together with its standing among successful runs."""

    run: RunRecord
    rank: int | None
    total_ranked: int

    @property
    def percentile(self) -> float | None:
        """Share of successful runs ranked strictly below this one, in percent."""
        if self.rank is None or self.total_ranked == 0:
            return None
        return round(100 * (self.total_ranked - self.rank) / self.total_ranked, 1)


@dataclass
class RankingService:
    """Computes results and rank for finished sessions."""

    repository: RankingRepository

    def results_for_session(self, session_id: str) -> RunResults | None:
        """Return the latest run of a session with its rank."""
        run = self.repository.get_latest_run_for_session(session_id)
        if run is None:
            return None
        ranked = self.repository.get_all_successful_runs_ranked()
        return RunResults(
            run=run, rank=rank_of(run.id, ranked), total_ranked=len(ranked)
        )

    def leaderboard(self, limit: int = 20) -> list[RunRecord]:
        """Return the best successful runs."""
        return self.repository.get_all_successful_runs_ranked()[:limit]


def rank_of(run_id: str, ranked: list[RunRecord]) -> int | None:
    """Return the 1-based position of ``run_id`` in ``ranked``."""
    for index, run in enumerate(ranked, start=1):
        if run.id == run_id:
            return index
    return None


def format_results(results: RunResults) -> str:
    """Render results as the plain-text benchmark report."""
    run = results.run
    if not run.is_completed:
        status = "IN PROGRESS"
    else:
        status = "SUCCESS" if run.success else "FAILED"
    time_taken = (
        f"{run.time_to_completion_ms / 1000:.2f}s"
        if run.time_to_completion_ms is not None
        else "N/A"
    )
    rank = results.rank if results.rank is not None else "N/A"
    percentile = (
        f"{results.percentile}%" if results.percentile is not None else "N/A"
    )
    lines = [
        "--- Benchmark Results ---",
        f"Status: {status}",
        f"Score: {run.score if run.score is not None else 'N/A'}",
        f"Time: {time_taken}",
        f"Rank: {rank} out of {results.total_ranked} successful runs.",
        f"Percentile: {percentile}",
        f"Results: {json.dumps(run.results or {}, indent=2)}",
    ]
    return "\n".join(lines)
