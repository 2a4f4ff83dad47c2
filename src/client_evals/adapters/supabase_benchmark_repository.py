"""Supabase-backed benchmark repository."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from supabase import Client

from client_evals.domain.sessions import RunRecord, RunStatus, SessionRecord
from client_evals.errors import PersistenceError, RunNotFoundError, SessionNotFoundError
from client_evals.services.context import BenchmarkRepository
from client_evals.services.states import StateTag

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = "id, run_id, current_step, session_data, init_params"


@dataclass
class SupabaseBenchmarkRepository(BenchmarkRepository):
    """Supabase implementation for benchmark sessions, runs and clients."""

    client: Client

    def find_or_create_client(self, client_info: dict[str, object]) -> str:
        """Return the id of the client row matching name and version."""
        response = (
            self.client.table("clients")
            .select("id")
            .eq("client_info->>name", str(client_info.get("name", "")))
            .eq("client_info->>version", str(client_info.get("version", "")))
            .limit(1)
            .execute()
        )
        if response.data:
            return str(response.data[0]["id"])

        response = (
            self.client.table("clients").insert({"client_info": client_info}).execute()
        )
        if not response.data:
            raise PersistenceError("Failed to create client")
        return str(response.data[0]["id"])

    def get_or_create_session(
        self, session_id: str, init_params: dict[str, object]
    ) -> SessionRecord:
        """Return the stored session, creating it in the idle state if absent."""
        existing = self._get_session_row(session_id)
        if existing is not None:
            return _parse_session(existing)

        response = (
            self.client.table("benchmark_sessions")
            .insert(
                {
                    "id": session_id,
                    "run_id": None,
                    "current_step": StateTag.IDLE.value,
                    "session_data": {},
                    "init_params": init_params,
                }
            )
            .execute()
        )
        if not response.data:
            raise PersistenceError("Failed to create benchmark session")
        logger.info("Created benchmark session %s", session_id)
        return _parse_session(response.data[0])

    def create_run_for_session(self, session_id: str) -> str:
        """Create an in-progress run from the stored init params and link it."""
        session = self._require_session_row(session_id)
        init_params = session.get("init_params") or {}
        client_info = init_params.get("clientInfo") or {}
        client_id = self.find_or_create_client(client_info)

        run_id = self._insert_run(client_id, init_params.get("capabilities") or {})
        self.client.table("benchmark_sessions").update({"run_id": run_id}).eq(
            "id", session_id
        ).execute()
        logger.info("Created run %s for session %s", run_id, session_id)
        return run_id

    def get_run(self, run_id: str) -> RunRecord:
        """Return a run by id."""
        response = (
            self.client.table("benchmark_runs")
            .select("*")
            .eq("id", run_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            raise RunNotFoundError(f"Benchmark run {run_id} not found")
        return _parse_run(response.data[0])

    def update_run_result(
        self, run_id: str, details: dict[str, dict[str, object]]
    ) -> None:
        """Store the scorecard snapshot and its live total on the run."""
        score = sum(int(item.get("points_earned", 0)) for item in details.values())
        self.client.table("benchmark_runs").update(
            {"results": {"score": score, "details": details}, "score": score}
        ).eq("id", run_id).execute()

    def update_session(
        self, session_id: str, state_tag: str, reservation: dict[str, object]
    ) -> None:
        """Persist the state tag and reservation record of a session."""
        self.client.table("benchmark_sessions").update(
            {
                "current_step": state_tag,
                "session_data": reservation,
                "updated_at": datetime.now(tz=UTC).isoformat(),
            }
        ).eq("id", session_id).execute()

    def finalize_run(
        self,
        session_id: str,
        success: bool,
        score: int,
        details: dict[str, dict[str, object]],
    ) -> None:
        """Complete the session's run and mark the session finished."""
        run_id = self._require_run_id(session_id)
        run = self.get_run(run_id)
        completed_at = datetime.now(tz=UTC)
        elapsed_ms = int((completed_at - run.created_at).total_seconds() * 1000)

        self.client.table("benchmark_runs").update(
            {
                "status": RunStatus.COMPLETED.value,
                "success": success,
                "score": score,
                "results": {"score": score, "details": details},
                "time_to_completion_ms": elapsed_ms,
                "completed_at": completed_at.isoformat(),
            }
        ).eq("id", run_id).execute()
        self.client.table("benchmark_sessions").update(
            {"current_step": StateTag.FINISHED.value, "session_data": {}}
        ).eq("id", session_id).execute()
        logger.info("Finalized run %s in %sms", run_id, elapsed_ms)

    def reset_session_data(self, session_id: str) -> None:
        """Start a new run for the same client and rewind the session to idle."""
        previous = self.get_run(self._require_run_id(session_id))
        run_id = self._insert_run(previous.client_id, previous.declared_capabilities)
        self.client.table("benchmark_sessions").update(
            {
                "run_id": run_id,
                "current_step": StateTag.IDLE.value,
                "session_data": {},
                "updated_at": datetime.now(tz=UTC).isoformat(),
            }
        ).eq("id", session_id).execute()
        logger.info("Session %s reset with new run %s", session_id, run_id)

    def get_latest_run_for_session(self, session_id: str) -> RunRecord | None:
        """Return the run the session currently points at, if any."""
        session = self._get_session_row(session_id)
        if session is None or not session.get("run_id"):
            return None
        return self.get_run(str(session["run_id"]))

    def get_all_successful_runs_ranked(self) -> list[RunRecord]:
        """Return successful runs ordered by score, then completion time."""
        response = (
            self.client.table("benchmark_runs")
            .select("*")
            .eq("status", RunStatus.COMPLETED.value)
            .eq("success", True)
            .order("score", desc=True)
            .order("time_to_completion_ms")
            .execute()
        )
        return [_parse_run(row) for row in response.data or []]

    def _insert_run(
        self, client_id: str | None, capabilities: dict[str, object]
    ) -> str:
        response = (
            self.client.table("benchmark_runs")
            .insert(
                {
                    "client_id": client_id,
                    "status": RunStatus.IN_PROGRESS.value,
                    "declared_capabilities": capabilities,
                }
            )
            .execute()
        )
        if not response.data:
            raise PersistenceError("Failed to create benchmark run")
        return str(response.data[0]["id"])

    def _get_session_row(self, session_id: str) -> dict[str, object] | None:
        response = (
            self.client.table("benchmark_sessions")
            .select(_SESSION_COLUMNS)
            .eq("id", session_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return response.data[0]

    def _require_session_row(self, session_id: str) -> dict[str, object]:
        row = self._get_session_row(session_id)
        if row is None:
            raise SessionNotFoundError(f"Benchmark session {session_id} not found")
        return row

    def _require_run_id(self, session_id: str) -> str:
        run_id = self._require_session_row(session_id).get("run_id")
        if not run_id:
            raise PersistenceError(f"Session {session_id} has no run")
        return str(run_id)


def _parse_session(row: dict[str, object]) -> SessionRecord:
    return SessionRecord(
        id=str(row["id"]),
        run_id=str(row["run_id"]) if row.get("run_id") else None,
        current_step=str(row.get("current_step") or StateTag.IDLE.value),
        session_data=row.get("session_data") or {},
        init_params=row.get("init_params") or {},
    )


def _parse_run(row: dict[str, object]) -> RunRecord:
    return RunRecord(
        id=str(row["id"]),
        client_id=str(row["client_id"]) if row.get("client_id") else None,
        declared_capabilities=row.get("declared_capabilities") or {},
        status=RunStatus(row.get("status") or RunStatus.IN_PROGRESS.value),
        created_at=_parse_timestamp(row.get("created_at")) or datetime.now(tz=UTC),
        success=row.get("success"),
        score=row.get("score"),
        results=row.get("results"),
        time_to_completion_ms=row.get("time_to_completion_ms"),
        completed_at=_parse_timestamp(row.get("completed_at")),
    )


def _parse_timestamp(value: object) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
