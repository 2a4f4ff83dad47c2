"""Shared test fixtures."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from client_evals.config import Settings
from client_evals.containers import AppContainer
from client_evals.domain.catalog import Catalog
from client_evals.domain.sessions import RunRecord, RunStatus, SessionRecord
from client_evals.errors import RunNotFoundError
from client_evals.services.context import (
    BenchmarkContext,
    BenchmarkRepository,
    ClientChannel,
    ElicitationResponse,
)
from client_evals.services.ranking import RankingService
from client_evals.services.registry import CapabilityRegistry, SessionRegistry
from client_evals.services.states import StateTag

ELICITATION_AND_SAMPLING = {"elicitation": {}, "sampling": {}}


def init_params(capabilities: dict[str, object] | None = None) -> dict[str, object]:
    return {
        "protocolVersion": "2025-06-18",
        "clientInfo": {"name": "test-client", "version": "0.1.0"},
        "capabilities": capabilities or {},
    }


@dataclass
class InMemoryBenchmarkRepository(BenchmarkRepository):
    """In-memory benchmark repository for tests."""

    sessions: dict[str, SessionRecord] = field(default_factory=dict)
    runs: dict[str, RunRecord] = field(default_factory=dict)
    result_updates: list[str] = field(default_factory=list)
    finalized: list[str] = field(default_factory=list)
    step_history: list[str] = field(default_factory=list)

    def get_or_create_session(
        self, session_id: str, init_params: dict[str, object]
    ) -> SessionRecord:
        if session_id not in self.sessions:
            self.sessions[session_id] = SessionRecord(
                id=session_id,
                run_id=None,
                current_step=StateTag.IDLE.value,
                session_data={},
                init_params=init_params,
            )
        return self.sessions[session_id]

    def create_run_for_session(self, session_id: str) -> str:
        session = self.sessions[session_id]
        client_info = session.init_params.get("clientInfo") or {}
        run = self._new_run(
            client_id=str(client_info.get("name")),
            capabilities=dict(session.init_params.get("capabilities") or {}),
        )
        self.sessions[session_id] = replace(session, run_id=run.id)
        return run.id

    def get_run(self, run_id: str) -> RunRecord:
        try:
            return self.runs[run_id]
        except KeyError:
            raise RunNotFoundError(f"Benchmark run {run_id} not found") from None

    def update_run_result(
        self, run_id: str, details: dict[str, dict[str, object]]
    ) -> None:
        score = sum(int(item["points_earned"]) for item in details.values())
        self.runs[run_id] = replace(
            self.runs[run_id],
            results={"score": score, "details": details},
            score=score,
        )
        self.result_updates.append(run_id)

    def update_session(
        self, session_id: str, state_tag: str, reservation: dict[str, object]
    ) -> None:
        self.sessions[session_id] = replace(
            self.sessions[session_id],
            current_step=state_tag,
            session_data=dict(reservation),
        )
        self.step_history.append(state_tag)

    def finalize_run(
        self,
        session_id: str,
        success: bool,
        score: int,
        details: dict[str, dict[str, object]],
    ) -> None:
        session = self.sessions[session_id]
        run = self.runs[session.run_id]
        completed_at = datetime.now(tz=UTC)
        self.runs[run.id] = replace(
            run,
            status=RunStatus.COMPLETED,
            success=success,
            score=score,
            results={"score": score, "details": details},
            time_to_completion_ms=int(
                (completed_at - run.created_at).total_seconds() * 1000
            ),
            completed_at=completed_at,
        )
        self.sessions[session_id] = replace(
            session, current_step=StateTag.FINISHED.value, session_data={}
        )
        self.finalized.append(run.id)

    def reset_session_data(self, session_id: str) -> None:
        session = self.sessions[session_id]
        previous = self.runs[session.run_id]
        run = self._new_run(previous.client_id, previous.declared_capabilities)
        self.sessions[session_id] = replace(
            session,
            run_id=run.id,
            current_step=StateTag.IDLE.value,
            session_data={},
        )

    def get_latest_run_for_session(self, session_id: str) -> RunRecord | None:
        session = self.sessions.get(session_id)
        if session is None or session.run_id is None:
            return None
        return self.runs.get(session.run_id)

    def get_all_successful_runs_ranked(self) -> list[RunRecord]:
        successful = [
            run
            for run in self.runs.values()
            if run.status == RunStatus.COMPLETED and run.success
        ]
        return sorted(
            successful,
            key=lambda run: (-(run.score or 0), run.time_to_completion_ms or 0),
        )

    def _new_run(
        self, client_id: str | None, capabilities: dict[str, object]
    ) -> RunRecord:
        run = RunRecord(
            id=str(uuid4()),
            client_id=client_id,
            declared_capabilities=capabilities,
            status=RunStatus.IN_PROGRESS,
            created_at=datetime.now(tz=UTC),
        )
        self.runs[run.id] = run
        return run


def _echo_prompt(prompt: str) -> str | None:
    return prompt


@dataclass
class FakeClientChannel(ClientChannel):
    """Fake client that records server-initiated requests.

    By default elicitation is accepted with valid details and sampling echoes
    the prompt, which contains the confirmation code.
    """

    elicit_response: ElicitationResponse = field(
        default_factory=lambda: ElicitationResponse(
            action="accept", content={"guests": 4, "time": "19:30"}
        )
    )
    elicit_error: Exception | None = None
    sample_reply: Callable[[str], str | None] = _echo_prompt
    sample_error: Exception | None = None
    elicit_delay: float = 0.0
    sample_delay: float = 0.0
    elicitations: list[tuple[str, dict[str, object]]] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)

    async def elicit(
        self, message: str, requested_schema: dict[str, object]
    ) -> ElicitationResponse:
        self.elicitations.append((message, requested_schema))
        if self.elicit_delay:
            await asyncio.sleep(self.elicit_delay)
        if self.elicit_error is not None:
            raise self.elicit_error
        return self.elicit_response

    async def create_message(self, prompt: str, max_tokens: int) -> str | None:
        self.prompts.append(prompt)
        if self.sample_delay:
            await asyncio.sleep(self.sample_delay)
        if self.sample_error is not None:
            raise self.sample_error
        return self.sample_reply(prompt)


def open_context(
    repository: InMemoryBenchmarkRepository,
    channel: ClientChannel,
    capabilities: dict[str, object] | None = None,
    session_id: str = "session-1",
    sampling_timeout_seconds: float = 1.0,
) -> BenchmarkContext:
    """Create (or reload) a session and re-enter its stored state."""
    record = repository.get_or_create_session(session_id, init_params(capabilities))
    context = BenchmarkContext.create(
        record,
        repository=repository,
        registry=CapabilityRegistry.create(),
        channel=channel,
        catalog=Catalog.default(),
        sampling_timeout_seconds=sampling_timeout_seconds,
    )
    asyncio.run(context.resume())
    return context


def first_menu_id(context: BenchmarkContext) -> str:
    category = context.reservation.category or ""
    return context.catalog.options_for(context.session_id, category)[0].id


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        admin_token="admin-token",
        sampling_timeout_seconds=1.0,
    )


@pytest.fixture
def repository() -> InMemoryBenchmarkRepository:
    return InMemoryBenchmarkRepository()


@pytest.fixture
def channel() -> FakeClientChannel:
    return FakeClientChannel()


@pytest.fixture
def container(
    settings: Settings, repository: InMemoryBenchmarkRepository
) -> AppContainer:
    session_registry = SessionRegistry()

    async def close_resources() -> None:
        session_registry.clear()

    return AppContainer(
        settings=settings,
        repository=repository,
        catalog=Catalog.default(),
        session_registry=session_registry,
        ranking_service=RankingService(repository),
        close_resources=close_resources,
    )
