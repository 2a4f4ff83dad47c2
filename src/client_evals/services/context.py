"""Session orchestrator for the benchmark state machine."""

import logging
from dataclasses import dataclass
from typing import Protocol

from client_evals.domain.actions import ActionResult
from client_evals.domain.capabilities import DeclaredCapabilities
from client_evals.domain.catalog import Catalog
from client_evals.domain.reservations import ReservationRecord
from client_evals.domain.scorecard import (
    CheckStatus,
    Scorecard,
    build_scorecard,
    scorecard_from_dict,
    scorecard_to_dict,
    total_score,
)
from client_evals.domain.sessions import RunRecord, SessionRecord
from client_evals.errors import PersistenceError
from client_evals.services.registry import CapabilityRegistry
from client_evals.services.states import BenchmarkState, StateTag, state_for_tag

logger = logging.getLogger(__name__)

DEFAULT_SAMPLING_TIMEOUT_SECONDS = 120.0
DEFAULT_SAMPLING_MAX_TOKENS = 500


class BenchmarkRepository(Protocol):
    """Persistence interface for benchmark sessions and runs."""

    def get_or_create_session(
        self, session_id: str, init_params: dict[str, object]
    ) -> SessionRecord:
        """Return the stored session, creating it in the idle state if absent."""

    def create_run_for_session(self, session_id: str) -> str:
        """Create an in-progress run from the stored init params and link it."""

    def get_run(self, run_id: str) -> RunRecord:
        """Return a run by id."""

    def update_run_result(
        self, run_id: str, details: dict[str, dict[str, object]]
    ) -> None:
        """Store the scorecard snapshot and its live total on the run."""

    def update_session(
        self, session_id: str, state_tag: str, reservation: dict[str, object]
    ) -> None:
        """Persist the state tag and reservation record of a session."""

    def finalize_run(
        self,
        session_id: str,
        success: bool,
        score: int,
        details: dict[str, dict[str, object]],
    ) -> None:
        """Complete the session's run and mark the session finished."""

    def reset_session_data(self, session_id: str) -> None:
        """Start a new run for the same client and rewind the session to idle."""

    def get_latest_run_for_session(self, session_id: str) -> RunRecord | None:
        """Return the run the session currently points at, if any."""

    def get_all_successful_runs_ranked(self) -> list[RunRecord]:
        """Return successful runs ordered for ranking."""


@dataclass(frozen=True)
class ElicitationResponse:
    """Client answer to an elicitation request."""

    action: str
    content: dict[str, object] | None = None

    @property
    def accepted(self) -> bool:
        return self.action == "accept"


class ClientChannel(Protocol):
    """Server-initiated requests sent to the connected client."""

    async def elicit(
        self, message: str, requested_schema: dict[str, object]
    ) -> ElicitationResponse:
        """Ask the client for structured input."""

    async def create_message(self, prompt: str, max_tokens: int) -> str | None:
        """Ask the client to sample a completion; return its text, if any."""


class BenchmarkContext:
    """Owns one session's state, reservation record and scorecard.

    Every client action is delegated to the current state. States call back
    into the context to award points, persist data and change state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        session_id: str,
        run_id: str | None,
        capabilities: DeclaredCapabilities,
        repository: BenchmarkRepository,
        registry: CapabilityRegistry,
        channel: ClientChannel,
        catalog: Catalog,
        reservation: ReservationRecord,
        scorecard: Scorecard,
        state: BenchmarkState,
        run_finalized: bool = False,
        sampling_timeout_seconds: float = DEFAULT_SAMPLING_TIMEOUT_SECONDS,
        sampling_max_tokens: int = DEFAULT_SAMPLING_MAX_TOKENS,
    ) -> None:
        self.session_id = session_id
        self.run_id = run_id
        self.capabilities = capabilities
        self.repository = repository
        self.registry = registry
        self.channel = channel
        self.catalog = catalog
        self.reservation = reservation
        self.scorecard = scorecard
        self.run_finalized = run_finalized
        self.sampling_timeout_seconds = sampling_timeout_seconds
        self.sampling_max_tokens = sampling_max_tokens
        self._state = state

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        session: SessionRecord,
        *,
        repository: BenchmarkRepository,
        registry: CapabilityRegistry,
        channel: ClientChannel,
        catalog: Catalog,
        sampling_timeout_seconds: float = DEFAULT_SAMPLING_TIMEOUT_SECONDS,
        sampling_max_tokens: int = DEFAULT_SAMPLING_MAX_TOKENS,
    ) -> "BenchmarkContext":
        """Build a context from a stored session.

        Raises ``UnknownStateError`` when the stored state tag is not known.
        """
        state = state_for_tag(session.current_step)
        scorecard = build_scorecard()
        run_finalized = False
        if session.run_id:
            run = repository.get_run(session.run_id)
            capabilities = DeclaredCapabilities(run.declared_capabilities or {})
            if run.results:
                details = run.results.get("details")
                scorecard = scorecard_from_dict(
                    details if isinstance(details, dict) else None
                )
            run_finalized = run.is_completed
        else:
            capabilities = DeclaredCapabilities.from_init_params(session.init_params)

        return cls(
            session_id=session.id,
            run_id=session.run_id,
            capabilities=capabilities,
            repository=repository,
            registry=registry,
            channel=channel,
            catalog=catalog,
            reservation=ReservationRecord.from_dict(session.session_data),
            scorecard=scorecard,
            state=state,
            run_finalized=run_finalized,
            sampling_timeout_seconds=sampling_timeout_seconds,
            sampling_max_tokens=sampling_max_tokens,
        )

    @property
    def state(self) -> BenchmarkState:
        return self._state

    @property
    def state_tag(self) -> StateTag:
        return self._state.tag

    async def resume(self) -> None:
        """Re-enter the loaded state so its tools and resources are enabled."""
        await self.transition_to(self._state)

    async def transition_to(self, state: BenchmarkState) -> None:
        """Move to ``state`` following the batched toggle protocol."""
        old_state = self._state

        self.registry.apply_batch(
            [*old_state.exit_toggles(self), *state.enter_toggles(self)]
        )

        try:
            await old_state.exit(self)
        except Exception:
            logger.exception(
                "Exit hook of %s failed for session %s", old_state.tag, self.session_id
            )

        self._state = state
        self.repository.update_session(
            self.session_id, state.tag.value, self.reservation.to_dict()
        )
        logger.info("Session %s is now in %s", self.session_id, state.tag)

        await state.enter(self)

    def update_reservation(self, **changes: object) -> None:
        """Merge changes into the reservation record and persist it."""
        self.reservation = self.reservation.merge(**changes)
        self.repository.update_session(
            self.session_id, self._state.tag.value, self.reservation.to_dict()
        )

    def ensure_run(self) -> str:
        """Return the current run id, creating the run on first use."""
        if self.run_id:
            return self.run_id
        logger.info("No run for session %s, creating one", self.session_id)
        self.run_id = self.repository.create_run_for_session(self.session_id)
        return self.run_id

    def award_points(
        self,
        check_id: str,
        status: CheckStatus,
        points: int,
        notes: str | None = None,
    ) -> None:
        """Record an award for ``check_id`` and persist the scorecard."""
        item = self.scorecard.get(check_id)
        if item is None:
            logger.warning("Ignoring award for unknown check %r", check_id)
            return
        item.award(status, points, notes)
        logger.info(
            "Awarded %s/%s for %r on session %s. Notes: %s",
            item.points_earned,
            item.max_points,
            check_id,
            self.session_id,
            notes or "N/A",
        )
        run_id = self.ensure_run()
        self.repository.update_run_result(run_id, scorecard_to_dict(self.scorecard))

    @property
    def score(self) -> int:
        return total_score(self.scorecard)

    def finalize(self, success: bool) -> bool:
        """Complete the current run; return False if it was already finalized."""
        if self.run_finalized:
            logger.warning(
                "Run %s of session %s is already finalized",
                self.run_id,
                self.session_id,
            )
            return False
        self.ensure_run()
        score = self.score
        self.repository.finalize_run(
            self.session_id,
            success=success,
            score=score,
            details=scorecard_to_dict(self.scorecard),
        )
        self.run_finalized = True
        logger.info(
            "Finalized run %s for session %s: success=%s score=%s",
            self.run_id,
            self.session_id,
            success,
            score,
        )
        return True

    def clear_reservation(self) -> None:
        """Drop the in-memory record once the run has left the reservation flow."""
        self.reservation = ReservationRecord()

    def reset_for_new_run(self) -> None:
        """Start a fresh run on the same session."""
        self.repository.reset_session_data(self.session_id)
        run = self.repository.get_latest_run_for_session(self.session_id)
        if run is None:
            raise PersistenceError(f"No run linked to session {self.session_id}")
        self.run_id = run.id
        self.capabilities = DeclaredCapabilities(run.declared_capabilities or {})
        self.scorecard = build_scorecard()
        self.reservation = ReservationRecord()
        self.run_finalized = False
        logger.info("Session %s reset with run %s", self.session_id, run.id)

    async def start_benchmark(self) -> ActionResult:
        return await self._state.start_benchmark(self)

    async def choose_category(self, category: str) -> ActionResult:
        return await self._state.choose_category(self, category)

    async def select_menu(self, menu_id: str) -> ActionResult:
        return await self._state.select_menu(self, menu_id)

    async def submit_details(self, data: dict[str, object]) -> ActionResult:
        return await self._state.submit_details(self, data)

    async def get_confirmation_email(self) -> ActionResult:
        return await self._state.get_confirmation_email(self)

    async def verify_code(self, code: str) -> ActionResult:
        return await self._state.verify_code(self, code)

    async def try_again(self) -> ActionResult:
        return await self._state.try_again(self)
