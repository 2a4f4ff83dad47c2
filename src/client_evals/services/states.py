"""State variants of the benchmark flow.

Each state handles the actions that are legal in its phase and inherits a
rejection for everything else. Tool and resource toggles are returned as
deferred actions so the context can apply the exit and entry toggles of a
transition as one batch.
"""

import asyncio
import logging
import secrets
import string
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import ValidationError

from client_evals.domain.actions import ActionResult, format_validation_errors
from client_evals.domain.reservations import ELICITATION_SCHEMA, ReservationDetails
from client_evals.domain.scorecard import (
    CODE_VERIFICATION,
    ELICITATION_SUPPORT,
    RESOURCE_READING,
    SAMPLING_SUPPORT,
    CheckStatus,
)
from client_evals.errors import UnknownStateError
from client_evals.services.gate import (
    Continuation,
    choose_continuation,
    should_attempt_sampling,
)
from client_evals.services.registry import Resource, ToggleAction, Tool

if TYPE_CHECKING:
    from client_evals.services.context import BenchmarkContext

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
_CODE_ALPHABET = string.ascii_uppercase + string.digits


class StateTag(StrEnum):
    """Persisted identifiers of the benchmark states."""

    IDLE = "IdleState"
    AWAITING_CATEGORY = "AwaitingCategoryState"
    AWAITING_MENU = "AwaitingMenuState"
    AWAITING_ELICITATION = "AwaitingElicitationState"
    AWAITING_DETAILS_TOOL = "AwaitingDetailsToolState"
    AWAITING_CONFIRMATION = "AwaitingConfirmationState"
    AWAITING_VERIFICATION = "AwaitingVerificationState"
    FINISHED = "FinishedState"


def _result(text: str) -> ActionResult:
    return ActionResult(text=text)


def _reject(text: str) -> ActionResult:
    return ActionResult(text=f"Error: {text}", is_error=True)


class BenchmarkState:
    """Base state: no toggles, logging hooks and default rejections."""

    tag: StateTag

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return []

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return []

    async def enter(self, context: "BenchmarkContext") -> None:
        logger.info("Entering %s for session %s", self.tag, context.session_id)

    async def exit(self, context: "BenchmarkContext") -> None:
        logger.info("Exiting %s for session %s", self.tag, context.session_id)

    async def start_benchmark(self, context: "BenchmarkContext") -> ActionResult:
        return _reject("Cannot start the benchmark from the current state.")

    async def choose_category(
        self, context: "BenchmarkContext", category: str
    ) -> ActionResult:
        return _reject("Cannot choose a category from the current state.")

    async def select_menu(
        self, context: "BenchmarkContext", menu_id: str
    ) -> ActionResult:
        return _reject("Cannot select a menu from the current state.")

    async def submit_details(
        self, context: "BenchmarkContext", data: dict[str, object]
    ) -> ActionResult:
        return _reject("Cannot submit details from the current state.")

    async def get_confirmation_email(
        self, context: "BenchmarkContext"
    ) -> ActionResult:
        return _reject("Cannot get a confirmation email from the current state.")

    async def verify_code(
        self, context: "BenchmarkContext", code: str
    ) -> ActionResult:
        return _reject("Cannot verify a code from the current state.")

    async def try_again(self, context: "BenchmarkContext") -> ActionResult:
        return _reject("Cannot try again from the current state.")


class IdleState(BenchmarkState):
    tag = StateTag.IDLE

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        registry = context.registry
        others = [tool for tool in Tool if tool is not Tool.START_BENCHMARK]
        return [
            registry.enable(Tool.START_BENCHMARK),
            *(registry.disable(tool) for tool in others),
            *(registry.disable(resource) for resource in Resource),
        ]

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [context.registry.disable(Tool.START_BENCHMARK)]

    async def start_benchmark(self, context: "BenchmarkContext") -> ActionResult:
        context.ensure_run()
        await context.transition_to(AwaitingCategoryState())
        return _result(
            "Benchmark started. Please choose a food category: "
            + ", ".join(context.catalog.categories())
            + "."
        )


class AwaitingCategoryState(BenchmarkState):
    tag = StateTag.AWAITING_CATEGORY

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [context.registry.enable(Tool.CHOOSE_CATEGORY)]

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [
            context.registry.disable(Tool.CHOOSE_CATEGORY),
            context.registry.disable(Resource.RESTAURANT_LIST),
        ]

    async def choose_category(
        self, context: "BenchmarkContext", category: str
    ) -> ActionResult:
        if not context.catalog.has_category(category):
            return _reject(
                f"Unknown category '{category}'. Choose one of: "
                + ", ".join(context.catalog.categories())
                + "."
            )
        context.update_reservation(category=category)
        await context.transition_to(AwaitingMenuState())
        return _result(
            f"Category '{category}' selected. Read the restaurant list and "
            "select a menu."
        )


class AwaitingMenuState(BenchmarkState):
    tag = StateTag.AWAITING_MENU

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [
            context.registry.enable(Tool.SELECT_MENU),
            context.registry.enable(Resource.RESTAURANT_LIST),
        ]

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [
            context.registry.disable(Tool.SELECT_MENU),
            context.registry.disable(Resource.RESTAURANT_LIST),
        ]

    async def select_menu(
        self, context: "BenchmarkContext", menu_id: str
    ) -> ActionResult:
        category = context.reservation.category or ""
        option = context.catalog.find_option(context.session_id, category, menu_id)
        if option is None:
            return _reject(
                f"Menu with ID '{menu_id}' not found in category '{category}'. "
                "Please select a valid menu."
            )

        context.update_reservation(menu=option.name)
        if choose_continuation(context.capabilities) is Continuation.ELICITATION:
            logger.info(
                "Session %s collects details by elicitation", context.session_id
            )
            await context.transition_to(AwaitingElicitationState())
        else:
            logger.info(
                "Session %s lacks elicitation, falling back to the details tool",
                context.session_id,
            )
            await context.transition_to(AwaitingDetailsToolState())

        if context.state_tag == StateTag.AWAITING_CONFIRMATION:
            follow_up = "Reservation details received. Get your confirmation email."
        elif context.state_tag == StateTag.AWAITING_DETAILS_TOOL:
            follow_up = (
                "Please provide details for your reservation using the "
                f"{Tool.SUBMIT_DETAILS} tool."
            )
        else:
            follow_up = "Reservation details were not provided. The run has ended."
        return _result(f"Menu '{option.name}' selected. {follow_up}")


class AwaitingElicitationState(BenchmarkState):
    """Collects guests and time through an elicitation request on entry.

    The request is sent whether or not the client declared support, so a
    client that misreports its capabilities is scored on what it actually does.
    """

    tag = StateTag.AWAITING_ELICITATION

    async def enter(self, context: "BenchmarkContext") -> None:
        await super().enter(context)
        try:
            response = await context.channel.elicit(
                "Please provide the reservation details.", ELICITATION_SCHEMA
            )
        except Exception as exc:
            logger.warning(
                "Elicitation request failed for session %s: %s",
                context.session_id,
                exc,
            )
            await self._fail(context, f"Elicitation request failed: {exc}")
            return

        if not response.accepted:
            await self._fail(
                context, f"Client did not accept the elicitation ({response.action})."
            )
            return

        try:
            details = ReservationDetails.model_validate(response.content or {})
        except ValidationError as exc:
            await self._fail(
                context,
                "Client returned invalid elicitation data: "
                + format_validation_errors(exc),
            )
            return

        context.award_points(
            ELICITATION_SUPPORT,
            CheckStatus.PASSED,
            25,
            "Client provided valid details through elicitation.",
        )
        context.update_reservation(guests=details.guests, time=details.time)
        await context.transition_to(AwaitingConfirmationState())

    async def _fail(self, context: "BenchmarkContext", notes: str) -> None:
        context.award_points(ELICITATION_SUPPORT, CheckStatus.FAILED, 0, notes)
        context.finalize(success=False)
        context.clear_reservation()
        await context.transition_to(FinishedState())


class AwaitingDetailsToolState(BenchmarkState):
    tag = StateTag.AWAITING_DETAILS_TOOL

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [context.registry.enable(Tool.SUBMIT_DETAILS)]

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [context.registry.disable(Tool.SUBMIT_DETAILS)]

    async def submit_details(
        self, context: "BenchmarkContext", data: dict[str, object]
    ) -> ActionResult:
        try:
            details = ReservationDetails.model_validate(data)
        except ValidationError as exc:
            return _reject(f"Submission failed. {format_validation_errors(exc)}")

        context.award_points(
            ELICITATION_SUPPORT,
            CheckStatus.FAILED,
            0,
            "Client submitted data via the fallback tool instead of elicitation.",
        )
        context.update_reservation(guests=details.guests, time=details.time)
        await context.transition_to(AwaitingConfirmationState())
        return _result("Reservation details accepted. Get your confirmation email.")


class AwaitingConfirmationState(BenchmarkState):
    tag = StateTag.AWAITING_CONFIRMATION

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [context.registry.enable(Tool.GET_CONFIRMATION_EMAIL)]

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [context.registry.disable(Tool.GET_CONFIRMATION_EMAIL)]

    async def get_confirmation_email(
        self, context: "BenchmarkContext"
    ) -> ActionResult:
        code = generate_confirmation_code()
        logger.info(
            "Generated confirmation code for session %s: %s", context.session_id, code
        )
        if should_attempt_sampling(context.capabilities):
            email = await self._sample_email(context, code)
        else:
            context.award_points(
                SAMPLING_SUPPORT,
                CheckStatus.SKIPPED,
                0,
                "Client does not support sampling; used template.",
            )
            email = None

        if email is None:
            reservation = context.reservation
            email = template_email(
                reservation.menu, reservation.guests, reservation.time, code
            )

        context.update_reservation(confirmation_email=email, confirmation_code=code)
        await context.transition_to(AwaitingVerificationState())
        return _result(
            "Confirmation email has been generated. Please read the "
            f"`{Resource.CONFIRMATION_EMAIL}` resource and use the "
            f"`{Tool.VERIFY_CODE}` tool to complete the benchmark."
        )

    async def _sample_email(
        self, context: "BenchmarkContext", code: str
    ) -> str | None:
        """Ask the client to write the email; None means use the template."""
        reservation = context.reservation
        prompt = (
            "Generate a friendly, one-paragraph confirmation email body for a "
            f'reservation at "{reservation.menu}" for {reservation.guests} people '
            f"at {reservation.time}. It is very important that you include the "
            f"following confirmation code exactly as written: {code}"
        )
        try:
            text = await asyncio.wait_for(
                context.channel.create_message(prompt, context.sampling_max_tokens),
                timeout=context.sampling_timeout_seconds,
            )
        except Exception:
            logger.exception(
                "Sampling request failed for session %s, using template",
                context.session_id,
            )
            context.award_points(
                SAMPLING_SUPPORT,
                CheckStatus.PARTIAL,
                1,
                "Client sampling call raised an error or timed out; used template.",
            )
            return None

        if text and code in text:
            context.award_points(
                SAMPLING_SUPPORT,
                CheckStatus.PASSED,
                20,
                "Client used sampling and the sample included the code.",
            )
            return text
        if text:
            logger.warning(
                "Sample for session %s is missing the code, using template",
                context.session_id,
            )
            context.award_points(
                SAMPLING_SUPPORT,
                CheckStatus.PARTIAL,
                10,
                "Sample did not include the confirmation code; used template.",
            )
            return None
        logger.warning(
            "Sample for session %s has no text, using template", context.session_id
        )
        context.award_points(
            SAMPLING_SUPPORT,
            CheckStatus.PARTIAL,
            5,
            "Client supports sampling but returned no text; used template.",
        )
        return None


class AwaitingVerificationState(BenchmarkState):
    """Checks the submitted code against the one sent in the email.

    A mismatch ends the run without leaving the state: the email stays
    readable and ``try_again`` plus the results resource are enabled next to
    the verification tool.
    """

    tag = StateTag.AWAITING_VERIFICATION

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        toggles = [
            context.registry.enable(Tool.VERIFY_CODE),
            context.registry.enable(Resource.CONFIRMATION_EMAIL),
        ]
        if context.run_finalized:
            toggles.extend(_finished_toggles(context, enable=True))
        return toggles

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return [
            context.registry.disable(Tool.VERIFY_CODE),
            context.registry.disable(Resource.CONFIRMATION_EMAIL),
            *_finished_toggles(context, enable=False),
        ]

    async def verify_code(
        self, context: "BenchmarkContext", code: str
    ) -> ActionResult:
        if context.run_finalized:
            return _reject(
                "This run has already been verified. Use try_again to start a "
                "new run."
            )

        expected = context.reservation.confirmation_code
        if expected is not None and code == expected:
            context.award_points(
                RESOURCE_READING,
                CheckStatus.PASSED,
                25,
                "Inferred from correct code submission.",
            )
            context.award_points(
                CODE_VERIFICATION,
                CheckStatus.PASSED,
                25,
                "Client submitted the correct code.",
            )
            context.finalize(success=True)
            context.clear_reservation()
            await context.transition_to(FinishedState())
            return _result("Verification successful! Your reservation is confirmed.")

        context.award_points(
            RESOURCE_READING,
            CheckStatus.FAILED,
            0,
            "Cannot confirm resource was read due to incorrect code.",
        )
        context.award_points(
            CODE_VERIFICATION,
            CheckStatus.FAILED,
            0,
            f"Incorrect code. Expected {expected}, got {code}.",
        )
        context.finalize(success=False)
        context.registry.apply_batch(_finished_toggles(context, enable=True))
        return _result(
            f"Verification failed. Incorrect code provided. Expected {expected} "
            f"but got {code}. Use try_again to start a new run."
        )

    async def try_again(self, context: "BenchmarkContext") -> ActionResult:
        if not context.run_finalized:
            return await super().try_again(context)
        return await _start_new_run(context)


class FinishedState(BenchmarkState):
    tag = StateTag.FINISHED

    def enter_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return _finished_toggles(context, enable=True)

    def exit_toggles(self, context: "BenchmarkContext") -> list[ToggleAction]:
        return _finished_toggles(context, enable=False)

    async def try_again(self, context: "BenchmarkContext") -> ActionResult:
        return await _start_new_run(context)


def _finished_toggles(
    context: "BenchmarkContext", enable: bool
) -> list[ToggleAction]:
    toggle = context.registry.enable if enable else context.registry.disable
    return [toggle(Tool.TRY_AGAIN), toggle(Resource.BENCHMARK_RESULTS)]


async def _start_new_run(context: "BenchmarkContext") -> ActionResult:
    logger.info("Resetting session %s for a new run", context.session_id)
    context.reset_for_new_run()
    await context.transition_to(IdleState())
    return _result("Session reset. Ready to start a new benchmark.")


STATE_TABLE: dict[StateTag, type[BenchmarkState]] = {
    StateTag.IDLE: IdleState,
    StateTag.AWAITING_CATEGORY: AwaitingCategoryState,
    StateTag.AWAITING_MENU: AwaitingMenuState,
    StateTag.AWAITING_ELICITATION: AwaitingElicitationState,
    StateTag.AWAITING_DETAILS_TOOL: AwaitingDetailsToolState,
    StateTag.AWAITING_CONFIRMATION: AwaitingConfirmationState,
    StateTag.AWAITING_VERIFICATION: AwaitingVerificationState,
    StateTag.FINISHED: FinishedState,
}


def state_for_tag(tag: str) -> BenchmarkState:
    """Instantiate the state stored under ``tag``."""
    try:
        state_tag = StateTag(tag)
    except ValueError:
        raise UnknownStateError(tag) from None
    return STATE_TABLE[state_tag]()


def generate_confirmation_code() -> str:
    """Return a random uppercase alphanumeric confirmation code."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CODE_LENGTH))


def template_email(
    menu: str | None, guests: int | None, time: str | None, code: str
) -> str:
    """Build the fallback confirmation email."""
    return (
        "Subject: Your Reservation Confirmation\n\n"
        "Dear Guest,\n\n"
        f"This email confirms your reservation at {menu} for {guests} guest(s) "
        f"at {time}.\n\n"
        "To verify your booking, please use the following confirmation code: "
        f"{code}\n\n"
        "We look forward to seeing you!"
    )
