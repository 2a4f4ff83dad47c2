"""Tests for confirmation email generation with template fallback."""

import asyncio

import pytest

from client_evals.domain.scorecard import SAMPLING_SUPPORT, CheckStatus
from client_evals.services.states import StateTag
from tests.conftest import (
    ELICITATION_AND_SAMPLING,
    FakeClientChannel,
    InMemoryBenchmarkRepository,
    first_menu_id,
    open_context,
)


def _generate_email(
    repository: InMemoryBenchmarkRepository,
    channel: FakeClientChannel,
    sampling_timeout_seconds: float = 1.0,
):  # type: ignore[no-untyped-def]
    context = open_context(
        repository,
        channel,
        ELICITATION_AND_SAMPLING,
        sampling_timeout_seconds=sampling_timeout_seconds,
    )
    asyncio.run(context.start_benchmark())
    asyncio.run(context.choose_category("Sushi"))
    asyncio.run(context.select_menu(first_menu_id(context)))
    result = asyncio.run(context.get_confirmation_email())
    assert not result.is_error
    assert context.state_tag is StateTag.AWAITING_VERIFICATION
    return context


def _assert_template_used(context) -> None:  # type: ignore[no-untyped-def]
    email = context.reservation.confirmation_email
    assert email.startswith("Subject: Your Reservation Confirmation")
    assert context.reservation.confirmation_code in email
    assert "Tokyo Sushi Bar" in email


@pytest.mark.parametrize(
    ("channel", "points"),
    [
        (FakeClientChannel(sample_reply=lambda prompt: "Thanks for booking!"), 10),
        (FakeClientChannel(sample_reply=lambda prompt: ""), 5),
        (FakeClientChannel(sample_reply=lambda prompt: None), 5),
        (FakeClientChannel(sample_error=RuntimeError("sampling rejected")), 1),
    ],
)
def test_sampling_fallbacks_award_partial_credit(
    channel: FakeClientChannel, points: int, repository: InMemoryBenchmarkRepository
) -> None:
    context = _generate_email(repository, channel)

    item = context.scorecard[SAMPLING_SUPPORT]
    assert item.status is CheckStatus.PARTIAL
    assert item.points_earned == points
    assert len(channel.prompts) == 1
    _assert_template_used(context)


def test_sampling_timeout_falls_back_to_template(
    repository: InMemoryBenchmarkRepository,
) -> None:
    channel = FakeClientChannel(sample_delay=1.0)

    context = _generate_email(repository, channel, sampling_timeout_seconds=0.05)

    item = context.scorecard[SAMPLING_SUPPORT]
    assert item.status is CheckStatus.PARTIAL
    assert item.points_earned == 1
    _assert_template_used(context)


def test_sampling_prompt_mentions_reservation(
    repository: InMemoryBenchmarkRepository, channel: FakeClientChannel
) -> None:
    context = _generate_email(repository, channel)

    prompt = channel.prompts[0]
    assert "Tokyo Sushi Bar" in prompt
    assert "4 people" in prompt
    assert "19:30" in prompt
    assert context.reservation.confirmation_code in prompt


def test_without_sampling_the_template_is_used(
    repository: InMemoryBenchmarkRepository, channel: FakeClientChannel
) -> None:
    context = open_context(repository, channel, {"elicitation": {}})
    asyncio.run(context.start_benchmark())
    asyncio.run(context.choose_category("Sushi"))
    asyncio.run(context.select_menu(first_menu_id(context)))

    asyncio.run(context.get_confirmation_email())

    item = context.scorecard[SAMPLING_SUPPORT]
    assert item.status is CheckStatus.SKIPPED
    assert item.points_earned == 0
    assert channel.prompts == []
    _assert_template_used(context)
