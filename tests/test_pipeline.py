"""Tests for the ordered stage runner."""

from cloudstack_operator.errors import (
    AmbiguousMatchError,
    CloudStackAPIError,
    ErrorKind,
    NotFoundError,
    PartialTransitionError,
    TransientError,
)
from cloudstack_operator.pipeline import Phase, StagePipeline, StageResult


def make_pipeline(*stages) -> StagePipeline[list[str]]:
    return StagePipeline(
        phase=Phase.ACTIVE, stages=stages, requeue_delay=10, partial_transition_delay=2
    )


def record(name: str):
    def stage(trail: list[str]) -> None:
        trail.append(name)

    stage.__name__ = name
    return stage


def failing(error: Exception):
    def explode(trail: list[str]) -> None:
        trail.append("explode")
        raise error

    return explode


class TestStagePipeline:
    """Tests for StagePipeline.run."""

    def test_runs_stages_in_order(self) -> None:
        trail: list[str] = []

        outcome = make_pipeline(record("a"), record("b"), record("c")).run(trail, name="obj")

        assert trail == ["a", "b", "c"]
        assert outcome.completed
        assert outcome.error is None

    def test_requeue_stops_the_pass(self) -> None:
        """Stages after a requeue request do not run."""
        trail: list[str] = []

        def wait(subject: list[str]) -> StageResult:
            return StageResult.requeue(15, "waiting")

        outcome = make_pipeline(record("a"), wait, record("b")).run(trail, name="obj")

        assert trail == ["a"]
        assert not outcome.completed
        assert outcome.requeue_after == 15
        assert outcome.message == "waiting"
        assert outcome.error is None

    def test_zero_requeue_continues(self) -> None:
        trail: list[str] = []
        outcome = make_pipeline(lambda s: StageResult(), record("b")).run(trail, name="obj")
        assert trail == ["b"]
        assert outcome.completed

    def test_not_found_requeues_with_default_delay(self) -> None:
        trail: list[str] = []

        outcome = make_pipeline(failing(NotFoundError("gone")), record("b")).run(trail, name="obj")

        assert trail == ["explode"]
        assert outcome.requeue_after == 10
        assert outcome.error_kind == ErrorKind.NOT_FOUND
        assert outcome.failed_stage == "explode"
        assert not outcome.terminal

    def test_transient_requeues(self) -> None:
        outcome = make_pipeline(failing(TransientError("busy"))).run([], name="obj")
        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert outcome.requeue_after == 10

    def test_partial_transition_uses_short_delay(self) -> None:
        error = PartialTransitionError("stopped", instance_id="i-1", completed_step="StoppedPendingUpdate")

        outcome = make_pipeline(failing(error)).run([], name="obj")

        assert outcome.error_kind == ErrorKind.PARTIAL_TRANSITION
        assert outcome.requeue_after == 2

    def test_ambiguous_is_terminal(self) -> None:
        outcome = make_pipeline(failing(AmbiguousMatchError("two"))).run([], name="obj")

        assert outcome.terminal
        assert outcome.requeue_after == 0
        assert outcome.message == "two"

    def test_unrecognized_provider_error_is_terminal(self) -> None:
        error = CloudStackAPIError("Permission denied", error_code=531, cs_error_code=4350)

        outcome = make_pipeline(failing(error)).run([], name="obj")

        assert outcome.terminal
        assert outcome.error_kind == ErrorKind.OTHER

    def test_phase_is_reported(self) -> None:
        pipeline: StagePipeline[list[str]] = StagePipeline(
            phase=Phase.TERMINATING, stages=[], requeue_delay=1, partial_transition_delay=1
        )
        assert pipeline.run([], name="obj").phase == Phase.TERMINATING
