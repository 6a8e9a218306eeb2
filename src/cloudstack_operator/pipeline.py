"""Ordered stage runner shared by the reconcilers.

A stage is a callable taking the object being reconciled. It either returns
None (continue), returns a StageResult asking for a requeue (stop this pass,
come back later), or raises. Raised errors are classified here and nowhere
else:

    NOT_FOUND, ALREADY_EXISTS  -> requeue after the default delay
    TRANSIENT                  -> requeue; the manager applies backoff
    PARTIAL_TRANSITION         -> requeue after a short delay
    AMBIGUOUS, FATAL, OTHER    -> terminal, surfaced in status

Stages never sleep or retry on their own.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from .errors import ErrorKind, classify_error, get_acs_error_code, is_terminal

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Phase(str, Enum):
    """Lifecycle phase that selects the stage list."""

    ACTIVE = "Active"
    TERMINATING = "Terminating"


@dataclass
class StageResult:
    """Outcome of a stage that did not raise."""

    requeue_after: float = 0.0
    message: str = ""

    @classmethod
    def requeue(cls, seconds: float, message: str) -> StageResult:
        return cls(requeue_after=seconds, message=message)


Stage = Callable[[T], StageResult | None]


@dataclass
class PipelineOutcome:
    """Result of running one stage list."""

    phase: Phase
    completed: bool = False
    requeue_after: float = 0.0
    message: str = ""
    failed_stage: str | None = None
    error: Exception | None = None
    error_kind: ErrorKind | None = None

    @property
    def terminal(self) -> bool:
        return self.error_kind is not None and is_terminal(self.error_kind)


@dataclass
class StagePipeline(Generic[T]):
    """A named, ordered list of stages for one phase."""

    phase: Phase
    stages: Sequence[Stage[T]]
    requeue_delay: float
    partial_transition_delay: float

    def run(self, subject: T, *, name: str) -> PipelineOutcome:
        for stage in self.stages:
            stage_name = getattr(stage, "__name__", repr(stage))
            try:
                result = stage(subject)
            except Exception as e:
                return self._failed(name, stage_name, e)

            if result is not None and result.requeue_after > 0:
                logger.info(
                    "Stage requested requeue",
                    extra={
                        "object": name,
                        "phase": self.phase.value,
                        "stage": stage_name,
                        "requeue_after": result.requeue_after,
                        "reason": result.message,
                    },
                )
                return PipelineOutcome(
                    phase=self.phase,
                    requeue_after=result.requeue_after,
                    message=result.message,
                )

        return PipelineOutcome(phase=self.phase, completed=True)

    def _failed(self, name: str, stage_name: str, error: Exception) -> PipelineOutcome:
        kind = classify_error(error)
        extra = {
            "object": name,
            "phase": self.phase.value,
            "stage": stage_name,
            "error": str(error),
            "error_kind": kind.value,
            "acs_error_code": get_acs_error_code(error),
        }

        if is_terminal(kind):
            logger.error("Stage failed terminally", extra=extra)
            return PipelineOutcome(
                phase=self.phase,
                failed_stage=stage_name,
                error=error,
                error_kind=kind,
                message=str(error),
            )

        if kind == ErrorKind.PARTIAL_TRANSITION:
            delay = self.partial_transition_delay
            logger.error("Instance left mid-transition, requeueing promptly", extra=extra)
        else:
            delay = self.requeue_delay
            logger.warning("Stage failed, requeueing", extra=extra)

        return PipelineOutcome(
            phase=self.phase,
            requeue_after=delay,
            failed_stage=stage_name,
            error=error,
            error_kind=kind,
            message=str(error),
        )
