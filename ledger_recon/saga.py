"""
Saga

A compound operation as an ordered list of steps, each with an optional
compensating action. If a step fails (or the running task is cancelled),
the compensations of the steps that already completed run in reverse
order and the original error propagates.

Used by the contribution flow:
    1. apply speculative balance patch   (compensate: roll it back)
    2. create the linked transaction      (the operation of record)
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog


logger = structlog.get_logger(__name__)

Compensation = Callable[[Any, BaseException], Any]


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Awaitable[Any]]
    compensate: Optional[Compensation] = None


class Saga:
    """
    Runs steps in order; compensates completed steps on failure.

    Usage:
        saga = Saga("contribute", correlation_id)
        saga.step("patch", begin_patch, compensate=lambda token, err: rollback(token))
        saga.step("create", create_transaction)
        results = await saga.run()
    """

    def __init__(self, name: str, correlation_id: Optional[UUID] = None):
        self.name = name
        self.correlation_id = correlation_id
        self._steps: list[SagaStep] = []
        self.results: dict[str, Any] = {}

    def step(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        compensate: Optional[Compensation] = None,
    ) -> "Saga":
        self._steps.append(SagaStep(name=name, action=action, compensate=compensate))
        return self

    async def run(self) -> dict[str, Any]:
        completed: list[SagaStep] = []
        for step in self._steps:
            try:
                self.results[step.name] = await step.action()
            except BaseException as error:
                logger.warning(
                    "saga_step_failed",
                    saga=self.name,
                    step=step.name,
                    error=repr(error),
                    correlation_id=str(self.correlation_id) if self.correlation_id else None,
                )
                self._compensate(completed, error)
                raise
            completed.append(step)
        return self.results

    def _compensate(self, completed: list[SagaStep], error: BaseException) -> None:
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                step.compensate(self.results[step.name], error)
            except Exception as e:
                # Keep compensating the remaining steps
                logger.error(
                    "saga_compensation_failed",
                    saga=self.name,
                    step=step.name,
                    error=str(e),
                )
