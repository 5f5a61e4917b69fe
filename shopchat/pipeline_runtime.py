from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger("shopchat.pipeline")


@dataclass
class TurnStep:
    """Step descriptor for the async turn pipeline."""
    name: str
    fn: Callable[[object], Awaitable[None]]
    skip_if: Optional[Callable[[object], bool]] = None
    always_run: bool = False


class TurnPipeline:
    """Ordered async step runner; always_run steps execute even after a failure."""

    def __init__(self, steps: List[TurnStep]) -> None:
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    async def run(self, context: object) -> None:
        """Purpose: Execute steps in order with skip/always-run rules.
        Inputs/Outputs: Input is a mutable turn context; no return value.
        Side Effects / State: Step functions mutate the context.
        Dependencies: TurnStep.fn and TurnStep.skip_if.
        Failure Modes: The first failing step stops the regular steps; always_run
            steps still execute, then the original exception is re-raised.
        If Removed: A flushed batch cannot be turned into a reply.
        Testing Notes: A failing middle step still lets delivery run.
        """
        # Remember the first failure so cleanup steps can still run.
        error: Optional[BaseException] = None
        for step in self._steps:
            if error is not None and not step.always_run:
                continue
            if not step.always_run and step.skip_if and step.skip_if(context):
                logger.debug("step=%s skipped", step.name)
                continue
            try:
                await step.fn(context)
            except Exception as exc:
                if error is None:
                    error = exc
                logger.exception("step=%s failed", step.name)
        if error is not None:
            raise error
