from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("meshbot.runner")


@dataclass
class TurnStep:
    """Step descriptor for the per-turn runner."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None
    always_run: bool = False


class TurnRunner:
    """Ordered step runner; once a step resolves the turn, only always_run steps execute."""

    def __init__(self, steps: list[TurnStep], resolved: Callable[[object], bool]) -> None:
        """Purpose: Initialize the runner with ordered steps and a resolution test.
        Inputs/Outputs: Steps and a predicate telling whether the context already has
            a response; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond TurnStep definitions.
        Failure Modes: None; assumes valid callables in steps.
        If Removed: The dialogue pipeline cannot run its layers in order.
        Testing Notes: A resolving first step must prevent later optional steps.
        """
        # Store the pipeline steps for deterministic execution.
        self._steps = steps
        self._resolved = resolved

    def run(self, context: object) -> None:
        """Purpose: Execute steps in order with skip/always-run rules.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: Depends on TurnStep.fn and TurnStep.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller.
        If Removed: No turn is ever answered.
        Testing Notes: Verify skip_if and always_run logic with simple steps.
        """
        # Iterate steps; resolved turns only run the always_run tail.
        for step in self._steps:
            if step.always_run:
                step.fn(context)
                continue
            if self._resolved(context):
                continue
            if step.skip_if and step.skip_if(context):
                continue
            logger.debug("step=%s", step.name)
            step.fn(context)
