"""
Pipeline error taxonomy.

Recoverable errors (``ExecutionError``, ``CaptureError``) are counted against
the current attempt budget and never leave their loop iteration. Everything
else is fatal: the orchestrator catches it, logs it and moves the run to
``ERROR``.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    fatal = True


class PlanningFailure(PipelineError):
    """The planning oracle was unreachable or returned an unusable plan."""


class ExecutionError(PipelineError):
    """Generated logic failed to parse, raised, timed out or broke its return contract."""

    fatal = False


class CaptureError(PipelineError):
    """The render stage could not produce a complete snapshot set."""

    fatal = False


class RetryExhaustion(PipelineError):
    """A component could not be verified within its attempt budget."""

    def __init__(self, component_name: str, attempts: int):
        super().__init__(
            f"Failed to generate stable component {component_name} after {attempts} attempts."
        )
        self.component_name = component_name
        self.attempts = attempts


class CriticalFailure(PipelineError):
    """Any other orchestration failure."""


class IllegalPhaseTransition(CriticalFailure):
    pass


class BudgetExceeded(CriticalFailure):
    def __init__(self, spent_usd: float, budget_usd: float):
        super().__init__(f"Cost ${spent_usd:.3f} exceeds the ${budget_usd:.2f} request budget")
        self.spent_usd = spent_usd
        self.budget_usd = budget_usd
