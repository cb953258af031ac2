"""Best-effort teardown.

Destroy runs a fixed list of steps. A step that finds nothing to delete
is a success, a step that fails is recorded and skipped, and every
remaining step still runs. The returned report lists the failures so the
operator knows what to clean up by hand.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from launchdeck.lib.errors import DestroyStepError
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import (
    DestroyReport,
    DestroyStepResult,
    Provider,
    StepOutcome,
)

logger = get_logger(__name__)

# A step returns False when the resource was already gone
DestroyStep = tuple[str, Callable[[], bool]]


def run_teardown(
    provider: Provider,
    service_name: str,
    steps: Sequence[DestroyStep],
    is_not_found: Callable[[Exception], bool],
) -> DestroyReport:
    """Run every destroy step in order.

    Args:
        provider: Provider being torn down
        service_name: Configured service name
        steps: Ordered ``(name, action)`` pairs
        is_not_found: Recognizes provider "not found" errors

    Returns:
        DestroyReport with one entry per step
    """
    report = DestroyReport(provider=provider, service_name=service_name)

    for name, action in steps:
        try:
            deleted = action()
        except Exception as e:
            if is_not_found(e):
                outcome, error = StepOutcome.NOT_FOUND, None
            else:
                failure = (
                    e
                    if isinstance(e, DestroyStepError)
                    else DestroyStepError(name, str(e))
                )
                logger.error(str(failure))
                outcome, error = StepOutcome.FAILED, failure.message
        else:
            outcome = StepOutcome.DELETED if deleted else StepOutcome.NOT_FOUND
            error = None

        if outcome == StepOutcome.DELETED:
            logger.info(f"Deleted {name}")
        elif outcome == StepOutcome.NOT_FOUND:
            logger.info(f"{name} not found, skipping")
        report.steps.append(DestroyStepResult(step=name, outcome=outcome, error=error))

    if report.failed_steps:
        logger.warning(
            f"Destroy finished with {len(report.failed_steps)} failed step(s)"
        )
    return report
