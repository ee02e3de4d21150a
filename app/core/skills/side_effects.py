"""Best-effort side effects.

Some operations (download counters, cleanup deletes) must never fail the
primary operation. They run through ``run_best_effort``, which logs a failure
and hands it back as a result the caller may ignore.
"""

from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Optional,
)

from app.core.logging import logger


@dataclass
class BestEffortResult:
    """Outcome of a best-effort side effect."""

    ok: bool
    error: Optional[str] = None


async def run_best_effort(
    event: str,
    operation: Callable[[], Awaitable[Any]],
    **context: Any,
) -> BestEffortResult:
    """Run an async side effect, logging and returning any failure.

    Args:
        event: Log event prefix, e.g. ``"skill_workflow_delete"``.
        operation: Zero-argument callable returning the awaitable to run.
        **context: Extra fields attached to the log event.

    Returns:
        BestEffortResult: ``ok=False`` with the error message on failure.
    """
    try:
        await operation()
    except Exception as e:
        logger.exception(f"{event}_failed", error=str(e), **context)
        return BestEffortResult(ok=False, error=str(e))

    logger.debug(f"{event}_succeeded", **context)
    return BestEffortResult(ok=True)
