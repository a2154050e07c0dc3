"""Operation polling with deadlines and cancellation.

Control plane calls are blocking, so they run in the default executor.
Every call and every sleep between polls is bounded by the caller's
deadline and raced against an optional cancel event, so a cancelled or
expired call returns promptly instead of waiting for the next poll tick.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from .client import ControlPlaneClient
from .config import PollerConfig
from .errors import (
    OperationCancelledError,
    OperationTimeoutError,
    Outcome,
    RemoteFailureError,
    TransientError,
)
from .models import Location, Operation, OperationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


def remaining_seconds(deadline: float) -> float:
    return deadline - time.monotonic()


async def run_bounded(
    func: Callable[..., T],
    *args: Any,
    deadline: float,
    what: str,
    cancel: asyncio.Event | None = None,
    outcome: Outcome = Outcome.MAYBE_DONE,
) -> T:
    """Run a blocking client call in the executor under a deadline.

    Args:
        func: Blocking callable.
        *args: Arguments for func.
        deadline: Absolute time.monotonic() deadline.
        what: Description used in error messages.
        cancel: Event that aborts the wait when set.
        outcome: Outcome reported if the wait is abandoned.

    Returns:
        The result of func.

    Raises:
        OperationTimeoutError: If the deadline passes first.
        OperationCancelledError: If cancel is set first.
    """
    remaining = remaining_seconds(deadline)
    if remaining <= 0:
        raise OperationTimeoutError(f"{what}: deadline exceeded", outcome=outcome)
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(f"{what}: cancelled", outcome=outcome)

    loop = asyncio.get_running_loop()
    call = loop.run_in_executor(None, functools.partial(func, *args))
    waiters: set[asyncio.Future[Any]] = {call}
    cancel_wait: asyncio.Future[Any] | None = None
    if cancel is not None:
        cancel_wait = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()

    if call in done:
        return call.result()

    # The worker thread cannot be interrupted; its result is discarded
    call.cancel()
    if cancel_wait is not None and cancel_wait in done:
        raise OperationCancelledError(f"{what}: cancelled", outcome=outcome)
    raise OperationTimeoutError(f"{what}: deadline exceeded", outcome=outcome)


class OperationPoller:
    """Waits for control plane operations to reach a terminal state."""

    def __init__(self, client: ControlPlaneClient, config: PollerConfig | None = None) -> None:
        self._client = client
        self._config = config or PollerConfig()

    @property
    def config(self) -> PollerConfig:
        return self._config

    async def wait(
        self,
        operation: Operation,
        location: Location,
        deadline: float,
        cancel: asyncio.Event | None = None,
    ) -> Operation:
        """Poll an operation until it is done, fails, or the deadline passes.

        Args:
            operation: Handle returned by the submitting call.
            location: Organization/project the operation belongs to.
            deadline: Absolute time.monotonic() deadline.
            cancel: Event that aborts the wait when set.

        Returns:
            The operation in its DONE state.

        Raises:
            RemoteFailureError: If the operation finished with an error.
            OperationTimeoutError: If the deadline passed while running.
            OperationCancelledError: If cancel was set.
            TransientError: If queries kept failing past the retry budget.
        """
        current = operation
        consecutive_errors = 0
        polls = 0
        started = time.monotonic()

        while not current.status.is_terminal:
            if polls:
                await self._sleep(current.id, deadline, cancel)
            polls += 1
            try:
                current = await run_bounded(
                    self._client.get_operation,
                    location,
                    current.id,
                    deadline=deadline,
                    what=f"operation {current.id} still running; the remote change may yet complete",
                    cancel=cancel,
                )
                consecutive_errors = 0
            except TransientError as e:
                consecutive_errors += 1
                if consecutive_errors > self._config.max_transient_errors:
                    raise TransientError(
                        f"operation {current.id}: status query failed "
                        f"{consecutive_errors} times in a row: {e}",
                        outcome=Outcome.MAYBE_DONE,
                    ) from e
                logger.warning(
                    "Operation status query failed, retrying",
                    extra={
                        "operation_id": current.id,
                        "attempt": consecutive_errors,
                        "max_attempts": self._config.max_transient_errors,
                        "error": str(e),
                    },
                )

        logger.info(
            "Operation reached terminal state",
            extra={
                "operation_id": current.id,
                "status": current.status.value,
                "polls": polls,
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )

        if current.status is OperationStatus.ERROR:
            reason = current.error_message or "unknown failure"
            raise RemoteFailureError(
                f"operation {current.id} failed: {reason}",
                reason=reason,
                operation_id=current.id,
            )
        return current

    async def _sleep(self, operation_id: str, deadline: float, cancel: asyncio.Event | None) -> None:
        delay = min(self._config.interval_seconds, remaining_seconds(deadline))
        if delay <= 0:
            raise OperationTimeoutError(
                f"operation {operation_id} still running at deadline; "
                "the remote change may yet complete"
            )
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except TimeoutError:
            return
        raise OperationCancelledError(f"operation {operation_id}: cancelled while polling")
