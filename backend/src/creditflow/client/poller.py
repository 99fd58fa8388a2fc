"""Client-side pollers for task status and payment reconciliation.

Both loops share one BackoffPolicy. Running out of attempts is an outcome,
not an error: a task that is still running is reported as
``still_processing``, and a payment that never settled as
``needs_manual_retry`` after one last reconcile is fired in the background.
"""
import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from creditflow.config import settings
from creditflow.utils.backoff import BackoffPolicy, Sleep

logger = structlog.get_logger(__name__)

TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "cancelled"})
SETTLED_OUTCOMES = frozenset({"already_settled", "settled_now"})


class PollOutcome(str, enum.Enum):
    """How a polling loop ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STILL_PROCESSING = "still_processing"
    SETTLED = "settled"
    NEEDS_MANUAL_RETRY = "needs_manual_retry"


@dataclass
class PollResult:
    """Final outcome plus the last body the API returned."""

    outcome: PollOutcome
    attempts: int
    last_response: Optional[dict[str, Any]] = None


def default_poll_policy() -> BackoffPolicy:
    """Poll schedule from settings: 1s, x1.5, capped at 15s, 20 attempts."""
    return BackoffPolicy(
        initial_delay=settings.poll_initial_delay_seconds,
        multiplier=settings.poll_multiplier,
        max_delay=settings.poll_max_delay_seconds,
        max_attempts=settings.poll_max_attempts,
        jitter=settings.poll_jitter_seconds,
    )


class CreditflowPoller:
    """
    Polls the creditflow HTTP API on behalf of one signed-in user.

    Transient failures (transport errors, 5xx, 429) count as an attempt
    and polling continues.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: Optional[BackoffPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize poller.

        Args:
            client: httpx client with base_url and the Authorization header set
            policy: Poll schedule, defaults to the configured one
            sleep: Awaitable sleep, injectable for tests
        """
        self.client = client
        self.policy = policy or default_poll_policy()
        self.sleep = sleep
        self._background: set[asyncio.Task] = set()

    async def _call(self, method: str, url: str) -> Optional[dict[str, Any]]:
        """One request; None for a transient failure."""
        try:
            response = await self.client.request(method, url)
        except httpx.HTTPError as e:
            logger.warning("poll_request_failed", url=url, error=str(e))
            return None

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("poll_request_transient_status", url=url, status_code=response.status_code)
            return None
        response.raise_for_status()
        return response.json()

    async def poll_task(self, task_id: str) -> PollResult:
        """
        Poll GET /v1/tasks/{task_id} until the task is terminal.

        Returns:
            PollResult with the terminal status, or still_processing once the
            attempt budget is spent

        Raises:
            httpx.HTTPStatusError: For non-transient client errors (401, 404)
        """
        last = None
        for attempt in range(1, self.policy.max_attempts + 1):
            body = await self._call("GET", f"/v1/tasks/{task_id}")
            if body is not None:
                last = body
                if body.get("status") in TERMINAL_TASK_STATUSES:
                    return PollResult(PollOutcome(body["status"]), attempt, body)
            if attempt < self.policy.max_attempts:
                await self.sleep(self.policy.delay(attempt - 1))

        logger.info("task_poll_exhausted", task_id=task_id, attempts=self.policy.max_attempts)
        return PollResult(PollOutcome.STILL_PROCESSING, self.policy.max_attempts, last)

    async def poll_payment(self, order_no: str) -> PollResult:
        """
        Drive reconciliation of an order until it settles.

        POST /v1/payments/{order_no}/reconcile on the poll schedule.
        already_settled and settled_now end the loop; pending_upstream and
        error keep polling. After the budget is spent one more reconcile is
        fired without awaiting it and needs_manual_retry is returned.
        """
        url = f"/v1/payments/{order_no}/reconcile"
        last = None
        for attempt in range(1, self.policy.max_attempts + 1):
            body = await self._call("POST", url)
            if body is not None:
                last = body
                if body.get("outcome") in SETTLED_OUTCOMES:
                    return PollResult(PollOutcome.SETTLED, attempt, body)
            if attempt < self.policy.max_attempts:
                await self.sleep(self.policy.delay(attempt - 1))

        logger.warning("payment_poll_exhausted", order_no=order_no, attempts=self.policy.max_attempts)
        self._fire_and_forget(url)
        return PollResult(PollOutcome.NEEDS_MANUAL_RETRY, self.policy.max_attempts, last)

    def _fire_and_forget(self, url: str) -> None:
        task = asyncio.create_task(self._background_reconcile(url))
        # Keep a reference until done so the task is not garbage collected
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_reconcile(self, url: str) -> None:
        try:
            await self._call("POST", url)
        except httpx.HTTPError as e:
            logger.warning("background_reconcile_failed", url=url, error=str(e))

    async def drain(self) -> None:
        """Wait for background reconcile calls (before closing the client)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
