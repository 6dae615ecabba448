"""
Bounded polling after a Stripe Checkout redirect.

The redirect usually lands before the webhook does, so the success page asks
us to keep reconciling until Stripe reports the subscription as trialing or
active. Polls are bounded in both interval and attempt count, and at most one
poll runs per checkout session.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from models.results import Err, Ok, Result
from models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

VERIFICATION_TIMEOUT = "verification_timeout"
VERIFICATION_TIMEOUT_MESSAGE = (
    "Your payment is still processing. Please refresh in a minute or contact support."
)

SETTLED_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)


class CheckoutVerificationPoller:
    """
    Calls `attempt` until it yields a settled subscription or attempts run out.

    `attempt` returns Ok(SubscriptionSnapshot) or Err(...); errors (including
    transient provider failures) just count as an unsettled attempt, except
    those listed in `stop_on`, which end the poll and are returned as is.
    """

    def __init__(
        self,
        attempt: Callable[[], Awaitable[Result]],
        interval: float = 2.0,
        max_attempts: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stop_on: Iterable = (),
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.attempt = attempt
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.stop_on = frozenset(stop_on)
        self.attempts_made = 0

    async def run(self) -> Result:
        last: Optional[Result] = None
        for number in range(1, self.max_attempts + 1):
            self.attempts_made = number
            last = await self.attempt()
            if not last.is_error and last.value.local_status in SETTLED_STATUSES:
                logger.info(f"Checkout verified on attempt {number}: {last.value.raw_status}")
                return last
            if last.is_error and last.error in self.stop_on:
                logger.warning(f"Checkout verification stopped on attempt {number}: {last.error}")
                return last
            if number < self.max_attempts:
                await self.sleep(self.interval)

        detail = getattr(last, "message", None) or getattr(getattr(last, "value", None), "raw_status", None)
        logger.warning(f"Checkout verification timed out after {self.max_attempts} attempts ({detail})")
        return Err(VERIFICATION_TIMEOUT, VERIFICATION_TIMEOUT_MESSAGE, detail)


class CheckoutPollRegistry:
    """
    Owns the running verification polls, keyed by checkout session id.

    A second request for a session that is already being polled waits on the
    same task. Waiters are shielded, so a client that disconnects does not
    cancel the poll for everyone else; cancel()/cancel_all() stop polls explicitly.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def run(self, key: str, factory: Callable[[], Awaitable[Result]]) -> Result:
        task = self._tasks.get(key)
        if task is None or task.done():
            task = asyncio.create_task(factory(), name=f"checkout-poll:{key}")
            self._tasks[key] = task
            task.add_done_callback(lambda t, k=key: self._discard(k, t))
        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def cancel(self, key: str) -> bool:
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def cancel_all(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
