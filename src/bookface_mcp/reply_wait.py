"""Send-then-poll protocol that turns the asynchronous agent chat into a blocking call.

The chat backend never answers a send with the reply. Instead we note how many
messages the thread held before our send, then poll history until it has grown
by two (our message plus one reply) or the deadline passes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

import httpx

from .bookface import BookfaceClient
from .errors import UpstreamError

logger = logging.getLogger(__name__)

REPLIED = "replied"
TIMED_OUT = "timed_out"

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_POLL_INTERVAL_SECONDS = 3.0

# A single failed poll must not abort the wait
_TRANSIENT_POLL_ERRORS = (UpstreamError, httpx.HTTPError, ValueError)


@dataclass
class WaitOutcome:
    status: str
    thread_id: int
    baseline: int
    message_count: int
    reply: Any = None
    waited_seconds: float = 0.0

    @property
    def replied(self) -> bool:
        return self.status == REPLIED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["baseline_count"] = data.pop("baseline")
        data["waited_seconds"] = round(self.waited_seconds, 1)
        return data


class ReplyWaiter:
    """Deadline-bounded polling loop over a thread's history.

    ``sleep`` and ``clock`` are injectable so tests can simulate time.
    """

    def __init__(
        self,
        fetch_history: Callable[[int], Awaitable[list[Any]]],
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_history = fetch_history
        self._sleep = sleep
        self._clock = clock

    async def wait_for_reply(
        self,
        thread_id: int,
        baseline: int,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> WaitOutcome:
        started = self._clock()
        deadline = started + timeout_seconds
        target = baseline + 2
        message_count = baseline
        attempts = 0

        while self._clock() < deadline:
            await self._sleep(poll_interval_seconds)
            attempts += 1
            try:
                messages = await self._fetch_history(thread_id)
            except _TRANSIENT_POLL_ERRORS as exc:
                logger.debug(
                    "reply_wait.poll_failed",
                    extra={"thread_id": thread_id, "attempt": attempts, "error": type(exc).__name__},
                )
                continue
            message_count = len(messages)
            if message_count >= target:
                logger.info("reply_wait.replied", extra={"thread_id": thread_id, "attempts": attempts})
                return WaitOutcome(
                    status=REPLIED,
                    thread_id=thread_id,
                    baseline=baseline,
                    message_count=message_count,
                    reply=messages[-1],
                    waited_seconds=self._clock() - started,
                )

        logger.info("reply_wait.timed_out", extra={"thread_id": thread_id, "attempts": attempts})
        return WaitOutcome(
            status=TIMED_OUT,
            thread_id=thread_id,
            baseline=baseline,
            message_count=message_count,
            waited_seconds=self._clock() - started,
        )


async def create_and_wait(
    client: BookfaceClient,
    waiter: ReplyWaiter,
    message: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> WaitOutcome:
    """Create a thread seeded with ``message`` and wait for the first reply."""
    thread = await client.create_chat(message)
    try:
        thread_id = int(thread["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamError("Create thread", 200, f"response has no thread id: {str(thread)[:400]}") from exc
    # A brand-new thread has no history before our opening message
    return await waiter.wait_for_reply(
        thread_id, 0, timeout_seconds=timeout_seconds, poll_interval_seconds=poll_interval_seconds
    )


async def send_and_wait(
    client: BookfaceClient,
    waiter: ReplyWaiter,
    thread_id: int,
    message: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> WaitOutcome:
    """Send to an existing thread and wait for the reply that follows it."""
    # Counted before the send so our own message is not mistaken for the reply
    baseline = len(await client.chat_history(thread_id))
    await client.send_message(thread_id, message)
    return await waiter.wait_for_reply(
        thread_id, baseline, timeout_seconds=timeout_seconds, poll_interval_seconds=poll_interval_seconds
    )
