from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import math
import threading
from typing import Literal

from reviewloop.github_gateway import GitHubPollingError
from reviewloop.models import BotTiming, CheckStatus
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.timing")

MIN_WAIT_SECONDS = 30
MAX_WAIT_SECONDS = 300
POLL_CHUNK_SECONDS = 15
STATUS_CHECK_SECONDS = 30

WaitOutcome = Literal["elapsed", "early", "cancelled"]


class CancellationToken:
    """Set from a signal handler; long waits and the loop check it between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)


@dataclass(frozen=True)
class WaitPlan:
    seconds: int
    reason: str


def plan_wait(
    *,
    timings: Sequence[BotTiming],
    checks: CheckStatus | None,
    default_seconds: int,
) -> WaitPlan:
    checks_running = checks is not None and checks.running
    if timings:
        max_observed = max(timing.max_seconds for timing in timings)
        avg_observed = sum(timing.average_seconds for timing in timings) / len(timings)
        if checks_running:
            seconds = math.ceil((avg_observed + max_observed) / 2)
            reason = f"CI checks running (avg bot response {avg_observed:.0f}s)"
        else:
            seconds = math.ceil(avg_observed * 1.1)
            reason = f"average bot response {avg_observed:.0f}s"
        return WaitPlan(
            seconds=max(MIN_WAIT_SECONDS, min(MAX_WAIT_SECONDS, seconds)),
            reason=reason,
        )
    if checks_running:
        return WaitPlan(
            seconds=max(default_seconds, 60), reason="CI checks running (no timing data)"
        )
    return WaitPlan(seconds=default_seconds, reason="default poll interval (no timing data)")


def smart_wait(
    plan: WaitPlan,
    *,
    token: CancellationToken,
    status_check: Callable[[], CheckStatus],
    sleep: Callable[[float], None] | None = None,
) -> WaitOutcome:
    """Wait in short chunks, leaving early once checks settle or the token is set."""
    log_event(LOGGER, "smart_wait_started", seconds=plan.seconds, reason=plan.reason)
    remaining = plan.seconds
    while remaining > 0:
        chunk = min(remaining, POLL_CHUNK_SECONDS)
        if sleep is None:
            token.wait(chunk)
        else:
            sleep(chunk)
        if token.cancelled:
            log_event(LOGGER, "smart_wait_cancelled", remaining=remaining)
            return "cancelled"
        remaining -= chunk
        if remaining <= 0 or remaining % STATUS_CHECK_SECONDS != 0:
            continue
        try:
            status = status_check()
        except GitHubPollingError as exc:
            log_event(LOGGER, "smart_wait_status_failed", error=str(exc))
            continue
        if not status.running:
            log_event(LOGGER, "smart_wait_finished_early", remaining=remaining)
            return "early"
    return "elapsed"
