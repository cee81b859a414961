"""Rolling one-minute API call budget."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional, Tuple

if TYPE_CHECKING:
    from .entities import LoadProfile

logger = logging.getLogger(__name__)

DEFAULT_RATE_PER_NODE = 20
WINDOW = timedelta(minutes=1)


def effective_rate(profile: "LoadProfile", node_count: int) -> Tuple[int, str]:
    """Resolve the calls-per-minute budget and the rule that produced it.

    Precedence: static total, then per-node, then the deprecated per-node
    field, then the default per-node rate.
    """

    if profile.api_call_rate_static is not None:
        return profile.api_call_rate_static, "static"
    if profile.api_call_rate_per_node is not None:
        return profile.api_call_rate_per_node * node_count, "per-node"
    if profile.api_call_rate is not None:
        return profile.api_call_rate * node_count, "deprecated-per-node"
    return DEFAULT_RATE_PER_NODE * node_count, "default-per-node"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateBudget:
    """Advisory back-pressure on API calls.

    The counter only lives in process memory; it is not a hard limit enforced
    by the platform.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self.counter = 0
        self.window_start = self._clock()

    def _roll_window(self) -> None:
        now = self._clock()
        if now - self.window_start >= WINDOW:
            self.counter = 0
            self.window_start = now

    def admit(self, estimated_calls: int, rate: int) -> bool:
        """Reserve ``estimated_calls`` from the current window if they fit."""

        self._roll_window()
        if self.counter + estimated_calls > rate:
            logger.debug(
                "Budget denied %s calls (used %s of %s this window)",
                estimated_calls,
                self.counter,
                rate,
            )
            return False
        self.counter += estimated_calls
        return True


__all__ = ["DEFAULT_RATE_PER_NODE", "RateBudget", "effective_rate"]
