"""Namespace targets and reconcile cadence derived from the load profile."""

from __future__ import annotations

import logging
import math
import re
from decimal import Decimal
from typing import Dict

from .entities import LoadProfile

logger = logging.getLogger(__name__)

# 76 namespaces on a 126 node production cluster.
FALLBACK_RATIO = Decimal("0.6")

PROFILE_RATIOS: Dict[str, Decimal] = {
    "development": Decimal("0.2"),
    "staging": Decimal("0.4"),
    "production": Decimal("0.6"),
    "extreme": Decimal("1.0"),
}

PROFILE_INTERVALS: Dict[str, float] = {
    "development": 120.0,
    "staging": 90.0,
    "production": 60.0,
    "extreme": 30.0,
}
DEFAULT_INTERVAL = 60.0

_DECIMAL_RE = re.compile(r"^[0-9]+(\.[0-9]+)?$")


def parse_ratio(value: str, fallback: Decimal = FALLBACK_RATIO) -> Decimal:
    """Parse a non-negative decimal string, falling back on bad input."""

    text = value.strip() if isinstance(value, str) else ""
    if not _DECIMAL_RE.match(text):
        logger.warning("Unparsable ratio %r, using %s", value, fallback)
        return fallback
    return Decimal(text)


def profile_ratio(profile: LoadProfile) -> Decimal:
    if profile.namespaces_per_node is not None:
        return parse_ratio(profile.namespaces_per_node)
    return PROFILE_RATIOS.get(profile.profile, PROFILE_RATIOS["production"])


def target_namespaces(node_count: int, profile: LoadProfile) -> int:
    # Decimal keeps ceil(10 x 0.7) at 7 instead of 8.
    if node_count <= 0:
        return 0
    return int(math.ceil(Decimal(node_count) * profile_ratio(profile)))


def reconcile_interval(profile: LoadProfile) -> float:
    """Seconds until the next tick for this profile."""

    return PROFILE_INTERVALS.get(profile.profile, DEFAULT_INTERVAL)


__all__ = [
    "FALLBACK_RATIO",
    "PROFILE_INTERVALS",
    "PROFILE_RATIOS",
    "parse_ratio",
    "profile_ratio",
    "reconcile_interval",
    "target_namespaces",
]
