"""Process-level settings for the controller, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv

T = TypeVar("T")

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _env(name: str, parse: Callable[[str], T], default: T) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from exc


def _parse_bool(raw: str) -> bool:
    return raw.lower() in _TRUE_VALUES


@dataclass(slots=True)
class Config:
    """Controller settings; CRD objects carry the per-load configuration."""

    kubeconfig_path: Optional[str] = None
    kube_context: Optional[str] = None
    in_cluster: bool = False
    metrics_port: int = 8080
    metrics_host: str = "0.0.0.0"
    random_seed: Optional[int] = None
    workers: int = 1
    resync_seconds: float = 300.0
    error_requeue_seconds: float = 30.0
    watch_timeout_seconds: int = 300
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Build settings from ``.env`` and the process environment.

        Malformed numbers raise ``ValueError`` naming the variable.
        """

        load_dotenv()
        config = cls(
            kubeconfig_path=os.getenv("KUBECONFIG_PATH") or None,
            kube_context=os.getenv("KUBE_CONTEXT") or None,
            in_cluster=_env("IN_CLUSTER", _parse_bool, False),
            metrics_port=_env("METRICS_PORT", int, 8080),
            metrics_host=os.getenv("METRICS_HOST", "0.0.0.0"),
            random_seed=_env("RANDOM_SEED", int, None),
            workers=_env("WORKERS", int, 1),
            resync_seconds=_env("RESYNC_SECONDS", float, 300.0),
            error_requeue_seconds=_env("ERROR_REQUEUE_SECONDS", float, 30.0),
            watch_timeout_seconds=_env("WATCH_TIMEOUT_SECONDS", int, 300),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        if config.workers < 1:
            raise ValueError(f"WORKERS must be at least 1, got {config.workers}")
        return config


__all__ = ["Config"]
