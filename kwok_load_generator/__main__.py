"""Command line entrypoint for the KWOK load generator controller."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .config import Config
from .controller import run_from_config

# argparse destination -> Config attribute, for flags that default to None.
_OVERRIDES = {
    "workers": "workers",
    "port": "metrics_port",
    "host": "metrics_host",
    "kubeconfig": "kubeconfig_path",
    "context": "kube_context",
    "seed": "random_seed",
    "resync": "resync_seconds",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kwok-load-generator",
        description="Reconcile ScaleLoadConfig objects into namespace, object and node annotation churn.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile every existing ScaleLoadConfig once and exit.",
    )
    parser.add_argument("--log-level", help="Log level (default from LOG_LEVEL env).")

    cluster = parser.add_argument_group("cluster access")
    cluster.add_argument("--kubeconfig", help="Path to a kubeconfig file (KUBECONFIG_PATH).")
    cluster.add_argument("--context", help="Kubeconfig context to use (KUBE_CONTEXT).")
    cluster.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use the service account credentials of the current pod.",
    )

    controller = parser.add_argument_group("controller")
    controller.add_argument("--workers", type=int, help="Reconcile worker threads (WORKERS).")
    controller.add_argument("--resync", type=float, help="Seconds between full resyncs (RESYNC_SECONDS).")
    controller.add_argument(
        "--seed",
        type=int,
        help="Seed for generated names, payloads and churn decisions (RANDOM_SEED).",
    )

    metrics = parser.add_argument_group("metrics endpoint")
    metrics.add_argument("--port", type=int, help="Metrics HTTP port (METRICS_PORT).")
    metrics.add_argument("--host", help="Metrics HTTP bind address (METRICS_HOST).")
    return parser


def _apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    for dest, attribute in _OVERRIDES.items():
        value = getattr(args, dest)
        if value is not None:
            setattr(config, attribute, value)
    if args.in_cluster:
        config.in_cluster = True
    return config


def _configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # The kubernetes client logs every request body at DEBUG.
    if numeric_level <= logging.DEBUG:
        logging.getLogger("kubernetes").setLevel(logging.INFO)


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = _apply_overrides(Config.from_env(), args)
    _configure_logging(args.log_level or config.log_level)

    try:
        return run_from_config(config, once=args.once)
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Received interrupt, shutting down.")
        return 0


if __name__ == "__main__":  # pragma: no cover - module entrypoint
    sys.exit(main())
