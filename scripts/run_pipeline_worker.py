"""Run the DreamLog pipeline scheduler (analysis + image generation workers)."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from backend.app.config import load_settings
from backend.app.infra.logging import configure_logging, get_logger
from backend.app.jobs.runtime import build_pipeline_runtime

logger = get_logger("scripts.run_pipeline_worker")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--once",
        action="store_true",
        help="Relay the outbox and process due tasks a single time, then exit.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of polling threads (defaults to pipeline.worker_count).",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="Config profile to load (defaults to DREAMLOG_CONFIG_PROFILE or 'dev').",
    )
    args = parser.parse_args()

    settings = load_settings(profile=args.profile)
    configure_logging(settings.logging)
    runtime = build_pipeline_runtime(settings)

    if args.once:
        summary = runtime.scheduler.run_once()
        print(json.dumps(asdict(summary), sort_keys=True))
        return

    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")
    if args.workers is not None:
        runtime.settings.pipeline.worker_count = args.workers
    logger.info(
        "pipeline_worker_process_starting",
        extra={"worker_count": runtime.settings.pipeline.worker_count},
    )
    runtime.scheduler.run_forever()


if __name__ == "__main__":
    main()
