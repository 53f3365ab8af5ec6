"""OD-02 sweep worker: runs the reconciling sweep outside the API process."""

from __future__ import annotations

import argparse
import signal
import threading
from typing import Any, Dict, List, Optional

from backend.app.config import load_settings
from backend.app.domain.od02_window import WindowScheduler
from backend.app.infra.logging import configure_logging, get_logger
from backend.app.pipeline import Pipeline, build_pipeline

logger = get_logger(__name__)


def _get_default_pipeline() -> Pipeline:
    return build_pipeline(load_settings())


def handle(
    payload: Optional[dict] = None,
    *,
    pipeline: Optional[Pipeline] = None,
) -> Dict[str, Any]:
    """Run one unit of consolidation work.

    With ``entry_id`` in the payload only that entry is checked; otherwise a
    full sweep (ready entries plus stale-claim recovery) runs.
    """

    payload = payload or {}
    pipeline = pipeline or _get_default_pipeline()
    entry_id = payload.get("entry_id")
    if entry_id:
        result = pipeline.validator.try_claim_and_process(entry_id)
        logger.info(
            "sweep_worker_entry_checked",
            extra={"entry_id": entry_id, "outcome": result.outcome},
        )
        return {
            "entry_id": entry_id,
            "outcome": result.outcome,
            "reason": result.reason,
            "draft_id": result.draft.draft_id if result.draft else None,
        }

    report = pipeline.scheduler.sweep_once()
    return report.to_dict()


def run_forever(scheduler: WindowScheduler, stop_event: threading.Event) -> None:
    scheduler.start()
    try:
        stop_event.wait()
    finally:
        scheduler.stop()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="OfferDesk consolidation sweeper")
    parser.add_argument("--once", action="store_true", help="run a single sweep")
    parser.add_argument("--profile", default=None, help="config profile name")
    parser.add_argument("--entry-id", default=None, help="check a single entry")
    args = parser.parse_args(argv)

    settings = load_settings(args.profile)
    configure_logging(settings.logging)
    pipeline = build_pipeline(settings)

    if args.once or args.entry_id:
        summary = handle({"entry_id": args.entry_id}, pipeline=pipeline)
        logger.info("sweep_worker_pass_completed", extra=summary)
        return 0

    stop_event = threading.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop_event.set())
    logger.info(
        "sweep_worker_started",
        extra={"interval_seconds": settings.consolidation.sweep_interval_seconds},
    )
    run_forever(pipeline.scheduler, stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
