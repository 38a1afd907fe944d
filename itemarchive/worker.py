"""Background drain loop for the vector sync outbox.

Run ``python -m itemarchive.worker`` next to the API when
``VECTOR_SYNC_MODE=deferred`` (or to retry jobs left PENDING in inline mode).
"""

from __future__ import annotations

import argparse
import logging
import time

from .core.logging import configure_logging
from .core.settings import AppSettings, get_settings
from .db.session import SessionLocal
from .deps.vector import get_vector_store
from .services.vector_sync import DrainReport, drain_pending
from .vector import VectorStore

logger = logging.getLogger("itemarchive.worker")


def run_once(store: VectorStore, *, limit: int | None, settings: AppSettings, session_factory=SessionLocal) -> DrainReport:
    db = session_factory()
    try:
        return drain_pending(db, store, limit=limit, settings=settings)
    finally:
        db.close()


def run_forever(
    store: VectorStore,
    *,
    limit: int | None,
    interval: float,
    settings: AppSettings,
    session_factory=SessionLocal,
    max_passes: int | None = None,
    sleep=time.sleep,
) -> None:
    passes = 0
    while max_passes is None or passes < max_passes:
        passes += 1
        try:
            report = run_once(store, limit=limit, settings=settings, session_factory=session_factory)
        except Exception:
            # Keep polling; the jobs stay PENDING and are picked up next pass.
            logger.exception("worker.pass_failed")
            report = None
        if report is not None and report.processed:
            logger.info("worker.pass", extra={"extra_data": report.as_dict()})
            # A full batch probably means more work is waiting.
            if limit and report.processed >= limit:
                continue
        sleep(interval)


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Drain pending vector metadata sync jobs.")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    parser.add_argument("--limit", type=int, default=settings.VECTOR_SYNC_BATCH_SIZE, help="jobs per pass")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.WORKER_POLL_INTERVAL_SEC,
        help="seconds to sleep between passes",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.LOG_LEVEL, service=f"{settings.APP_NAME} worker", env=settings.APP_ENV)
    store = get_vector_store()
    if args.once:
        report = run_once(store, limit=args.limit, settings=settings)
        logger.info("worker.done", extra={"extra_data": report.as_dict()})
        return 0
    logger.info("worker.started", extra={"extra_data": {"limit": args.limit, "interval": args.interval}})
    try:
        run_forever(store, limit=args.limit, interval=args.interval, settings=settings)
    except KeyboardInterrupt:
        logger.info("worker.stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
