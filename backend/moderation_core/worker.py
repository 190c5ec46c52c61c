from __future__ import annotations

import os
import signal
import socket
import time

from .config import settings
from .database import SessionLocal
from .logging_utils import configure_logging, log_event, log_warning
from .notifications import LoggingNotifier, Notifier, dispatch_once, idle_sleep, requeue_stale_intents


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def main(notifier: Notifier | None = None) -> None:
    configure_logging()

    notifier = notifier or LoggingNotifier()
    worker_id = os.getenv("WORKER_ID") or _default_worker_id()
    shutdown_requested = False

    def _handle_signal(signum, _frame):  # noqa: ANN001
        nonlocal shutdown_requested
        shutdown_requested = True
        log_warning("worker_shutdown_requested", worker_id=worker_id, signal=signum)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    log_event(
        "worker_started",
        worker_id=worker_id,
        poll_interval_seconds=settings.notification_poll_interval_seconds,
    )

    last_requeue_ts = 0.0
    while not shutdown_requested:
        db = SessionLocal()
        try:
            now = time.time()
            if now - last_requeue_ts > max(30, settings.notification_stale_after_seconds):
                requeue_stale_intents(db)
                last_requeue_ts = now

            if not dispatch_once(db, notifier, worker_id=worker_id):
                idle_sleep()
        except Exception as exc:  # noqa: BLE001
            log_warning("worker_loop_error", worker_id=worker_id, error=str(exc))
            idle_sleep()
        finally:
            db.close()

    log_event("worker_stopped", worker_id=worker_id)


if __name__ == "__main__":
    main()
