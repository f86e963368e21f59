from __future__ import annotations

import logging
import threading

from .archiver import ActivityArchiver
from .config import LedgerSettings


logger = logging.getLogger(__name__)


_SWEEP_THREAD: threading.Thread | None = None
_SWEEP_STOP_EVENT: threading.Event | None = None


def _run_sweep(archiver: ActivityArchiver, stop_event: threading.Event, label: str) -> None:
    logger.info("Archive sweep starting (%s)", label)
    try:
        result = archiver.sweep(cancel_event=stop_event)
    except Exception:  # noqa: BLE001
        logger.exception("Archive sweep failed (%s)", label)
        return
    logger.info("Archive sweep completed (%s): %d residents archived", label, result.archived_count)
    if result.errors:
        logger.error("Archive sweep errors: %s", result.errors)


def _run_scheduler_loop(
    archiver: ActivityArchiver, interval: float, stop_event: threading.Event
) -> None:
    logger.info("Archive scheduler thread started (interval=%.0f seconds)", interval)

    _run_sweep(archiver, stop_event, "initial run")
    while not stop_event.wait(interval):
        _run_sweep(archiver, stop_event, "scheduled run")

    logger.info("Archive scheduler thread stopped")


def start_archive_scheduler(archiver: ActivityArchiver, settings: LedgerSettings) -> None:
    """Start the background sweep thread. Calling it twice is a no-op."""
    global _SWEEP_THREAD, _SWEEP_STOP_EVENT

    if _SWEEP_THREAD is not None and _SWEEP_THREAD.is_alive():
        logger.info("Archive scheduler already running")
        return

    stop_event = threading.Event()
    thread = threading.Thread(
        target=_run_scheduler_loop,
        args=(archiver, settings.sweep_interval_seconds, stop_event),
        name="archive-scheduler",
        daemon=True,
    )
    _SWEEP_STOP_EVENT = stop_event
    _SWEEP_THREAD = thread
    thread.start()


def stop_archive_scheduler(timeout: float = 5.0) -> None:
    """Signal the sweep thread to stop; an in-flight sweep halts between residents."""
    global _SWEEP_THREAD, _SWEEP_STOP_EVENT

    if _SWEEP_STOP_EVENT is not None:
        _SWEEP_STOP_EVENT.set()
    if _SWEEP_THREAD is not None:
        _SWEEP_THREAD.join(timeout=timeout)

    _SWEEP_THREAD = None
    _SWEEP_STOP_EVENT = None


def is_running() -> bool:
    return _SWEEP_THREAD is not None and _SWEEP_THREAD.is_alive()
