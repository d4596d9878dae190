"""Watch markdown files and reconcile their comment anchors after each save.

Editors that know nothing about markco still keep comments attached: every
debounced modification of a watched file triggers a reconciliation pass,
which relocates moved anchors and orphans deleted ones. The pass rewrites
the file only when something changed, so the write it causes settles on
the next (no-op) pass.
"""

import asyncio
import signal
import threading
import time
from collections.abc import Callable
from pathlib import Path
from threading import Event, Timer
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from markco.config import Settings, get_settings
from markco.document import FileDocument
from markco.logging import get_logger
from markco.models import ReconciliationReport
from markco.service import CommentService


def _event_path(raw: str | bytes) -> Path:
    # src_path can be str or bytes
    return Path(raw if isinstance(raw, str) else raw.decode("utf-8")).resolve()


def reconcile_file(path: Path, settings: Settings | None = None) -> ReconciliationReport:
    """Reload a file from disk and run one reconciliation pass on it."""
    service = CommentService(settings=settings)
    return asyncio.run(service.reconcile_anchors(FileDocument(path)))


class DebouncedReconciler(FileSystemEventHandler):
    """Schedules one reconciliation per file after its changes settle.

    Each watched file has its own timer; a new event for the file restarts
    it. Passes run one at a time.
    """

    def __init__(
        self,
        paths: list[Path],
        debounce_seconds: float,
        settings: Settings | None = None,
        on_report: Callable[[Path, ReconciliationReport], None] | None = None,
    ) -> None:
        self.paths = {p.resolve() for p in paths}
        self.debounce_seconds = debounce_seconds
        self.settings = settings
        self.on_report = on_report
        self.timers: dict[Path, Timer] = {}
        self.shutdown_event = Event()
        self._run_lock = threading.Lock()

    def _watched_paths(self, event: FileSystemEvent) -> list[Path]:
        if event.is_directory:
            return []
        candidates = [_event_path(event.src_path)]
        # Editors that save through a temp file + rename report a move
        dest = getattr(event, "dest_path", None)
        if dest:
            candidates.append(_event_path(dest))
        return [p for p in candidates if p in self.paths]

    def _reconcile(self, path: Path) -> None:
        logger = get_logger()
        with self._run_lock:
            if self.shutdown_event.is_set():
                return
            try:
                report = reconcile_file(path, self.settings)
            except FileNotFoundError:
                logger.warning(f"Watched file disappeared: {path}")
                return
            except Exception as e:
                logger.exception(f"Reconciliation failed for {path}", e)
                return

        logger.debug(
            "Reconciled",
            path=str(path),
            relocated=report.relocated_count,
            orphaned=report.orphaned_count,
            saved=report.saved,
        )
        if self.on_report is not None:
            self.on_report(path, report)

    def schedule(self, path: Path) -> None:
        """Restart the debounce timer for path."""
        timer = self.timers.get(path)
        if timer is not None:
            timer.cancel()
        timer = Timer(self.debounce_seconds, self._reconcile, args=(path,))
        timer.daemon = True
        self.timers[path] = timer
        timer.start()

    def on_modified(self, event: FileSystemEvent) -> None:
        for path in self._watched_paths(event):
            get_logger().debug("Change detected", path=str(path))
            self.schedule(path)

    on_created = on_modified
    on_moved = on_modified

    def shutdown(self) -> None:
        """Cancel pending timers and stop accepting work."""
        for timer in self.timers.values():
            timer.cancel()
        self.shutdown_event.set()


def watch_files(
    paths: list[Path],
    settings: Settings | None = None,
    on_report: Callable[[Path, ReconciliationReport], None] | None = None,
) -> None:
    """
    Block until interrupted, reconciling each file after it is saved.

    Args:
        paths: Markdown files to watch (their directories are observed)
        settings: Settings providing the debounce period
        on_report: Called with each pass's report
    """
    settings = settings or get_settings()
    logger = get_logger()

    handler = DebouncedReconciler(
        paths, settings.watch_debounce, settings=settings, on_report=on_report
    )
    observer = Observer()
    for directory in sorted({p.parent for p in handler.paths}):
        observer.schedule(handler, str(directory), recursive=False)

    def signal_handler(sig: int, frame: Any) -> None:
        handler.shutdown()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(f"Watching {len(handler.paths)} file(s), debounce {settings.watch_debounce}s")
    observer.start()
    try:
        while not handler.shutdown_event.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        handler.shutdown()
    finally:
        observer.stop()
        observer.join()
        logger.info("Watcher stopped")
