"""
Daily keep-alive write so idle database connections are not reaped.

Runs ``schedule`` jobs on a background thread. Failures are logged and
never reach request handling.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import schedule

from userstore.db import UserRepository

logger = logging.getLogger(__name__)


class KeepAliveJob:
    """Insert one default row into the keep-alive table every day at ``at``."""

    def __init__(
        self,
        repository: UserRepository,
        *,
        at: str = "06:39",
        scheduler: Optional[schedule.Scheduler] = None,
        poll_interval: float = 60.0,
        log: logging.Logger | None = None,
    ):
        self.repository = repository
        self.at = at
        self.scheduler = scheduler or schedule.Scheduler()
        self.poll_interval = poll_interval
        self.logger = log or logger
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> bool:
        try:
            self.repository.touch_keepalive()
        except Exception as exc:
            self.logger.error("Keep-alive insert failed: %s", exc)
            return False
        self.logger.debug("Keep-alive insert done")
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.scheduler.run_pending()
            except Exception as exc:
                self.logger.error("Error in keep-alive scheduler loop: %s", exc)
            self._stop.wait(self.poll_interval)

    def start(self) -> None:
        if self._thread is not None:
            self.logger.warning("Keep-alive job already running")
            return
        self.scheduler.every().day.at(self.at).do(self.run_once)
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name="keepalive-scheduler"
        )
        self._thread.start()
        self.logger.info("Keep-alive scheduled daily at %s", self.at)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self.scheduler.clear()

    @property
    def running(self) -> bool:
        return self._thread is not None
