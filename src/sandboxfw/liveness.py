from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

NEVER_SEEN = "never-seen"
SEEN = "seen"

GRACE_EXPIRED = "grace-expired"
IDLE = "idle"


@dataclass
class WatcherSession:
    started_at: float
    stop_flag: Path
    seen_once: bool = False
    none_since: Optional[float] = None


class LivenessMonitor:
    """Decides when the watcher has nothing left to guard.

    Before any sandbox container was seen, the watcher waits ``startup_grace``
    seconds from launch. Once one was seen, it waits ``idle_timeout`` seconds
    after the last one disappeared. The grace period no longer applies after
    the first sighting.
    """

    def __init__(self, session: WatcherSession, startup_grace: float, idle_timeout: float):
        self.session = session
        self.startup_grace = startup_grace
        self.idle_timeout = idle_timeout

    @property
    def state(self) -> str:
        return SEEN if self.session.seen_once else NEVER_SEEN

    def observe(self, running: int, now: float) -> Optional[str]:
        """Feed one poll result; returns a termination reason or None."""
        session = self.session

        if running > 0:
            if not session.seen_once:
                logging.info(f"Sandbox container detected ({running} running)")
            elif session.none_since is not None:
                logging.info(f"Sandbox container back ({running} running), idle timer reset")
            session.seen_once = True
            session.none_since = None
            return None

        if not session.seen_once:
            since_start = now - session.started_at
            if since_start >= self.startup_grace:
                logging.info(f"No container started within {self.startup_grace:g}s grace -> stopping.")
                return GRACE_EXPIRED
            logging.info(f"No container yet ({since_start:.0f}s / {self.startup_grace:g}s grace)")
            return None

        if session.none_since is None:
            session.none_since = now
        idle_for = now - session.none_since
        if idle_for >= self.idle_timeout:
            logging.info(f"No sandbox container for {self.idle_timeout:g}s -> stopping.")
            return IDLE
        remaining = max(self.idle_timeout - idle_for, 0)
        logging.info(f"No container for {idle_for:.0f}s (idle-stop in {remaining:.0f}s)")
        return None
