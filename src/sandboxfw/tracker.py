from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .iptables import RuleManager
from .runtime import DockerRuntime
from .state import StateStore


class ContainerTracker:
    """Single entry point for rule + state mutations.

    The event listener thread and the poll loop both land here; one global lock
    keeps chain positions and state records consistent between them. A record
    is written before rules are applied and deleted after they are removed, so
    no installed rule is ever without a record to sweep it by.
    """

    def __init__(self, rules: RuleManager, store: StateStore, runtime: DockerRuntime, label: str):
        self.rules = rules
        self.store = store
        self.runtime = runtime
        self.label = label
        self._lock = threading.RLock()

    def _shared(self, ip: str, container_id: str) -> bool:
        """True if a record other than ``container_id`` still holds ``ip``."""
        return any(other_ip == ip and cid != container_id for cid, other_ip in self.store.all())

    def _release(self, ip: str, container_id: str):
        # a reused IP keeps its rules while any other record holds it
        if self._shared(ip, container_id):
            logging.info(f"{ip} is now used by another sandbox, keeping its rules")
            return
        self.rules.remove(ip)

    def track(self, container_id: str) -> Optional[str]:
        with self._lock:
            ip = self.runtime.ip_of(container_id)
            if not ip:
                logging.info(f"Container {container_id[:12]} has no IP yet, will retry")
                return None

            previous = self.store.lookup(container_id)
            if previous and previous != ip:
                logging.info(f"Container {container_id[:12]} moved {previous} -> {ip}")
                self._release(previous, container_id)

            self.store.record(container_id, ip)
            self.rules.apply(ip)
            logging.info(f"Applied rules for {container_id[:12]} ({ip})")
            return ip

    def untrack(self, container_id: str) -> Optional[str]:
        with self._lock:
            ip = self.store.lookup(container_id) or self.runtime.ip_of(container_id)
            if not ip:
                logging.debug(f"No known IP for {container_id[:12]}, nothing to remove")
                return None

            self._release(ip, container_id)
            self.store.forget(container_id)
            logging.info(f"Removed rules for {container_id[:12]} ({ip})")
            return ip

    def reconcile(self, refresh: bool = False) -> List[str]:
        """Bring rules in line with what is running now; returns the running ids.

        Untracks records whose container stopped, then tracks running
        containers that have no record (all of them with ``refresh``). Stale
        records go first so a reused IP ends up owned by the live container.
        Raises DockerException if the runtime cannot be listed.
        """
        with self._lock:
            running = self.runtime.running_ids(self.label)
            recorded = {cid for cid, _ in self.store.all()}

            for cid in sorted(recorded - set(running)):
                logging.info(f"Container {cid[:12]} is gone, cleaning up")
                self.untrack(cid)

            for cid in running:
                if refresh or cid not in recorded:
                    self.track(cid)

            return running

    def sweep(self) -> int:
        with self._lock:
            count = 0
            removed = set()
            for cid, ip in self.store.all():
                if ip not in removed:
                    self.rules.remove(ip)
                    removed.add(ip)
                self.store.forget(cid)
                logging.info(f"Swept rules for {cid[:12]} ({ip})")
                count += 1
            return count
