"""Sandbox network watcher.

Keeps containers carrying the marker label away from private/LAN ranges while
letting them resolve DNS, for as long as such containers exist:

  - an event listener thread applies/removes rules on start/stop/die/destroy,
  - the main loop polls the runtime every ``check_interval`` seconds, heals
    anything the event stream missed and feeds the liveness monitor,
  - the loop ends on a stop-flag file (created by an unprivileged caller),
    SIGINT/SIGTERM, the startup grace expiring or the idle timeout,
  - every exit path runs exactly one sweep over the state records, leaving no
    rule of ours in the chain.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Optional

from docker.errors import DockerException

from .config import NetworkPolicy, WatcherConfig
from .events import EventListener
from .iptables import Iptables, RuleManager
from .liveness import LivenessMonitor, WatcherSession
from .runtime import DockerRuntime
from .state import StateStore
from .tracker import ContainerTracker

STOP_FLAG = "stop-flag"
SIGNAL = "signal"


class WatcherError(Exception):
    pass


class PrivilegeError(WatcherError):
    pass


class RuntimeUnavailableError(WatcherError):
    pass


def ensure_privileged(dry_run: bool = False):
    if dry_run:
        return
    if os.geteuid() != 0:
        raise PrivilegeError("The watcher manages iptables rules and must run as root.")


class Watcher:
    def __init__(self, policy: NetworkPolicy, config: WatcherConfig,
                 runtime: Optional[DockerRuntime] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.policy = policy
        self.config = config
        self.clock = clock
        self.runtime = runtime
        self.store = StateStore(config.state_dir)
        self.rules = RuleManager(policy, Iptables(config.chain, dry_run=config.dry_run),
                                 prefix=config.comment_prefix)
        self.tracker: Optional[ContainerTracker] = None
        self.listener: Optional[EventListener] = None
        self.session: Optional[WatcherSession] = None
        self.monitor: Optional[LivenessMonitor] = None
        self._stop = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    def request_stop(self, *_):
        """Signal handler friendly: ends the main loop at its next wait."""
        self._stop.set()

    def stop_requested(self) -> bool:
        return self.config.stop_flag.exists()

    def start(self):
        """Fatal checks, then subscribe. Raises WatcherError before touching any rule."""
        ensure_privileged(self.config.dry_run)

        try:
            if self.runtime is None:
                self.runtime = DockerRuntime()
            self.runtime.ping()
        except DockerException as e:
            raise RuntimeUnavailableError(f"Docker is not reachable: {e}")

        try:
            self.store.ensure_dir()
        except OSError as e:
            raise WatcherError(f"Cannot prepare state directory {self.config.state_dir}: {e}")
        self.tracker = ContainerTracker(self.rules, self.store, self.runtime, self.policy.label)

        try:
            stream = self.runtime.events(self.policy.label)
        except DockerException as e:
            raise RuntimeUnavailableError(f"Could not subscribe to Docker events: {e}")
        self.listener = EventListener(self.tracker, stream)
        self.listener.start()

        self.session = WatcherSession(started_at=self.clock(), stop_flag=self.config.stop_flag)
        self.monitor = LivenessMonitor(self.session, self.config.startup_grace, self.config.idle_timeout)
        logging.info(f"Watching containers labelled {self.policy.label} "
                     f"(deny {', '.join(self.policy.denied_networks)}; "
                     f"DNS {self.policy.dns_ip}:{','.join(map(str, self.policy.dns_ports))})")

    def poll(self) -> int:
        """Reconcile with the runtime; returns the running count (0 if the runtime failed)."""
        try:
            return len(self.tracker.reconcile())
        except DockerException as e:
            logging.error(f"Docker poll failed: {e}")
            return 0

    def loop(self) -> str:
        while True:
            if self.stop_requested():
                logging.info(f"Stop flag received: {self.config.stop_flag}")
                return STOP_FLAG

            reason = self.monitor.observe(self.poll(), self.clock())
            if reason:
                return reason

            if self._stop.wait(self.config.check_interval):
                logging.info("Stop requested by signal")
                return SIGNAL

    def run(self) -> str:
        self.start()
        try:
            try:
                self.tracker.reconcile(refresh=True)
            except DockerException as e:
                logging.error(f"Initial reconcile failed: {e}")
            return self.loop()
        finally:
            self.shutdown()

    def shutdown(self):
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        logging.info("Cleaning up rules...")
        # listener first, so nothing gets re-applied after the sweep
        if self.listener is not None:
            self.listener.stop()
        if self.tracker is not None:
            swept = self.tracker.sweep()
            logging.info(f"Swept {swept} container(s)")
        try:
            self.config.stop_flag.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning(f"Could not remove stop flag {self.config.stop_flag}: {e}")
        logging.info("Watcher done.")
