from __future__ import annotations

import logging
import threading

from docker.errors import DockerException

from .tracker import ContainerTracker

APPLY_EVENTS = {"start"}
REMOVE_EVENTS = {"stop", "die", "destroy"}


class EventListener(threading.Thread):
    """Follows the Docker event stream for labelled containers.

    Runs until ``stop()`` closes the stream. A broken stream ends the
    subscription without reconnecting; the poll loop and the final sweep
    cover whatever is missed after that.
    """

    def __init__(self, tracker: ContainerTracker, stream):
        super().__init__(name="sandboxfw-events", daemon=True)
        self.tracker = tracker
        self.stream = stream
        self._closing = threading.Event()

    def handle_event(self, event: dict):
        action = event.get("status") or event.get("Action")
        container_id = event.get("id") or event.get("Actor", {}).get("ID")
        if not container_id:
            return

        try:
            if action in APPLY_EVENTS:
                logging.info(f"Container {container_id[:12]} {action}, applying rules")
                self.tracker.track(container_id)
            elif action in REMOVE_EVENTS:
                logging.info(f"Container {container_id[:12]} {action}, removing rules")
                self.tracker.untrack(container_id)
        except Exception as e:
            logging.error(f"Error handling {action} event for {container_id[:12]}: {e}")

    def run(self):
        logging.info("Listening for Docker events...")
        try:
            for event in self.stream:
                if self._closing.is_set():
                    break
                self.handle_event(event)
        except DockerException as e:
            if not self._closing.is_set():
                logging.error(f"Docker event stream lost: {e}. Falling back to polling.")
        except Exception as e:
            # closing the stream from another thread surfaces as a socket/IO error
            if not self._closing.is_set():
                logging.error(f"Docker event stream failed: {e}. Falling back to polling.")
        logging.debug("Event listener finished")

    def stop(self, timeout: float = 5.0):
        self._closing.set()
        try:
            self.stream.close()
        except Exception as e:
            logging.debug(f"Error closing event stream: {e}")
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)
