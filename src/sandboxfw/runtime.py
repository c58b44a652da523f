from __future__ import annotations

import logging
from typing import List, Optional

from docker import from_env
from docker.errors import DockerException, NotFound

LIFECYCLE_EVENTS = ("start", "stop", "die", "destroy")


class DockerRuntime:
    """The few Docker queries the watcher needs."""

    def __init__(self, client=None):
        self.client = client if client is not None else from_env()

    def ping(self):
        self.client.ping()

    def ip_of(self, container_id: str) -> Optional[str]:
        """First bridge IPv4 address of the container, or None if it has none (yet).

        Only the first network with an address is reported, so a container
        attached to several networks is firewalled on that one address only.
        """
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return None
        except DockerException as e:
            logging.warning(f"Could not inspect container {container_id[:12]}: {e}")
            return None

        networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
        for network_name, network in networks.items():
            ip_address = (network or {}).get("IPAddress")
            if ip_address:
                return ip_address
        return None

    def running_ids(self, label: str) -> List[str]:
        """Ids of running containers carrying ``label``. Raises DockerException."""
        return [c.id for c in self.client.containers.list(filters={"label": label})]

    def events(self, label: str):
        """Subscribe to lifecycle events of labelled containers; the stream has ``close()``."""
        filters = {"type": "container", "label": [label], "event": list(LIFECYCLE_EVENTS)}
        return self.client.events(decode=True, filters=filters)
