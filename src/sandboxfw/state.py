from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Iterator, Optional, Tuple

SUFFIX = ".ip"
_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")


class StateStore:
    """Container id -> last known IP, one ``<id>.ip`` file per container.

    Lives under a volatile directory (``/run``) so it survives the container but
    not a reboot. It is what lets rules be removed after the runtime has
    forgotten the container's address.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._lock = threading.Lock()

    def ensure_dir(self):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.state_dir, 0o700)

    def _path(self, container_id: str) -> Path:
        if not _ID_PATTERN.match(container_id or ""):
            raise ValueError(f"Invalid container id: {container_id!r}")
        return self.state_dir / f"{container_id}{SUFFIX}"

    def record(self, container_id: str, ip: str):
        path = self._path(container_id)
        with self._lock:
            fd, tmp = tempfile.mkstemp(dir=self.state_dir, prefix=".tmp-")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(f"{ip}\n")
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logging.debug(f"Recorded {container_id[:12]} -> {ip}")

    def lookup(self, container_id: str) -> Optional[str]:
        path = self._path(container_id)
        try:
            ip = path.read_text().strip()
        except FileNotFoundError:
            return None
        return ip or None

    def forget(self, container_id: str):
        path = self._path(container_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
        logging.debug(f"Forgot {container_id[:12]}")

    def all(self) -> Iterator[Tuple[str, str]]:
        """Yield (container_id, ip) for every record; call again to restart."""
        if not self.state_dir.is_dir():
            return
        for path in sorted(self.state_dir.glob(f"*{SUFFIX}")):
            try:
                ip = path.read_text().strip()
            except FileNotFoundError:
                continue  # forgotten concurrently
            except OSError as e:
                logging.warning(f"Skipping unreadable state record {path}: {e}")
                continue
            if not ip:
                logging.warning(f"Skipping empty state record {path}")
                continue
            yield path.name[:-len(SUFFIX)], ip
