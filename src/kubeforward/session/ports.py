"""
Local port selection.

Each port entry keeps the local port it was last given, and no two entries
are ever handed the same local port during a run.
"""

import socket
from typing import Callable

from kubeforward.exceptions import SetupError
from kubeforward.models.entries import EntryKey, PortEntry
from kubeforward.utils.logger import get_logger

logger = get_logger(__name__)

# Attempts at drawing an ephemeral port not reserved by another entry
_EPHEMERAL_ATTEMPTS = 32


def is_port_free(host: str, port: int) -> bool:
    """Whether a listener could bind host:port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        # asyncio.start_server sets SO_REUSEADDR too; probe the same way
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(host: str) -> int:
    """Let the OS pick a free ephemeral port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class LocalPortAllocator:
    """
    Picks local ports for port entries.

    Order of preference: the entry's last-used port, the remote port number
    (when prefer_remote_port), then an ephemeral port. A port given to an
    entry stays reserved for it until the entry moves to another port.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        prefer_remote_port: bool = True,
        probe: Callable[[str, int], bool] = is_port_free,
        ephemeral: Callable[[str], int] = find_free_port,
    ):
        self.host = host
        self.prefer_remote_port = prefer_remote_port
        self._probe = probe
        self._ephemeral = ephemeral
        self._owners: dict[int, EntryKey] = {}
        self._last: dict[EntryKey, int] = {}

    def last_port(self, key: EntryKey) -> int | None:
        return self._last.get(key)

    def owner(self, port: int) -> EntryKey | None:
        return self._owners.get(port)

    def allocate(self, entry: PortEntry) -> int:
        """
        Choose a local port for an entry and reserve it.

        Raises:
            SetupError: No free port could be found.
        """
        key = entry.key
        candidates = []
        if key in self._last:
            candidates.append(self._last[key])
        if self.prefer_remote_port and entry.remote_port not in candidates:
            candidates.append(entry.remote_port)

        for port in candidates:
            if self._usable(key, port) and self._probe(self.host, port):
                return self._reserve(key, port)

        for _ in range(_EPHEMERAL_ATTEMPTS):
            try:
                port = self._ephemeral(self.host)
            except OSError as e:
                raise SetupError(f"Cannot allocate a local port: {e}") from e
            if self._usable(key, port):
                return self._reserve(key, port)

        raise SetupError(f"No free local port for {entry.display_name}")

    def _usable(self, key: EntryKey, port: int) -> bool:
        owner = self._owners.get(port)
        return owner is None or owner == key

    def _reserve(self, key: EntryKey, port: int) -> int:
        previous = self._last.get(key)
        if previous is not None and previous != port:
            # The entry moved; its old port may go to someone else
            self._owners.pop(previous, None)
            logger.debug(f"Local port {previous} released by {key}")
        self._owners[port] = key
        self._last[key] = port
        return port
