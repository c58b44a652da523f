"""Network isolation watcher for AI sandbox containers."""

from .config import NetworkPolicy, WatcherConfig
from .iptables import Iptables, Rule, RuleManager
from .state import StateStore
from .watcher import PrivilegeError, RuntimeUnavailableError, Watcher, WatcherError

__version__ = "0.1.0"

__all__ = [
    "Iptables",
    "NetworkPolicy",
    "PrivilegeError",
    "Rule",
    "RuleManager",
    "RuntimeUnavailableError",
    "StateStore",
    "Watcher",
    "WatcherConfig",
    "WatcherError",
]
