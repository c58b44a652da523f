"""iptables backend for the sandbox network policy.

Every sandbox container IP gets one RuleSet in a single filter chain
(``DOCKER-USER`` by default, evaluated first-match-wins for forwarded traffic):

    -I 1  -s <ip> -d <dns_ip> -p udp --dport 53  ... -j ACCEPT   (dns-udp-53)
    -I 1  -s <ip> -d <dns_ip> -p tcp --dport 53  ... -j ACCEPT   (dns-tcp-53)
    -I N  -s <ip> -d 10.0.0.0/8                 ... -j REJECT   (deny-10.0.0.0/8)
    ...

Ordering rule: DNS allow entries always go to the head of the chain, deny
entries go directly after the last allow entry of the same IP. Relative order
among deny entries, and between different IPs, is irrelevant.

Each entry carries a comment ``<prefix>:<ip>:<kind>`` so it can be located in
``iptables -S`` output and flushed wholesale.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import DEFAULT_CHAIN, DEFAULT_COMMENT_PREFIX, NetworkPolicy

ACCEPT = "ACCEPT"
REJECT = "REJECT"


@dataclass(frozen=True)
class Rule:
    source: str
    destination: str
    verdict: str
    comment: str
    protocol: Optional[str] = None
    port: Optional[int] = None

    def args(self) -> List[str]:
        args = ["-s", self.source, "-d", self.destination]
        if self.protocol:
            args += ["-p", self.protocol]
        if self.port is not None:
            args += ["--dport", str(self.port)]
        args += ["-m", "comment", "--comment", self.comment, "-j", self.verdict]
        return args


def parse_comment(line: str) -> Optional[str]:
    """Extract the --comment value from one line of ``iptables -S`` output."""
    try:
        parts = shlex.split(line)
    except ValueError:
        return None
    if "--comment" not in parts:
        return None
    idx = parts.index("--comment") + 1
    return parts[idx] if idx < len(parts) else None


class Iptables:
    """Check / insert / delete / list primitives for one chain."""

    def __init__(self, chain: str = DEFAULT_CHAIN, binary: str = "iptables", dry_run: bool = False):
        self.chain = chain
        self.binary = binary
        self.dry_run = dry_run

    def _exec(self, args: List[str]) -> subprocess.CompletedProcess:
        # -w: wait for the xtables lock instead of failing when docker holds it
        return subprocess.run([self.binary, "-w", *args], check=True,
                              stdout=subprocess.PIPE, stderr=subprocess.PIPE)

    def run(self, args: List[str]) -> bool:
        command = shlex.join([self.binary, *args])
        if self.dry_run:
            logging.info(f"[DRY-RUN] {command}")
            return True
        logging.info(f"Running command: {command}")
        try:
            self._exec(args)
        except subprocess.CalledProcessError as e:
            logging.error(f"Error running command: {command}\n{e.stderr.decode(errors='ignore')}")
            return False
        except OSError as e:
            logging.error(f"Error running command: {command}\n{e}")
            return False
        return True

    def exists(self, rule: Rule) -> bool:
        if self.dry_run:
            return False
        try:
            self._exec(["-C", self.chain, *rule.args()])
        except (subprocess.CalledProcessError, OSError):
            return False
        return True

    def insert(self, rule: Rule, position: int = 1) -> bool:
        return self.run(["-I", self.chain, str(position), *rule.args()])

    def delete(self, rule: Rule) -> bool:
        return self.run(["-D", self.chain, *rule.args()])

    def delete_number(self, number: int) -> bool:
        return self.run(["-D", self.chain, str(number)])

    def list_rules(self) -> List[str]:
        """Return the ``-A`` lines of the chain; index + 1 is the rule number."""
        if self.dry_run:
            return []
        try:
            result = self._exec(["-S", self.chain])
        except subprocess.CalledProcessError as e:
            logging.error(f"Could not list chain {self.chain}: {e.stderr.decode(errors='ignore')}")
            return []
        except OSError as e:
            logging.error(f"Could not list chain {self.chain}: {e}")
            return []
        return [line for line in result.stdout.decode().splitlines() if line.startswith("-A ")]

    def positions(self, prefix: str) -> Dict[str, List[int]]:
        """Map each comment starting with ``prefix`` to the rule numbers carrying it."""
        found: Dict[str, List[int]] = {}
        for number, line in enumerate(self.list_rules(), start=1):
            comment = parse_comment(line)
            if comment and comment.startswith(prefix):
                found.setdefault(comment, []).append(number)
        return found

    def flush(self, prefix: str) -> int:
        """Delete every entry whose comment starts with ``prefix``; returns how many went."""
        numbers = [n for n, line in enumerate(self.list_rules(), start=1)
                   if (parse_comment(line) or "").startswith(prefix)]
        removed = 0
        # highest first so the remaining numbers stay valid
        for number in sorted(numbers, reverse=True):
            if self.delete_number(number):
                removed += 1
        logging.info(f"Flushed {removed} rule(s) tagged {prefix!r} from {self.chain}")
        return removed


class RuleManager:
    """Idempotent apply/remove of the DNS-allow + LAN-deny RuleSet for one IP.

    Not thread-safe on its own: chain positions are read then written, so
    callers serialize (see ContainerTracker).
    """

    def __init__(self, policy: NetworkPolicy, iptables: Iptables, prefix: str = DEFAULT_COMMENT_PREFIX):
        self.policy = policy
        self.iptables = iptables
        self.prefix = prefix

    def _tag_prefix(self, ip: str) -> str:
        return f"{self.prefix}:{ip}:"

    def allow_rules(self, ip: str) -> List[Rule]:
        rules = []
        for port in self.policy.dns_ports:
            for proto in self.policy.dns_protocols:
                rules.append(Rule(ip, self.policy.dns_ip, ACCEPT,
                                  f"{self._tag_prefix(ip)}dns-{proto}-{port}", proto, port))
        return rules

    def deny_rules(self, ip: str) -> List[Rule]:
        return [Rule(ip, net, REJECT, f"{self._tag_prefix(ip)}deny-{net}")
                for net in self.policy.denied_networks]

    def rules_for(self, ip: str) -> List[Rule]:
        return self.allow_rules(ip) + self.deny_rules(ip)

    def _last_allow(self, ip: str, positions: Dict[str, List[int]]) -> int:
        allow = self.allow_rules(ip)
        numbers = [n for rule in allow for n in positions.get(rule.comment, [])]
        # nothing listed (dry-run): the allows were just inserted at the head
        return max(numbers) if numbers else len(allow)

    def apply(self, ip: str):
        for rule in self.allow_rules(ip):
            if self.iptables.exists(rule):
                logging.debug(f"Rule already exists: {rule.comment}")
                continue
            self.iptables.insert(rule, 1)

        for rule in self.deny_rules(ip):
            positions = self.iptables.positions(self._tag_prefix(ip))
            last_allow = self._last_allow(ip, positions)
            placed = positions.get(rule.comment, [])

            while placed and min(placed) < last_allow:
                logging.warning(f"{rule.comment} sits before a DNS allow rule, moving it")
                if not self.iptables.delete(rule):
                    break
                positions = self.iptables.positions(self._tag_prefix(ip))
                last_allow = self._last_allow(ip, positions)
                placed = positions.get(rule.comment, [])

            if placed:
                logging.debug(f"Rule already exists: {rule.comment}")
                continue
            self.iptables.insert(rule, last_allow + 1)

    def remove(self, ip: str):
        for rule in self.rules_for(ip):
            # loop collapses duplicates; a failed delete ends it
            while self.iptables.exists(rule):
                if not self.iptables.delete(rule):
                    break
