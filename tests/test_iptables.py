"""Tests for the iptables primitives and the per-IP RuleSet manager."""

import logging
import subprocess

import pytest

from sandboxfw.config import NetworkPolicy
from sandboxfw.iptables import ACCEPT, REJECT, Iptables, Rule, RuleManager, parse_comment

IP = "172.17.0.2"
OTHER_IP = "172.17.0.3"
FOREIGN_RULE = ("-j", "RETURN")


def assert_allow_before_deny(fake, manager, ip):
    allow = [fake.index_of(r.comment) for r in manager.allow_rules(ip)]
    deny = [fake.index_of(r.comment) for r in manager.deny_rules(ip)]
    assert max(allow) < min(deny)


class TestRule:
    def test_allow_args(self):
        rule = Rule(IP, "192.168.0.1", ACCEPT, "ai-sandbox:x", "udp", 53)
        assert rule.args() == [
            "-s", IP, "-d", "192.168.0.1", "-p", "udp", "--dport", "53",
            "-m", "comment", "--comment", "ai-sandbox:x", "-j", "ACCEPT",
        ]

    def test_deny_args_have_no_port(self):
        rule = Rule(IP, "10.0.0.0/8", REJECT, "ai-sandbox:y")
        assert "-p" not in rule.args()
        assert "--dport" not in rule.args()
        assert rule.args()[-2:] == ["-j", "REJECT"]

    def test_parse_comment_quoted_and_bare(self):
        assert parse_comment('-A DOCKER-USER -s 1.2.3.4/32 -m comment --comment "a b" -j ACCEPT') == "a b"
        assert parse_comment("-A DOCKER-USER -m comment --comment tag -j REJECT") == "tag"
        assert parse_comment("-A DOCKER-USER -j RETURN") is None


class TestApply:
    def test_scenario_dns_allows_ahead_of_three_rejects(self, rules, fake_iptables):
        rules.apply(IP)

        assert len(fake_iptables.rules) == 5
        verdicts = [r[-1] for r in fake_iptables.rules]
        assert verdicts == ["ACCEPT", "ACCEPT", "REJECT", "REJECT", "REJECT"]
        allow_protos = {r[r.index("-p") + 1] for r in fake_iptables.rules[:2]}
        assert allow_protos == {"udp", "tcp"}
        for r in fake_iptables.rules[:2]:
            assert r[r.index("-d") + 1] == "192.168.0.1"
            assert r[r.index("--dport") + 1] == "53"
        denied = [r[r.index("-d") + 1] for r in fake_iptables.rules[2:]]
        assert sorted(denied) == ["10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]

    def test_apply_twice_creates_no_duplicates(self, rules, fake_iptables):
        rules.apply(IP)
        snapshot = list(fake_iptables.rules)
        rules.apply(IP)
        assert fake_iptables.rules == snapshot
        assert len(set(fake_iptables.rules)) == len(fake_iptables.rules)

    def test_ordering_holds_with_other_ips_and_foreign_rules(self, rules, fake_iptables):
        fake_iptables.rules.append(FOREIGN_RULE)
        rules.apply(IP)
        rules.apply(OTHER_IP)
        rules.apply(IP)

        assert_allow_before_deny(fake_iptables, rules, IP)
        assert_allow_before_deny(fake_iptables, rules, OTHER_IP)
        assert fake_iptables.rules[-1] == FOREIGN_RULE

    def test_deny_in_front_of_allow_gets_moved(self, rules, fake_iptables, caplog):
        caplog.set_level(logging.WARNING)
        rules.apply(IP)
        misplaced = rules.deny_rules(IP)[0]
        fake_iptables.rules.remove(tuple(misplaced.args()))
        fake_iptables.rules.insert(0, tuple(misplaced.args()))

        rules.apply(IP)

        assert_allow_before_deny(fake_iptables, rules, IP)
        assert fake_iptables.comments().count(misplaced.comment) == 1
        assert "moving it" in caplog.text

    def test_multiple_dns_ports(self, fake_iptables):
        policy = NetworkPolicy(denied_networks=("10.0.0.0/8",), dns_ip="1.1.1.1", dns_ports=(53, 5353))
        manager = RuleManager(policy, Iptables("DOCKER-USER"))
        manager.apply(IP)

        assert len(fake_iptables.rules) == 5
        assert_allow_before_deny(fake_iptables, manager, IP)

    def test_command_failure_is_logged_not_raised(self, rules, fake_iptables, caplog):
        caplog.set_level(logging.ERROR)
        fake_iptables.fail_ops = {"-I"}

        rules.apply(IP)

        assert fake_iptables.rules == []
        assert "Error running command" in caplog.text

    def test_failed_apply_heals_on_next_apply(self, rules, fake_iptables):
        fake_iptables.fail_ops = {"-I"}
        rules.apply(IP)
        fake_iptables.fail_ops = set()
        rules.apply(IP)

        assert len(fake_iptables.rules) == 5
        assert_allow_before_deny(fake_iptables, rules, IP)

    def test_runs_without_shell_and_waits_for_lock(self, rules, fake_iptables):
        rules.apply(IP)
        for call in fake_iptables.calls:
            assert call[0] == "iptables"
            assert call[1] == "-w"


class TestRemove:
    def test_round_trip_restores_chain(self, rules, fake_iptables):
        fake_iptables.rules.extend([FOREIGN_RULE, ("-s", "10.1.1.1", "-j", "DROP")])
        rules.apply(OTHER_IP)
        before = list(fake_iptables.rules)

        rules.apply(IP)
        rules.remove(IP)

        assert fake_iptables.rules == before

    def test_remove_without_rules_is_noop(self, rules, fake_iptables):
        rules.remove(IP)
        assert fake_iptables.rules == []
        assert fake_iptables.ops("-D") == []

    def test_remove_collapses_duplicates(self, rules, fake_iptables):
        rules.apply(IP)
        fake_iptables.rules.append(tuple(rules.deny_rules(IP)[0].args()))

        rules.remove(IP)

        assert fake_iptables.rules == []

    def test_remove_leaves_other_ip_alone(self, rules, fake_iptables):
        rules.apply(IP)
        rules.apply(OTHER_IP)
        rules.remove(IP)

        assert fake_iptables.comments_for(IP) == []
        assert len(fake_iptables.comments_for(OTHER_IP)) == 5

    def test_failing_delete_does_not_loop(self, rules, fake_iptables, caplog):
        caplog.set_level(logging.ERROR)
        rules.apply(IP)
        fake_iptables.fail_ops = {"-D"}

        rules.remove(IP)

        assert len(fake_iptables.rules) == 5
        assert len(fake_iptables.ops("-D")) == 5


class TestDryRun:
    def test_dry_run_executes_nothing(self, policy, fake_iptables, caplog):
        caplog.set_level(logging.INFO)
        manager = RuleManager(policy, Iptables("DOCKER-USER", dry_run=True))

        manager.apply(IP)
        manager.remove(IP)

        assert fake_iptables.calls == []
        assert caplog.text.count("[DRY-RUN]") == 5
        # denies planned right after the two head allows
        assert "DOCKER-USER 3 -s 172.17.0.2 -d 10.0.0.0/8" in caplog.text


class TestFlush:
    def test_flush_removes_only_tagged_rules(self, rules, fake_iptables):
        fake_iptables.rules.append(FOREIGN_RULE)
        rules.apply(IP)
        rules.apply(OTHER_IP)

        removed = rules.iptables.flush("ai-sandbox:")

        assert removed == 10
        assert fake_iptables.rules == [FOREIGN_RULE]

    def test_flush_on_missing_chain_returns_zero(self, fake_iptables):
        assert Iptables("NOPE").flush("ai-sandbox:") == 0


class TestMissingBinary:
    def test_missing_iptables_is_logged(self, policy, monkeypatch, caplog):
        caplog.set_level(logging.ERROR)

        def missing(*args, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", "iptables")

        monkeypatch.setattr(subprocess, "run", missing)
        RuleManager(policy, Iptables()).apply(IP)

        assert "Error running command" in caplog.text


@pytest.mark.parametrize("ip", ["172.17.0.2", "172.18.5.9", "10.88.0.4"])
def test_state_after_apply_then_remove_is_empty(policy, fake_iptables, ip):
    manager = RuleManager(policy, Iptables())
    manager.apply(ip)
    assert len(fake_iptables.rules) == 5
    manager.remove(ip)
    assert fake_iptables.rules == []
