"""Shared fixtures: an in-memory iptables chain and a scriptable Docker runtime."""

import subprocess

import pytest

from sandboxfw.config import NetworkPolicy, WatcherConfig
from sandboxfw.iptables import Iptables, RuleManager
from sandboxfw.state import StateStore

from .fakes import CHAIN, FakeIptables, FakeRuntime


@pytest.fixture
def policy() -> NetworkPolicy:
    return NetworkPolicy(
        denied_networks=("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"),
        dns_ip="192.168.0.1",
        dns_ports=(53,),
    )


@pytest.fixture
def fake_iptables(monkeypatch) -> FakeIptables:
    fake = FakeIptables()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


@pytest.fixture
def rules(policy, fake_iptables) -> RuleManager:
    return RuleManager(policy, Iptables(CHAIN))


@pytest.fixture
def store(tmp_path) -> StateStore:
    s = StateStore(tmp_path / "state")
    s.ensure_dir()
    return s


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def watcher_config(tmp_path) -> WatcherConfig:
    return WatcherConfig(
        stop_flag=tmp_path / "stop.flag",
        state_dir=tmp_path / "run",
        check_interval=5,
        idle_timeout=30,
        startup_grace=60,
    )
