"""Tests for credential discovery and backing service start."""

from __future__ import annotations

import subprocess

from xlmirror.adapters.discovery import discover_connection, start_backing_service
from xlmirror.contracts.errors import MirrorConnectionError
from xlmirror.contracts.mirror import ConnectionProfile

CANDIDATES = [
    ConnectionProfile(user="root", password=""),
    ConnectionProfile(user="root", password="root"),
    ConnectionProfile(user="app", password="app", port=3307),
]


class FakeServer:
    """Accepts one login once ``up`` is True."""

    def __init__(self, accepts: str | None, up: bool = True) -> None:
        self.accepts = accepts
        self.up = up
        self.tried: list[str] = []

    def probe(self, profile: ConnectionProfile) -> None:
        self.tried.append(profile.label())
        if not self.up or profile.password.get_secret_value() != self.accepts:
            raise MirrorConnectionError(f"rejected {profile.label()}")


def test_first_working_candidate_in_order():
    server = FakeServer(accepts="root")
    found = discover_connection(CANDIDATES, probe=server.probe)
    assert found is CANDIDATES[1]
    assert server.tried == ["root@localhost:3306", "root@localhost:3306"]


def test_none_when_nothing_connects():
    server = FakeServer(accepts="nope")
    assert discover_connection(CANDIDATES, probe=server.probe) is None
    assert len(server.tried) == 3


def test_empty_candidate_list():
    assert discover_connection([], probe=lambda p: None) is None


def test_retries_once_after_service_start():
    server = FakeServer(accepts="app", up=False)
    slept: list[float] = []

    def start() -> bool:
        server.up = True
        return True

    found = discover_connection(CANDIDATES, probe=server.probe, start_service=start, settle_seconds=2.5, sleep=slept.append)
    assert found is CANDIDATES[2]
    assert slept == [2.5]
    assert len(server.tried) == 6


def test_no_second_round_when_service_does_not_start():
    server = FakeServer(accepts="root", up=False)
    found = discover_connection(CANDIDATES, probe=server.probe, start_service=lambda: False, sleep=lambda _: None)
    assert found is None
    assert len(server.tried) == 3


def _completed(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_service_start_tries_commands_in_order():
    seen: list[list[str]] = []

    def runner(args, **kwargs):
        seen.append(args)
        return _completed(0) if args[-1] == "mariadb" else _completed(5, stderr="Unit not found")

    assert start_backing_service(["systemctl start mysql", "systemctl start mariadb"], runner=runner) is True
    assert seen == [["systemctl", "start", "mysql"], ["systemctl", "start", "mariadb"]]


def test_service_already_running_counts_as_started():
    def runner(args, **kwargs):
        return _completed(2, stdout="The requested service has already been started.")

    assert start_backing_service(["net start mysql"], runner=runner) is True


def test_service_start_failures():
    def runner(args, **kwargs):
        if args[0] == "missing":
            raise FileNotFoundError(args[0])
        if args[0] == "slow":
            raise subprocess.TimeoutExpired(args, 10)
        return _completed(1, stderr="access denied")

    assert start_backing_service(["missing cmd", "slow cmd", "denied cmd", ""], runner=runner) is False
