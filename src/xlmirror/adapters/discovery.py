"""Credential discovery over an explicit, configured list of connection profiles.

Nothing here guesses passwords: the caller supplies every candidate, and
each attempt is logged at warning level so that discovery never happens
silently.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable, Sequence

from xlmirror.adapters.sql_mirror import describe_url, probe, profile_url
from xlmirror.contracts.errors import MirrorConnectionError, QueryError
from xlmirror.contracts.mirror import ConnectionProfile
from xlmirror.observe.logging import get_logger

log = get_logger(__name__)

DEFAULT_SERVICE_COMMANDS = (
    "systemctl start mysql",
    "systemctl start mariadb",
    "net start mysql",
    "net start mysql80",
    "net start mysql57",
    "net start mariadb",
    "sc start mysql",
)
SERVICE_TIMEOUT = 10.0
# Non-zero exits that still mean the server is up
ALREADY_RUNNING = ("already been started", "already running", "is running", "start/running")


def probe_profile(profile: ConnectionProfile) -> None:
    """Raise :class:`MirrorConnectionError` unless ``SELECT 1`` succeeds with ``profile``."""
    probe(profile_url(profile))


def _try_all(
    candidates: Sequence[ConnectionProfile],
    probe: Callable[[ConnectionProfile], None],
    round_no: int,
) -> ConnectionProfile | None:
    for position, profile in enumerate(candidates, start=1):
        log.warning(
            "discovery.attempt",
            profile=profile.label(),
            url=describe_url(profile_url(profile)),
            position=position,
            round=round_no,
        )
        try:
            probe(profile)
        except (MirrorConnectionError, QueryError) as exc:
            log.warning("discovery.rejected", profile=profile.label(), error=exc.message)
            continue
        log.warning("discovery.connected", profile=profile.label())
        return profile
    return None


def discover_connection(
    candidates: Sequence[ConnectionProfile],
    probe: Callable[[ConnectionProfile], None] = probe_profile,
    start_service: Callable[[], bool] | None = None,
    settle_seconds: float = 3.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ConnectionProfile | None:
    """First candidate that answers a probe, in list order.

    When every candidate fails and ``start_service`` is given and reports
    success, the whole list is tried exactly once more after
    ``settle_seconds``.
    """
    if not candidates:
        log.warning("discovery.no_candidates")
        return None
    found = _try_all(candidates, probe, round_no=1)
    if found is not None or start_service is None:
        return found
    log.warning("discovery.starting_service")
    if not start_service():
        log.warning("discovery.service_not_started")
        return None
    sleep(settle_seconds)
    return _try_all(candidates, probe, round_no=2)


def start_backing_service(
    commands: Sequence[str] = DEFAULT_SERVICE_COMMANDS,
    *,
    timeout: float = SERVICE_TIMEOUT,
    runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
) -> bool:
    """Try each service command until one reports the server started or already running."""
    for command in commands:
        args = shlex.split(command)
        if not args:
            continue
        try:
            proc = runner(args, capture_output=True, text=True, timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.warning("service.command_failed", command=command, error=str(exc))
            continue
        output = f"{proc.stdout or ''}\n{proc.stderr or ''}".lower()
        if proc.returncode == 0 or any(marker in output for marker in ALREADY_RUNNING):
            log.warning("service.started", command=command, returncode=proc.returncode)
            return True
        log.warning("service.command_failed", command=command, returncode=proc.returncode)
    return False
