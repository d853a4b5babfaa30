"""
Vigil Context Probes

Default fact-gathering probes (working directory, git, environment,
container, remote session, CI, clock) and the ProbeRunner that issues
them concurrently and joins with a timeout.

Each probe is a zero-argument callable returning a value. A probe that
raises, or that is not back before the timeout, yields UNAVAILABLE.
Probes are never retried.
"""
from __future__ import annotations

import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from vigil.errors import ProbeUnavailable

logger = logging.getLogger(__name__)

Probe = Callable[[], Any]

# Probe names understood by the snapshot builder
WORKING_DIR = "working_dir"
GIT = "git"
ENVIRONMENT = "environment"
CONTAINER = "container"
REMOTE_SESSION = "remote_session"
CI = "ci"
CLOCK = "clock"

PROBE_NAMES = (WORKING_DIR, GIT, ENVIRONMENT, CONTAINER, REMOTE_SESSION, CI, CLOCK)

CI_ENV_VARS = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "BUILDKITE", "JENKINS_URL",
               "CIRCLECI", "TF_BUILD")
REMOTE_ENV_VARS = ("SSH_CONNECTION", "SSH_CLIENT", "SSH_TTY")
CONTAINER_MARKERS = ("/.dockerenv", "/run/.containerenv")
CGROUP_MARKERS = ("docker", "kubepods", "containerd", "lxc", "podman")


class _Unavailable:
    """Explicit 'this probe has no answer' signal."""

    _instance: Optional[_Unavailable] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNAVAILABLE"

    def __bool__(self) -> bool:
        return False


UNAVAILABLE = _Unavailable()


# =============================================================================
# Default probes
# =============================================================================


def probe_working_dir(cwd: Optional[str] = None) -> str:
    return str(Path(cwd).resolve()) if cwd else os.getcwd()


def probe_git(cwd: Optional[str] = None, timeout: float = 2.0) -> Dict[str, Any]:
    """Branch and dirty state of the repository containing cwd.

    A directory outside any repository is a valid answer ({"is_repo": False}),
    not an unavailable probe.
    """
    def git(*args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True, timeout=timeout,
        )

    try:
        inside = git("rev-parse", "--is-inside-work-tree")
        if inside.returncode != 0 or inside.stdout.strip() != "true":
            return {"is_repo": False, "branch": None, "dirty": False}
        branch = git("rev-parse", "--abbrev-ref", "HEAD")
        status = git("status", "--porcelain")
    except FileNotFoundError as e:
        raise ProbeUnavailable(GIT, "git executable not found") from e
    except (subprocess.TimeoutExpired, OSError) as e:
        raise ProbeUnavailable(GIT, str(e)) from e

    if branch.returncode != 0 or status.returncode != 0:
        raise ProbeUnavailable(GIT, (branch.stderr or status.stderr).strip())

    return {
        "is_repo": True,
        "branch": branch.stdout.strip() or None,
        "dirty": bool(status.stdout.strip()),
    }


def probe_environment(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    return dict(environ if environ is not None else os.environ)


def probe_container() -> bool:
    if any(Path(marker).exists() for marker in CONTAINER_MARKERS):
        return True
    cgroup = Path("/proc/1/cgroup")
    if cgroup.exists():
        try:
            content = cgroup.read_text()
        except OSError as e:
            raise ProbeUnavailable(CONTAINER, str(e)) from e
        return any(marker in content for marker in CGROUP_MARKERS)
    return False


def probe_remote_session(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = environ if environ is not None else os.environ
    return any(env.get(var) for var in REMOTE_ENV_VARS)


def probe_ci(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = environ if environ is not None else os.environ
    for var in CI_ENV_VARS:
        value = env.get(var, "")
        if value and value.lower() not in ("0", "false", "no"):
            return True
    return False


def probe_clock() -> datetime:
    """Local wall-clock time (the hour drives off-hours detection)."""
    return datetime.now().astimezone()


def default_probes(
    cwd: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    git_timeout: float = 2.0,
) -> Dict[str, Probe]:
    """The standard probe set, bound to a working directory and environment."""
    return {
        WORKING_DIR: lambda: probe_working_dir(cwd),
        GIT: lambda: probe_git(cwd, timeout=git_timeout),
        ENVIRONMENT: lambda: probe_environment(environ),
        CONTAINER: probe_container,
        REMOTE_SESSION: lambda: probe_remote_session(environ),
        CI: lambda: probe_ci(environ),
        CLOCK: probe_clock,
    }


# =============================================================================
# Runner
# =============================================================================


class ProbeRunner:
    """Issues probes concurrently and joins them with a timeout."""

    def __init__(self, probes: Mapping[str, Probe], timeout: float = 2.0):
        self.probes = dict(probes)
        self.timeout = timeout

    def _call(self, name: str, probe: Probe) -> Any:
        try:
            return probe()
        except ProbeUnavailable as e:
            logger.info("Probe %s unavailable: %s", name, e)
        except Exception as e:
            # Collaborator probes may fail in any way; degrade rather than abort
            logger.warning("Probe %s failed: %s: %s", name, type(e).__name__, e)
        return UNAVAILABLE

    def run(self) -> Dict[str, Any]:
        """Probe results keyed by name; late or failed probes are UNAVAILABLE."""
        if not self.probes:
            return {}
        results: Dict[str, Any] = {name: UNAVAILABLE for name in self.probes}
        executor = ThreadPoolExecutor(
            max_workers=len(self.probes), thread_name_prefix="vigil-probe"
        )
        try:
            futures = {
                executor.submit(self._call, name, probe): name
                for name, probe in self.probes.items()
            }
            done, not_done = wait(futures, timeout=self.timeout)
            for future in done:
                results[futures[future]] = future.result()
            for future in not_done:
                logger.info("Probe %s timed out after %.1fs", futures[future], self.timeout)
        finally:
            # Don't block on stragglers; their results are discarded
            executor.shutdown(wait=False, cancel_futures=True)
        return results
