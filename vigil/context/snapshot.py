"""
Vigil Context Snapshot Builder

Pure assembly of a ContextSnapshot from already-fetched probe results.
No I/O happens here.

Fails closed: an UNAVAILABLE, missing or malformed probe value (a clock
that is neither a datetime nor an hour 0..23, git or environment facts that
are not mappings, flags that are not bools) degrades its fields to the
value that raises perceived risk:

    git            -> production-like, uncommitted changes, branch unknown
    environment    -> production-like
    ci             -> treated as CI
    remote_session -> treated as remote
    container      -> treated as NOT containerized (the container modifier lowers risk)
    clock          -> hour -1, which counts as off-hours
    working_dir    -> empty, so no test-directory discount applies

The builder also owns the session's sliding window of recent operations
(FIFO, bounded by context.window_size).
"""
from __future__ import annotations

import logging
import os
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from vigil.config.models import ContextConfig
from vigil.context.probes import (
    CI,
    CLOCK,
    CONTAINER,
    ENVIRONMENT,
    GIT,
    REMOTE_SESSION,
    UNAVAILABLE,
    WORKING_DIR,
)
from vigil.rules.modifiers import branch_is_production
from vigil.schemas import ContextSnapshot, Operation

logger = logging.getLogger(__name__)

# What each degraded probe was assumed to be; surfaced as Decision reasons
DEGRADED_NOTES: Dict[str, str] = {
    GIT: "git state unknown, treated as production with uncommitted changes",
    ENVIRONMENT: "environment unknown, treated as production",
    CI: "CI status unknown, treated as CI",
    REMOTE_SESSION: "session origin unknown, treated as remote",
    CONTAINER: "container status unknown, treated as host",
    CLOCK: "clock unknown, treated as off-hours",
    WORKING_DIR: "working directory unknown",
}


def _is_unavailable(results: Mapping[str, Any], name: str) -> bool:
    return results.get(name, UNAVAILABLE) is UNAVAILABLE


def _clock_hour(value: Any) -> Optional[int]:
    """Hour of day from a datetime or a bare 0..23 int; None if neither."""
    if isinstance(value, datetime):
        return value.hour
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 23:
        return value
    return None


def _well_formed(name: str, value: Any) -> bool:
    """Whether an available probe value has the shape its probe promises."""
    if name == WORKING_DIR:
        return isinstance(value, (str, os.PathLike)) and bool(str(value))
    if name == GIT:
        return isinstance(value, Mapping) and isinstance(value.get("branch"), (str, type(None)))
    if name == ENVIRONMENT:
        return isinstance(value, Mapping)
    if name in (CI, REMOTE_SESSION, CONTAINER):
        return isinstance(value, bool)
    if name == CLOCK:
        return _clock_hour(value) is not None
    return True


def environment_is_production(env: Mapping[str, str], settings: ContextConfig) -> bool:
    values = {v.lower() for v in settings.production_env_values}
    return any(
        str(env.get(key, "")).strip().lower() in values
        for key in settings.environment_keys
    )


class SnapshotBuilder:
    """Builds snapshots for one session and keeps its operation window."""

    def __init__(self, settings: Optional[ContextConfig] = None):
        self.settings = settings or ContextConfig()
        self._window: Deque[Operation] = deque(maxlen=self.settings.window_size)
        self._lock = threading.Lock()

    @property
    def window(self) -> Tuple[Operation, ...]:
        with self._lock:
            return tuple(self._window)

    def seed(self, operations: Sequence[Operation]) -> None:
        """Preload the window (e.g. from a previous process), oldest first."""
        with self._lock:
            self._window.extend(operations)

    def clear_window(self) -> None:
        with self._lock:
            self._window.clear()

    def build(
        self,
        probe_results: Mapping[str, Any],
        operation: Optional[Operation] = None,
        idle_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> ContextSnapshot:
        """Assemble a snapshot; append ``operation`` to the window first.

        The snapshot's recent_operations is a copy, newest last, so the
        operation under evaluation is its last element.
        """
        if operation is not None:
            with self._lock:
                self._window.append(operation)
        recent = self.window

        degraded: List[str] = []
        probe_results = self._screen(probe_results)

        # Working directory
        if _is_unavailable(probe_results, WORKING_DIR):
            degraded.append(WORKING_DIR)
            working_dir = ""
        else:
            working_dir = str(probe_results[WORKING_DIR])

        # Git
        if _is_unavailable(probe_results, GIT):
            degraded.append(GIT)
            git_branch, dirty, is_repo, branch_prod = None, True, True, True
        else:
            git = probe_results[GIT]
            git_branch = git.get("branch")
            dirty = bool(git.get("dirty", False))
            is_repo = bool(git.get("is_repo", False))
            branch_prod = bool(git_branch) and branch_is_production(
                git_branch, self.settings.production_branches
            )

        # Environment
        if _is_unavailable(probe_results, ENVIRONMENT):
            degraded.append(ENVIRONMENT)
            env_prod = True
        else:
            env_prod = environment_is_production(probe_results[ENVIRONMENT], self.settings)

        is_ci = self._flag(probe_results, CI, default=True, degraded=degraded)
        is_remote = self._flag(probe_results, REMOTE_SESSION, default=True, degraded=degraded)
        is_container = self._flag(probe_results, CONTAINER, default=False, degraded=degraded)

        # Clock
        if _is_unavailable(probe_results, CLOCK):
            degraded.append(CLOCK)
            hour = -1
        else:
            hour = _clock_hour(probe_results[CLOCK])

        if degraded:
            logger.info("Context degraded: %s", ", ".join(degraded))

        return ContextSnapshot(
            working_dir=working_dir,
            git_branch=git_branch,
            has_uncommitted_changes=dirty,
            is_production=env_prod or branch_prod,
            is_ci=is_ci,
            is_remote_session=is_remote,
            is_container=is_container,
            time_of_day=hour,
            idle_seconds=max(0, int(idle_seconds)),
            recent_operations=recent,
            taken_at=now or datetime.now(timezone.utc),
            is_git_repo=is_repo,
            degraded=tuple(degraded),
        )

    @staticmethod
    def _screen(results: Mapping[str, Any]) -> Dict[str, Any]:
        """Copy of results with malformed values replaced by UNAVAILABLE."""
        screened = dict(results)
        for name, value in results.items():
            if value is not UNAVAILABLE and not _well_formed(name, value):
                logger.warning("Probe %s returned malformed value %r, treating as unavailable",
                               name, value)
                screened[name] = UNAVAILABLE
        return screened

    @staticmethod
    def _flag(results: Mapping[str, Any], name: str, default: bool, degraded: List[str]) -> bool:
        if _is_unavailable(results, name):
            degraded.append(name)
            return default
        return results[name]
