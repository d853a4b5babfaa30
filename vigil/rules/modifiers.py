"""
Vigil Context Modifiers

Named predicates that decide whether a context modifier applies to an
operation in a given snapshot. Weights live in configuration
(VigilConfig.modifiers); rules may add extra weight to the same names.
"""
from __future__ import annotations

import fnmatch
import ntpath
import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List

from vigil.config.models import ContextConfig
from vigil.schemas import ContextSnapshot, Operation, OperationKind


@dataclass(frozen=True)
class TrustSignals:
    """What the trust ledger (and recovery) contribute to one evaluation."""
    previously_approved: bool = False
    recent_mistake: bool = False
    has_backup: bool = False


@dataclass(frozen=True)
class ModifierContext:
    """Everything a modifier predicate may look at."""
    operation: Operation
    snapshot: ContextSnapshot
    signals: TrustSignals
    settings: ContextConfig
    rule_reversible: bool = False


# Human-readable labels used in Decision.reasons
MODIFIER_LABELS: Dict[str, str] = {
    "is_production": "production environment",
    "has_uncommitted_changes": "uncommitted changes in working tree",
    "is_test_directory": "test directory",
    "explicit_user_request": "explicitly requested by the user",
    "repeated_operation": "repeat of a recent operation",
    "is_ci": "running in CI",
    "is_remote_session": "remote session",
    "is_container": "inside a container",
    "recent_mistake": "a recent operation was reported as a mistake",
    "off_hours": "outside normal working hours",
    "elevated_privilege": "uses elevated privileges",
    "reversible": "reversible operation",
    "has_backup": "a recovery checkpoint already exists",
    "affects_system_path": "affects a system path",
    "transmits_externally": "sends data off the machine",
    "previously_approved": "pattern previously approved",
}


_ELEVATION_RE = re.compile(r"(?:^|[;&|]\s*)(?:sudo|doas|pkexec|runas)\b|(?:^|[;&|]\s*)su\s+(?:-\S*\s+)*-c\b")
_EXTERNAL_SHELL_RE = re.compile(
    r"\b(?:curl|wget|nc|ncat|netcat|scp|sftp|ftp|telnet|rsync)\b|/dev/(?:tcp|udp)/"
)
_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})
_LOCAL_URL_RE = re.compile(r"^https?://(?:localhost|127\.0\.0\.1|\[::1\]|0\.0\.0\.0)(?::\d+)?(?:/|$)")
_URL_IN_TEXT_RE = re.compile(r"https?://\S+")


# =============================================================================
# Helpers
# =============================================================================


def _path_segments(path: str) -> List[str]:
    return [s.lower() for s in re.split(r"[\\/]+", path) if s]


def _candidate_paths(operation: Operation) -> List[str]:
    """Absolute paths an operation may touch."""
    paths: List[str] = []
    if operation.target_path:
        paths.append(operation.target_path)
    if operation.kind == OperationKind.SHELL:
        for word in operation.command_words():
            if word.startswith("/") or re.match(r"^[A-Za-z]:\\", word):
                paths.append(word)
            elif word.startswith("of=/"):
                paths.append(word[3:])
    return paths


def _normalize(path: str) -> str:
    if re.match(r"^[A-Za-z]:\\", path):
        return ntpath.normpath(path).lower()
    normalized = posixpath.normpath(path.rstrip("*") or "/")
    return normalized if normalized != "//" else "/"


def path_is_under(path: str, roots: Iterable[str]) -> bool:
    """True if path is one of roots or inside one of them.

    The filesystem root only counts on an exact match (or "/*"),
    otherwise every absolute path would qualify.
    """
    normalized = _normalize(path)
    for root in roots:
        root_norm = _normalize(root)
        if root_norm == "/":
            if normalized == "/":
                return True
            continue
        if normalized == root_norm:
            return True
        separator = "\\" if "\\" in root_norm else "/"
        if normalized.startswith(root_norm.rstrip(separator) + separator):
            return True
    return False


# =============================================================================
# Predicates
# =============================================================================


def _is_production(ctx: ModifierContext) -> bool:
    return ctx.snapshot.is_production


def _has_uncommitted_changes(ctx: ModifierContext) -> bool:
    return ctx.snapshot.has_uncommitted_changes


def _is_test_directory(ctx: ModifierContext) -> bool:
    markers = {m.lower() for m in ctx.settings.test_dir_markers}
    paths = [ctx.snapshot.working_dir]
    if ctx.operation.target_path:
        paths.append(ctx.operation.target_path)
    return any(markers.intersection(_path_segments(p)) for p in paths if p)


def _explicit_user_request(ctx: ModifierContext) -> bool:
    params = ctx.operation.params
    return params.get("user_requested") is True or params.get("explicit_request") is True


def _repeated_operation(ctx: ModifierContext) -> bool:
    window = list(ctx.snapshot.recent_operations)
    if window and window[-1] == ctx.operation:
        window = window[:-1]
    fingerprint = ctx.operation.fingerprint()
    return any(op.fingerprint() == fingerprint for op in window)


def _is_ci(ctx: ModifierContext) -> bool:
    return ctx.snapshot.is_ci


def _is_remote_session(ctx: ModifierContext) -> bool:
    return ctx.snapshot.is_remote_session


def _is_container(ctx: ModifierContext) -> bool:
    return ctx.snapshot.is_container


def _recent_mistake(ctx: ModifierContext) -> bool:
    return ctx.signals.recent_mistake


def _off_hours(ctx: ModifierContext) -> bool:
    hour = ctx.snapshot.time_of_day
    if hour < 0:
        return True  # Unknown clock
    start, end = ctx.settings.off_hours_start, ctx.settings.off_hours_end
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def _elevated_privilege(ctx: ModifierContext) -> bool:
    if ctx.operation.params.get("elevated") is True:
        return True
    if ctx.operation.kind != OperationKind.SHELL:
        return False
    return bool(_ELEVATION_RE.search(ctx.operation.raw_text.strip()))


def _reversible(ctx: ModifierContext) -> bool:
    if ctx.rule_reversible:
        return True
    op, snap = ctx.operation, ctx.snapshot
    if op.kind != OperationKind.FILE_WRITE or op.params.get("delete"):
        return False
    # Clean git work tree: a tracked file write can be checked out again.
    if not snap.is_git_repo or snap.has_uncommitted_changes or not snap.working_dir:
        return False
    return path_is_under(op.target_path or "", [snap.working_dir])


def _has_backup(ctx: ModifierContext) -> bool:
    return ctx.signals.has_backup


def _affects_system_path(ctx: ModifierContext) -> bool:
    return any(
        path_is_under(p, ctx.settings.system_paths)
        for p in _candidate_paths(ctx.operation)
    )


def _transmits_externally(ctx: ModifierContext) -> bool:
    op = ctx.operation
    if op.kind == OperationKind.NETWORK_FETCH:
        host = op.url_host
        return host is None or host.lower() not in _LOCAL_HOSTS
    if op.kind == OperationKind.SHELL and _EXTERNAL_SHELL_RE.search(op.raw_text):
        urls = _URL_IN_TEXT_RE.findall(op.raw_text)
        return not urls or not all(_LOCAL_URL_RE.match(u) for u in urls)
    if op.kind == OperationKind.TOOL_CALL:
        url = op.params.get("url")
        return isinstance(url, str) and bool(url) and not _LOCAL_URL_RE.match(url)
    return False


def _previously_approved(ctx: ModifierContext) -> bool:
    return ctx.signals.previously_approved


PREDICATES: Dict[str, Callable[[ModifierContext], bool]] = {
    "is_production": _is_production,
    "has_uncommitted_changes": _has_uncommitted_changes,
    "is_test_directory": _is_test_directory,
    "explicit_user_request": _explicit_user_request,
    "repeated_operation": _repeated_operation,
    "is_ci": _is_ci,
    "is_remote_session": _is_remote_session,
    "is_container": _is_container,
    "recent_mistake": _recent_mistake,
    "off_hours": _off_hours,
    "elevated_privilege": _elevated_privilege,
    "reversible": _reversible,
    "has_backup": _has_backup,
    "affects_system_path": _affects_system_path,
    "transmits_externally": _transmits_externally,
    "previously_approved": _previously_approved,
}


def applicable_modifiers(ctx: ModifierContext) -> List[str]:
    """Names of all modifiers that apply, in registry order."""
    return [name for name, predicate in PREDICATES.items() if predicate(ctx)]


def branch_is_production(branch: str, patterns: Iterable[str]) -> bool:
    """Glob-match a git branch against the configured production branches."""
    return any(fnmatch.fnmatchcase(branch, p) for p in patterns)
