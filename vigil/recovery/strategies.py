"""
Vigil Recovery Strategies

How a checkpoint is captured and restored depends on what the
operation is about to destroy:

- GitPointerStrategy:  history-rewriting git commands. Captures HEAD,
  the branch, a `git stash create` commit of uncommitted tracked work,
  and the tips of branches about to be deleted.
- ConfigCopyStrategy:  writes to config-like files. Keeps a copy of the
  old content (or the fact the file did not exist).
- FileArchiveStrategy: shell deletions/moves/truncations and deleting
  file writes. Keeps a tar.gz of the target files and directories.

A strategy returns a JSON-able payload; binary content is base64. A
strategy that cannot protect this particular operation raises
UnsupportedOperationKind so the coordinator can try the next one.
"""
from __future__ import annotations

import base64
import io
import logging
import os
import re
import shutil
import subprocess
import tarfile
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from vigil.errors import CheckpointError, RestoreFailed, UnsupportedOperationKind
from vigil.schemas import Operation, OperationKind

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]

_CONTROL_TOKENS = {"&&", "||", ";", "|", "&"}
_PREFIX_COMMANDS = {"sudo", "doas", "command", "nohup", "exec"}


def _words_until_control(words: Sequence[str]) -> List[str]:
    out = []
    for word in words:
        if word in _CONTROL_TOKENS:
            break
        out.append(word)
    return out


def _strip_prefixes(words: List[str]) -> List[str]:
    while words and words[0] in _PREFIX_COMMANDS:
        words = words[1:]
    return words


def _resolve(path: str, working_dir: str) -> Path:
    expanded = Path(os.path.expanduser(path))
    if not expanded.is_absolute():
        expanded = Path(working_dir) / expanded
    return Path(os.path.normpath(str(expanded)))


class RecoveryStrategy(ABC):
    """One way of making an operation reversible."""

    name: str = "strategy"

    @abstractmethod
    def supports(self, operation: Operation) -> bool:
        """Cheap check: could this strategy protect operation at all?"""

    @abstractmethod
    def capture(self, operation: Operation, working_dir: str) -> Payload:
        """Take the backup. Raises UnsupportedOperationKind or CheckpointError."""

    @abstractmethod
    def restore(self, payload: Payload) -> None:
        """Put things back. Raises RestoreFailed."""


# =============================================================================
# File archive
# =============================================================================


class FileArchiveStrategy(RecoveryStrategy):
    """tar.gz archive of the files a destructive command will touch."""

    name = "file_archive"

    COMMANDS = {"rm", "rmdir", "shred", "truncate", "mv", "unlink"}

    def __init__(self, max_bytes: int = 50 * 1024 * 1024):
        self.max_bytes = max_bytes

    def _shell_args(self, operation: Operation) -> Optional[List[str]]:
        words = _strip_prefixes(_words_until_control(operation.command_words()))
        if not words or Path(words[0]).name not in self.COMMANDS:
            return None
        return [w for w in words[1:] if not w.startswith("-")]

    def supports(self, operation: Operation) -> bool:
        if operation.kind == OperationKind.FILE_WRITE:
            return bool(operation.params.get("delete"))
        if operation.kind == OperationKind.SHELL:
            return self._shell_args(operation) is not None
        return False

    def targets(self, operation: Operation, working_dir: str) -> List[Path]:
        """Existing paths the operation would destroy, de-duplicated."""
        if operation.kind == OperationKind.FILE_WRITE:
            candidates = [operation.target_path or ""]
        else:
            candidates = self._shell_args(operation) or []
        seen, paths = set(), []
        for raw in candidates:
            if not raw:
                continue
            path = _resolve(raw, working_dir)
            if os.path.lexists(path) and path not in seen:
                seen.add(path)
                paths.append(path)
        return paths

    def _check_size(self, paths: List[Path]) -> None:
        home = Path.home()
        total = 0
        for path in paths:
            if path == Path(path.anchor) or path == home:
                raise CheckpointError(f"refusing to archive {path}")
            if path.is_file() or path.is_symlink():
                total += path.lstat().st_size
            else:
                for root, _dirs, files in os.walk(path):
                    for name in files:
                        try:
                            total += os.lstat(os.path.join(root, name)).st_size
                        except OSError:
                            continue
                        if total > self.max_bytes:
                            break
            if total > self.max_bytes:
                raise CheckpointError(
                    f"backup of {len(paths)} path(s) exceeds {self.max_bytes} bytes"
                )

    def capture(self, operation: Operation, working_dir: str) -> Payload:
        paths = self.targets(operation, working_dir)
        if not paths:
            raise UnsupportedOperationKind(operation.kind.value, "no existing files to archive")
        self._check_size(paths)

        buffer = io.BytesIO()
        try:
            with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
                for index, path in enumerate(paths):
                    tar.add(str(path), arcname=str(index))
        except (OSError, tarfile.TarError) as e:
            raise CheckpointError(f"archive failed: {e}") from e

        logger.debug("Archived %d path(s), %d bytes", len(paths), buffer.tell())
        return {
            "paths": [str(p) for p in paths],
            "archive": base64.b64encode(buffer.getvalue()).decode("ascii"),
        }

    def restore(self, payload: Payload) -> None:
        paths = payload.get("paths") or []
        try:
            data = base64.b64decode(payload["archive"])
        except (KeyError, ValueError) as e:
            raise RestoreFailed(f"corrupt archive payload: {e}") from e

        extract_kwargs = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
        try:
            with tempfile.TemporaryDirectory(prefix="vigil-restore-") as tmp:
                with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                    for member in tar.getmembers():
                        top = member.name.split("/", 1)[0]
                        if not top.isdigit() or int(top) >= len(paths) or ".." in member.name.split("/"):
                            raise RestoreFailed(f"unexpected archive member {member.name!r}")
                    tar.extractall(tmp, **extract_kwargs)
                for index, original in enumerate(paths):
                    source = Path(tmp) / str(index)
                    if not os.path.lexists(source):
                        continue
                    dest = Path(original)
                    if dest.is_dir() and not dest.is_symlink():
                        shutil.rmtree(dest)
                    elif os.path.lexists(dest):
                        dest.unlink()
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(source), str(dest))
        except (OSError, tarfile.TarError) as e:
            raise RestoreFailed(f"archive restore failed: {e}") from e


# =============================================================================
# Config copy
# =============================================================================


class ConfigCopyStrategy(RecoveryStrategy):
    """Copy-and-restore for writes to configuration files."""

    name = "config_copy"

    SUFFIXES = {".yaml", ".yml", ".json", ".toml", ".ini", ".cfg", ".conf", ".env",
                ".properties", ".plist", ".xml"}
    NAMES = {"dockerfile", "makefile", "crontab", "hosts", "fstab", "sudoers"}

    def __init__(self, max_bytes: int = 50 * 1024 * 1024):
        self.max_bytes = max_bytes

    def is_config_path(self, path: str) -> bool:
        p = Path(path)
        name = p.name.lower()
        return (
            p.suffix.lower() in self.SUFFIXES
            or name in self.NAMES
            or (name.startswith(".") and name.endswith("rc"))
            or name.startswith(".env")
            or str(p).startswith("/etc/")
        )

    def supports(self, operation: Operation) -> bool:
        return (
            operation.kind == OperationKind.FILE_WRITE
            and not operation.params.get("delete")
            and self.is_config_path(operation.target_path or "")
        )

    def capture(self, operation: Operation, working_dir: str) -> Payload:
        path = _resolve(operation.target_path or "", working_dir)
        if not path.exists():
            return {"path": str(path), "existed": False}
        if not path.is_file():
            raise UnsupportedOperationKind(operation.kind.value, f"{path} is not a regular file")
        try:
            if path.stat().st_size > self.max_bytes:
                raise CheckpointError(f"{path} exceeds {self.max_bytes} bytes")
            content = path.read_bytes()
            mode = path.stat().st_mode & 0o7777
        except OSError as e:
            raise CheckpointError(f"cannot read {path}: {e}") from e
        return {
            "path": str(path),
            "existed": True,
            "mode": mode,
            "content": base64.b64encode(content).decode("ascii"),
        }

    def restore(self, payload: Payload) -> None:
        path = Path(payload["path"])
        try:
            if not payload.get("existed"):
                if path.exists():
                    path.unlink()
                return
            content = base64.b64decode(payload["content"])
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                os.chmod(tmp_name, payload.get("mode", 0o644))
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, KeyError, ValueError) as e:
            raise RestoreFailed(f"config restore of {path} failed: {e}") from e


# =============================================================================
# Git pointer capture
# =============================================================================

GitRunner = Callable[[List[str], str], subprocess.CompletedProcess]

_GIT_DESTRUCTIVE = [
    re.compile(r"^reset\b.*--hard\b"),
    re.compile(r"^rebase\b"),
    re.compile(r"^push\b.*(?:--force\b|--force-with-lease\b|\s-f\b)"),
    re.compile(r"^branch\b.*\s(?:-D|-d|--delete)\b"),
    re.compile(r"^checkout\b.*(?:\s--\s|\s\.$|\s-f\b|--force\b)"),
    re.compile(r"^restore\b"),
    re.compile(r"^commit\b.*--amend\b"),
    re.compile(r"^stash\s+(?:drop|clear)\b"),
]


class GitPointerStrategy(RecoveryStrategy):
    """Reflog-style pointer capture for git history mutations."""

    name = "git_pointer"

    def __init__(self, runner: Optional[GitRunner] = None, timeout: float = 5.0):
        self.timeout = timeout
        self.runner = runner or self._run

    def _run(self, args: List[str], cwd: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args], cwd=cwd or None, capture_output=True, text=True,
            timeout=self.timeout,
        )

    def _git_words(self, operation: Operation) -> Optional[List[str]]:
        words = _strip_prefixes(_words_until_control(operation.command_words()))
        if len(words) < 2 or Path(words[0]).name != "git":
            return None
        rest = words[1:]
        # Skip global options such as -C <dir> or -c key=value
        while rest and rest[0] in ("-C", "-c") and len(rest) > 1:
            rest = rest[2:]
        return rest

    def supports(self, operation: Operation) -> bool:
        if operation.kind != OperationKind.SHELL:
            return False
        words = self._git_words(operation)
        if not words:
            return False
        line = " ".join(words)
        return any(p.search(line) for p in _GIT_DESTRUCTIVE)

    def _git(self, args: List[str], cwd: str) -> Optional[str]:
        try:
            result = self.runner(args, cwd)
        except FileNotFoundError as e:
            raise UnsupportedOperationKind("shell", "git executable not found") from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise CheckpointError(f"git {' '.join(args)} failed: {e}") from e
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def capture(self, operation: Operation, working_dir: str) -> Payload:
        repo = self._git(["rev-parse", "--show-toplevel"], working_dir)
        if not repo:
            raise UnsupportedOperationKind(operation.kind.value, "not inside a git repository")
        head = self._git(["rev-parse", "HEAD"], repo)
        if not head:
            raise CheckpointError("repository has no commits to point back to")
        branch = self._git(["rev-parse", "--abbrev-ref", "HEAD"], repo)
        stash = self._git(["stash", "create"], repo) or None

        branches: Dict[str, str] = {}
        words = self._git_words(operation) or []
        if words and words[0] == "branch":
            for name in (w for w in words[1:] if not w.startswith("-")):
                sha = self._git(["rev-parse", "--verify", f"refs/heads/{name}"], repo)
                if sha:
                    branches[name] = sha

        return {
            "repo": repo,
            "head": head,
            "branch": branch if branch != "HEAD" else None,
            "stash": stash,
            "branches": branches,
        }

    def restore(self, payload: Payload) -> None:
        repo = payload.get("repo")
        if not repo:
            raise RestoreFailed("git payload has no repository")

        def must(args: List[str]) -> None:
            try:
                result = self.runner(args, repo)
            except (subprocess.TimeoutExpired, OSError) as e:
                raise RestoreFailed(f"git {' '.join(args)} failed: {e}") from e
            if result.returncode != 0:
                raise RestoreFailed(f"git {' '.join(args)} failed: {result.stderr.strip()}")

        for name, sha in (payload.get("branches") or {}).items():
            must(["branch", "-f", name, sha])
        if payload.get("branch"):
            must(["checkout", payload["branch"]])
        must(["reset", "--hard", payload["head"]])
        if payload.get("stash"):
            must(["stash", "apply", payload["stash"]])


def default_strategies(max_bytes: int, git_timeout: float) -> List[RecoveryStrategy]:
    """Strategies in selection order."""
    return [
        GitPointerStrategy(timeout=git_timeout),
        ConfigCopyStrategy(max_bytes=max_bytes),
        FileArchiveStrategy(max_bytes=max_bytes),
    ]
