"""
Vigil Data Schemas

Immutable value objects passed between the engine's components:
Operation, ContextSnapshot, Decision, RecoveryCheckpoint, ModeState.
"""
from __future__ import annotations

import hashlib
import json
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from vigil.errors import InvalidOperation


# =============================================================================
# Enums
# =============================================================================


class OperationKind(str, Enum):
    """What sort of operation the host wants to run."""
    SHELL = "shell"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    NETWORK_FETCH = "network_fetch"
    TOOL_CALL = "tool_call"
    UNKNOWN = "unknown"  # Unrecognized kind from the wire; scored as unclassified


class Action(str, Enum):
    """What the host should do with an operation."""
    ALLOW = "allow"
    HINT_ONLY = "hint_only"
    QUICK_CONFIRM = "quick_confirm"
    EXPLAIN_AND_CONFIRM = "explain_and_confirm"
    BLOCK = "block"

    @property
    def rank(self) -> int:
        return ACTION_RANK[self]

    def at_least(self, floor: "Action") -> "Action":
        """Return whichever of self/floor is stricter."""
        return self if self.rank >= floor.rank else floor


ACTION_RANK = {
    Action.ALLOW: 0,
    Action.HINT_ONLY: 1,
    Action.QUICK_CONFIRM: 2,
    Action.EXPLAIN_AND_CONFIRM: 3,
    Action.BLOCK: 4,
}


class ModeName(str, Enum):
    """Operating modes of a session."""
    LEARNING = "learning"
    ADAPTIVE = "adaptive"
    FLOW = "flow"
    PARANOID = "paranoid"


# Tool names as reported by agent hosts, mapped to operation kinds
_TOOL_KINDS = {
    "bash": OperationKind.SHELL,
    "shell": OperationKind.SHELL,
    "read": OperationKind.FILE_READ,
    "write": OperationKind.FILE_WRITE,
    "edit": OperationKind.FILE_WRITE,
    "multiedit": OperationKind.FILE_WRITE,
    "notebookedit": OperationKind.FILE_WRITE,
    "webfetch": OperationKind.NETWORK_FETCH,
    "websearch": OperationKind.NETWORK_FETCH,
}


# =============================================================================
# Operation
# =============================================================================


def _json_safe(value: Any) -> Any:
    """JSON-compatible copy of value; anything JSON has no type for becomes str()."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_json_safe(v) for v in value), key=str)
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return str(value)


@dataclass(frozen=True)
class Operation:
    """A single proposed action submitted for risk evaluation.

    Validated on construction; a malformed value raises InvalidOperation.
    ``params`` is stored as a read-only mapping; to_dict() renders values
    JSON has no type for (datetimes, paths, ...) with str().
    """

    kind: OperationKind
    raw_text: str
    target_path: Optional[str] = None
    tool_name: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.kind, OperationKind):
            raise InvalidOperation(f"kind must be an OperationKind, got {self.kind!r}")
        if not isinstance(self.raw_text, str):
            raise InvalidOperation("raw_text must be a string")
        if "\x00" in self.raw_text:
            raise InvalidOperation("raw_text contains a null byte")
        if self.target_path is not None and (
            not isinstance(self.target_path, str) or not self.target_path.strip()
        ):
            raise InvalidOperation("target_path must be a non-empty string when given")
        if self.tool_name is not None and not isinstance(self.tool_name, str):
            raise InvalidOperation("tool_name must be a string when given")
        if not isinstance(self.params, Mapping):
            raise InvalidOperation("params must be a mapping")
        if any(not isinstance(k, str) for k in self.params):
            raise InvalidOperation("params keys must be strings")

        if self.kind in (OperationKind.SHELL, OperationKind.NETWORK_FETCH):
            if not self.raw_text.strip():
                raise InvalidOperation(f"{self.kind.value} operation has empty raw_text")
        elif self.kind in (OperationKind.FILE_READ, OperationKind.FILE_WRITE):
            if not self.target_path:
                raise InvalidOperation(f"{self.kind.value} operation needs target_path")
        elif self.kind == OperationKind.TOOL_CALL:
            if not self.tool_name:
                raise InvalidOperation("tool_call operation needs tool_name")

        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    # --- Derived views ---

    def fingerprint(self) -> str:
        """Stable short hash identifying this exact operation."""
        payload = json.dumps(
            [self.kind.value, self.raw_text, self.target_path, self.tool_name,
             dict(self.params)],
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    @property
    def subject(self) -> str:
        """Short grouping key: command head, parent dir, URL host, or tool."""
        if self.kind == OperationKind.SHELL:
            return " ".join(self.command_words()[:2])
        if self.kind in (OperationKind.FILE_READ, OperationKind.FILE_WRITE):
            path = (self.target_path or "").rstrip("/")
            parent = path.rsplit("/", 1)[0] if "/" in path else "."
            return parent or "/"
        if self.kind == OperationKind.NETWORK_FETCH:
            return self.url_host or self.raw_text.strip()[:64]
        if self.kind == OperationKind.TOOL_CALL:
            return self.tool_name or ""
        return self.raw_text.strip()[:64]

    def pattern_key(self, rule_id: str = "unclassified") -> str:
        """Trust grouping key: ``kind:rule:subject``."""
        return f"{self.kind.value}:{rule_id}:{self.subject}"

    def command_words(self) -> List[str]:
        """Tokenize raw_text shell-style, falling back to whitespace split."""
        try:
            return shlex.split(self.raw_text)
        except ValueError:
            return self.raw_text.split()

    @property
    def url_host(self) -> Optional[str]:
        if self.kind != OperationKind.NETWORK_FETCH:
            return None
        try:
            return urlparse(self.raw_text.strip()).hostname
        except ValueError:
            return None

    def text_for_matching(self) -> str:
        """Everything a regex matcher should see, joined on newlines."""
        parts = [self.raw_text]
        if self.target_path:
            parts.append(self.target_path)
        return "\n".join(parts)

    # --- Construction / serialization ---

    @classmethod
    def from_dict(cls, data: Any) -> Operation:
        """Build an Operation from its JSON form.

        Unrecognized kind strings map to OperationKind.UNKNOWN.
        """
        if not isinstance(data, Mapping):
            raise InvalidOperation("operation must be a JSON object")
        raw_kind = data.get("kind")
        if not isinstance(raw_kind, str):
            raise InvalidOperation("operation kind must be a string")
        try:
            kind = OperationKind(raw_kind.lower())
        except ValueError:
            kind = OperationKind.UNKNOWN
        raw_text = data.get("raw_text", data.get("command", ""))
        if raw_text is None:
            raw_text = ""
        return cls(
            kind=kind,
            raw_text=raw_text,
            target_path=data.get("target_path"),
            tool_name=data.get("tool_name"),
            params=data.get("params") or {},
        )

    @classmethod
    def from_tool_call(cls, tool_name: str, tool_input: Mapping[str, Any]) -> Operation:
        """Map an agent tool call (Bash, Read, Write, WebFetch, ...) to an Operation."""
        if not isinstance(tool_input, Mapping):
            raise InvalidOperation("tool_input must be a mapping")
        kind = _TOOL_KINDS.get((tool_name or "").lower(), OperationKind.TOOL_CALL)

        if kind == OperationKind.SHELL:
            return cls(kind=kind, raw_text=str(tool_input.get("command", "")),
                       tool_name=tool_name, params=tool_input)
        if kind in (OperationKind.FILE_READ, OperationKind.FILE_WRITE):
            path = tool_input.get("file_path") or tool_input.get("notebook_path")
            return cls(kind=kind, raw_text=str(path or ""), target_path=path,
                       tool_name=tool_name, params=tool_input)
        if kind == OperationKind.NETWORK_FETCH:
            url = tool_input.get("url") or tool_input.get("query") or ""
            return cls(kind=kind, raw_text=str(url), tool_name=tool_name, params=tool_input)

        return cls(
            kind=OperationKind.TOOL_CALL,
            raw_text=json.dumps(dict(tool_input), sort_keys=True, default=str),
            tool_name=tool_name,
            params=tool_input,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "raw_text": self.raw_text,
            "target_path": self.target_path,
            "tool_name": self.tool_name,
            "params": _json_safe(self.params),
        }


# =============================================================================
# Context
# =============================================================================


@dataclass(frozen=True)
class ContextSnapshot:
    """Point-in-time facts about the environment a decision is made in.

    Built fresh per decision and never mutated. ``degraded`` names the
    probes that were unavailable; their fields hold risk-raising defaults.
    """

    working_dir: str
    git_branch: Optional[str]
    has_uncommitted_changes: bool
    is_production: bool
    is_ci: bool
    is_remote_session: bool
    is_container: bool
    time_of_day: int  # Hour 0-23, -1 when the clock was unavailable
    idle_seconds: int
    recent_operations: Tuple[Operation, ...]
    taken_at: datetime
    is_git_repo: bool = False
    degraded: Tuple[str, ...] = ()

    @property
    def current_operation(self) -> Optional[Operation]:
        return self.recent_operations[-1] if self.recent_operations else None


# =============================================================================
# Decisions
# =============================================================================


@dataclass(frozen=True)
class Alternative:
    """A safer operation the host could run instead."""
    description: str
    replacement_operation: Operation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "replacement_operation": self.replacement_operation.to_dict(),
        }


@dataclass(frozen=True)
class Decision:
    """The engine's verdict on one operation."""

    risk_score: int
    action: Action
    reasons: Tuple[str, ...] = ()
    alternatives: Tuple[Alternative, ...] = ()
    mode: ModeName = ModeName.ADAPTIVE
    matched_rule_ids: Tuple[str, ...] = ()
    matched_sequence_ids: Tuple[str, ...] = ()
    pattern_key: str = ""

    @property
    def requires_confirmation(self) -> bool:
        return self.action in (Action.QUICK_CONFIRM, Action.EXPLAIN_AND_CONFIRM)

    @property
    def is_blocked(self) -> bool:
        return self.action == Action.BLOCK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "action": self.action.value,
            "reasons": list(self.reasons),
            "alternatives": [a.to_dict() for a in self.alternatives],
            "mode": self.mode.value,
            "matched_rule_ids": list(self.matched_rule_ids),
            "matched_sequence_ids": list(self.matched_sequence_ids),
            "pattern_key": self.pattern_key,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


# =============================================================================
# Trust / Mode / Recovery values
# =============================================================================


@dataclass(frozen=True)
class TrustInfo:
    """What the trust ledger knows about one pattern."""
    pattern_key: str
    approval_count: int = 0
    last_approved_at: Optional[datetime] = None
    auto_trusted: bool = False


@dataclass(frozen=True)
class ModeState:
    """The single active mode of a session plus its mode-specific fields."""

    mode: ModeName
    started_at: datetime
    expires_at: Optional[datetime] = None  # Flow only
    days_observed: int = 0                 # Learning only

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "started_at": self.started_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "days_observed": self.days_observed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModeState:
        expires = data.get("expires_at")
        return cls(
            mode=ModeName(data["mode"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            expires_at=datetime.fromisoformat(expires) if expires else None,
            days_observed=int(data.get("days_observed", 0)),
        )


@dataclass(frozen=True)
class RecoveryCheckpoint:
    """A time-limited, restorable backup taken before a risky operation."""

    id: str
    operation: Operation
    backup_ref: str
    strategy: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation.to_dict(),
            "backup_ref": self.backup_ref,
            "strategy": self.strategy,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RecoveryCheckpoint:
        return cls(
            id=data["id"],
            operation=Operation.from_dict(data["operation"]),
            backup_ref=data["backup_ref"],
            strategy=data["strategy"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )
