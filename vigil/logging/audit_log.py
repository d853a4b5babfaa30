"""
Vigil Audit Log

Append-only, hash-chained trail of decisions, outcomes and state
changes, written through the Persistent Store.

Entries live under ``audit:<identity>:<seq>`` with a per-identity head
record holding the last sequence number and hash. Command text and
reasons are redacted and sanitized before anything is written.

Audit writes never break evaluation: a failing store is logged at
WARNING and the event is dropped.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern

from vigil.errors import PersistentStoreUnavailable
from vigil.store import KeyValueStore

logger = logging.getLogger(__name__)


def _sanitize_for_log(text: Optional[str]) -> Optional[str]:
    """Sanitize text for log storage to prevent log injection.

    Replaces control characters that could break log parsers:
    newlines, carriage returns, tabs, null bytes, and ANSI escapes.
    """
    if text is None:
        return None
    return (
        text
        .replace("\x00", "\\x00")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
        .replace("\x1b", "\\x1b")
    )


class LogRedactor:
    """Redacts secrets, tokens and credentials from audit data."""

    REDACTION_PATTERNS: List[tuple[str, Pattern, str]] = [
        ("api_key", re.compile(
            r'(?i)(api[_-]?key|apikey|secret[_-]?key)[\s:=]+[\'\"]?([A-Za-z0-9_-]{16,})[\'\"]?'
        ), r'\1=***REDACTED***'),

        ("aws_key", re.compile(
            r'((?:A3T[A-Z0-9]|AKIA|ABIA|ACCA|ASIA)[A-Z0-9]{16})'
        ), '***AWS_KEY_REDACTED***'),

        ("bearer", re.compile(
            r'(?i)(bearer)\s+([A-Za-z0-9_.-]{20,})'
        ), r'\1 ***REDACTED***'),

        ("jwt", re.compile(
            r'(eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*)'
        ), '***JWT_REDACTED***'),

        ("github", re.compile(
            r'(gh[pousr]_[A-Za-z0-9_]{36,})'
        ), '***GITHUB_TOKEN_REDACTED***'),

        ("password", re.compile(
            r'(?i)(password|passwd|pwd)[\s:=]+[\'\"]?([^\s\'\"\n]{8,})[\'\"]?'
        ), r'\1=***REDACTED***'),

        ("connection_string", re.compile(
            r'(?i)(mongodb|postgres|postgresql|mysql|redis|amqp)://([^:/\s]+):([^@\s]+)@'
        ), r'\1://\2:***REDACTED***@'),

        ("private_key", re.compile(
            r'(-----BEGIN (?:RSA |DSA |EC |OPENSSH )?PRIVATE KEY-----[\s\S]*?'
            r'-----END (?:RSA |DSA |EC |OPENSSH )?PRIVATE KEY-----)'
        ), '***PRIVATE_KEY_REDACTED***'),
    ]

    # Inline assignments in shell text: FOO_TOKEN=..., export API_KEY=...
    COMMAND_PATTERNS: List[tuple[Pattern, str]] = [
        (re.compile(r'(-H\s+["\']?Authorization:\s*(?:Bearer\s+)?)[^"\']+(["\'])'),
         r'\1***REDACTED***\2'),
        (re.compile(r'(?i)(\w*(?:KEY|SECRET|TOKEN|PASSWORD)\w*=)[^\s;]+'),
         r'\1***REDACTED***'),
    ]

    SENSITIVE_KEYS = {
        'password', 'passwd', 'secret', 'token', 'api_key', 'apikey',
        'access_key', 'private_key', 'credential', 'auth', 'cookie',
    }

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def redact_string(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        result = text
        for _name, pattern, replacement in self.REDACTION_PATTERNS:
            result = pattern.sub(replacement, result)
        return result

    def redact_command(self, command: str) -> str:
        if not self.enabled or not command:
            return command
        result = self.redact_string(command)
        for pattern, replacement in self.COMMAND_PATTERNS:
            result = pattern.sub(replacement, result)
        return result

    def redact_dict(self, data: Dict[str, Any], depth: int = 0) -> Dict[str, Any]:
        """Redact values of sensitive keys and pattern-redact all strings."""
        if not self.enabled or not data or depth > 10:
            return data

        result = {}
        for key, value in data.items():
            if any(s in str(key).lower() for s in self.SENSITIVE_KEYS):
                result[key] = "***REDACTED***"
            elif isinstance(value, str):
                result[key] = self.redact_command(value)
            elif isinstance(value, dict):
                result[key] = self.redact_dict(value, depth + 1)
            elif isinstance(value, list):
                result[key] = [
                    self.redact_dict(item, depth + 1) if isinstance(item, dict)
                    else self.redact_command(item) if isinstance(item, str)
                    else item
                    for item in value
                ]
            else:
                result[key] = value
        return result


class EventType(Enum):
    """Types of audit events."""
    DECISION = "decision"                        # evaluate() produced a Decision
    OUTCOME = "outcome"                          # Host reported an outcome
    TRUST_RESET = "trust_reset"                  # Trusted patterns cleared
    MODE_CHANGE = "mode_change"                  # Mode transition
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_RESTORED = "checkpoint_restored"
    STORE_FALLBACK = "store_fallback"            # Ledger fell back to memory


@dataclass
class AuditEvent:
    """An audit event to be recorded."""
    event_type: EventType
    identity: str
    timestamp: Optional[datetime] = None
    command: Optional[str] = None
    action: Optional[str] = None
    risk_score: Optional[int] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditLog:
    """Hash-chained audit trail stored in a KeyValueStore."""

    KEY_PREFIX = "audit"
    HEAD_PREFIX = "audit-head"

    def __init__(self, store: KeyValueStore, redact_logs: bool = True):
        self.store = store
        self.redactor = LogRedactor(enabled=redact_logs)
        self._lock = threading.Lock()

    def _entry_key(self, identity: str, seq: int) -> str:
        return f"{self.KEY_PREFIX}:{identity}:{seq:08d}"

    def _head_key(self, identity: str) -> str:
        return f"{self.HEAD_PREFIX}:{identity}"

    @staticmethod
    def _compute_entry_hash(prev_hash: str, entry: Dict[str, Any]) -> str:
        """SHA-256 over the previous hash plus the canonical JSON of entry."""
        body = {k: v for k, v in entry.items() if k != "entry_hash"}
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256((prev_hash + canonical).encode("utf-8")).hexdigest()

    def record(self, event: AuditEvent) -> Optional[int]:
        """Append an event. Returns its sequence number, or None if the store failed."""
        command = self.redactor.redact_command(event.command) if event.command else None
        reason = self.redactor.redact_string(event.reason) if event.reason else None
        metadata = self.redactor.redact_dict(dict(event.metadata)) if event.metadata else {}
        timestamp = event.timestamp or datetime.now(timezone.utc)

        entry = {
            "event_type": event.event_type.value,
            "identity": event.identity,
            "timestamp": timestamp.isoformat(),
            "command": _sanitize_for_log(command),
            "action": event.action,
            "risk_score": event.risk_score,
            "reason": _sanitize_for_log(reason),
            "metadata": metadata,
        }

        with self._lock:
            try:
                head = self.store.get(self._head_key(event.identity)) or {"seq": 0, "hash": ""}
                seq = int(head["seq"]) + 1
                entry["seq"] = seq
                entry["entry_hash"] = self._compute_entry_hash(head["hash"], entry)
                self.store.put(self._entry_key(event.identity, seq), entry)
                self.store.put(
                    self._head_key(event.identity),
                    {"seq": seq, "hash": entry["entry_hash"]},
                )
            except PersistentStoreUnavailable as e:
                logger.warning("Audit event %s dropped: %s", event.event_type.value, e)
                return None
        return seq

    def _entry_keys(self, identity: str) -> List[str]:
        prefix = f"{self.KEY_PREFIX}:{identity}:"
        # Skip identities that merely share this one as a prefix ("a" vs "a:b")
        return [k for k in self.store.keys(prefix) if k[len(prefix):].isdigit()]

    def events(self, identity: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries for identity, oldest first (or the newest ``limit`` of them)."""
        keys = self._entry_keys(identity)
        if limit is not None:
            keys = keys[-limit:] if limit > 0 else []
        entries = []
        for key in keys:
            entry = self.store.get(key)
            if entry is not None:
                entries.append(entry)
        return entries

    def identities(self) -> List[str]:
        prefix = f"{self.HEAD_PREFIX}:"
        return [k[len(prefix):] for k in self.store.keys(prefix)]

    def verify_chain(self, identity: str) -> Dict[str, Any]:
        """Verify the hash chain of one identity.

        Returns:
            Dict with keys:
                valid: bool, True if the chain is intact
                total: int, entries checked
                verified: int, entries that passed
                broken_at: Optional[int], first sequence number that failed
                errors: List[Dict], details of each broken link
        """
        prev_hash = ""
        verified = 0
        errors = []
        broken_at = None
        entries = self.events(identity)

        for entry in entries:
            stored_hash = entry.get("entry_hash", "")
            expected = self._compute_entry_hash(prev_hash, entry)
            if expected == stored_hash:
                verified += 1
            else:
                if broken_at is None:
                    broken_at = entry.get("seq")
                errors.append({
                    "seq": entry.get("seq"),
                    "event_type": entry.get("event_type"),
                    "expected_hash": expected[:16] + "...",
                    "stored_hash": (stored_hash or "")[:16] + "...",
                })
            prev_hash = stored_hash or ""

        return {
            "valid": not errors,
            "total": len(entries),
            "verified": verified,
            "broken_at": broken_at,
            "errors": errors,
        }
