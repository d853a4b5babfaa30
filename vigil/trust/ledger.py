"""
Vigil Trust Ledger

Per-identity record of approved patterns and reported mistakes.

- Approval counts only grow through record_outcome(approved=True).
  At auto_trust_threshold approvals a pattern is auto-trusted and the
  evaluator applies the previously_approved modifier.
- A reported mistake is appended to the mistake log and raises every
  evaluation (recent_mistake) for mistake_cooldown_seconds. The
  mistaken pattern loses its approvals.
- reset_if_triggered() clears trusted patterns (never the mistake log)
  when the working directory, git branch, or CI/container/remote flags
  differ from the previous snapshot, or the session was idle too long.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from vigil.config.models import TrustConfig
from vigil.schemas import ContextSnapshot, TrustInfo

logger = logging.getLogger(__name__)


@dataclass
class PatternRecord:
    approval_count: int = 0
    last_approved_at: Optional[datetime] = None


@dataclass(frozen=True)
class MistakeEntry:
    pattern_key: str
    timestamp: datetime


@dataclass(frozen=True)
class ContextFingerprint:
    """The snapshot fields whose change resets trust."""
    working_dir: str
    git_branch: Optional[str]
    is_ci: bool
    is_container: bool
    is_remote_session: bool

    @classmethod
    def from_snapshot(cls, snapshot: ContextSnapshot) -> ContextFingerprint:
        return cls(
            working_dir=snapshot.working_dir,
            git_branch=snapshot.git_branch,
            is_ci=snapshot.is_ci,
            is_container=snapshot.is_container,
            is_remote_session=snapshot.is_remote_session,
        )

    def changes_from(self, previous: ContextFingerprint) -> List[str]:
        labels = {
            "working_dir": "working directory changed",
            "git_branch": "git branch changed",
            "is_ci": "CI status changed",
            "is_container": "container status changed",
            "is_remote_session": "remote-session status changed",
        }
        return [
            label for name, label in labels.items()
            if getattr(self, name) != getattr(previous, name)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "working_dir": self.working_dir,
            "git_branch": self.git_branch,
            "is_ci": self.is_ci,
            "is_container": self.is_container,
            "is_remote_session": self.is_remote_session,
        }


def _iso(when: Optional[datetime]) -> Optional[str]:
    return when.isoformat() if when else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TrustLedger:
    """Mutable trust state of one identity."""

    def __init__(
        self,
        settings: Optional[TrustConfig] = None,
        session_started_at: Optional[datetime] = None,
    ):
        self.settings = settings or TrustConfig()
        self.trusted_patterns: Dict[str, PatternRecord] = {}
        self.mistake_log: List[MistakeEntry] = []
        self.session_started_at = session_started_at or datetime.now(timezone.utc)
        self.observation_day = 0
        self.last_context: Optional[ContextFingerprint] = None
        self.last_reset_reasons: List[str] = []
        self.last_activity_at: Optional[datetime] = None

    # --- Queries ---

    def lookup(self, pattern_key: str) -> TrustInfo:
        record = self.trusted_patterns.get(pattern_key)
        if record is None:
            return TrustInfo(pattern_key=pattern_key)
        return TrustInfo(
            pattern_key=pattern_key,
            approval_count=record.approval_count,
            last_approved_at=record.last_approved_at,
            auto_trusted=record.approval_count >= self.settings.auto_trust_threshold,
        )

    def last_mistake_at(self) -> Optional[datetime]:
        return self.mistake_log[-1].timestamp if self.mistake_log else None

    def recent_mistake(self, now: datetime) -> bool:
        """True while the cool-down after the latest mistake is running."""
        last = self.last_mistake_at()
        if last is None:
            return False
        return now - last < timedelta(seconds=self.settings.mistake_cooldown_seconds)

    # --- Mutations ---

    def record_outcome(
        self,
        pattern_key: str,
        approved: bool,
        was_mistake: bool,
        now: Optional[datetime] = None,
    ) -> TrustInfo:
        """Apply a reported outcome and return the pattern's new trust info."""
        now = now or datetime.now(timezone.utc)
        self.observe(now)
        if was_mistake:
            self.mistake_log.append(MistakeEntry(pattern_key, now))
            self.trusted_patterns.pop(pattern_key, None)
            logger.info("Mistake recorded for %s", pattern_key)
        elif approved:
            record = self.trusted_patterns.setdefault(pattern_key, PatternRecord())
            record.approval_count += 1
            record.last_approved_at = now
            if record.approval_count == self.settings.auto_trust_threshold:
                logger.info("Pattern %s is now auto-trusted", pattern_key)
        return self.lookup(pattern_key)

    def observe(self, now: datetime) -> int:
        """Update and return the number of whole days observed this session."""
        self.observation_day = max(0, (now - self.session_started_at).days)
        return self.observation_day

    def reset(self) -> None:
        """Clear trusted patterns. The mistake log survives."""
        self.trusted_patterns.clear()

    def reset_if_triggered(self, snapshot: ContextSnapshot) -> bool:
        """Reset when the context moved or the session idled out.

        The first call for a ledger only records the context.
        """
        current = ContextFingerprint.from_snapshot(snapshot)
        reasons: List[str] = []
        if self.last_context is not None:
            reasons.extend(current.changes_from(self.last_context))
        if snapshot.idle_seconds > self.settings.idle_reset_seconds:
            reasons.append(f"idle for {snapshot.idle_seconds}s")
        self.last_context = current
        self.last_reset_reasons = reasons

        if not reasons:
            return False
        if self.trusted_patterns:
            logger.info("Trust reset: %s", "; ".join(reasons))
        self.reset()
        return True

    # --- Serialization ---

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trusted_patterns": {
                key: {
                    "approval_count": rec.approval_count,
                    "last_approved_at": _iso(rec.last_approved_at),
                }
                for key, rec in self.trusted_patterns.items()
            },
            "mistake_log": [
                {"pattern_key": m.pattern_key, "timestamp": m.timestamp.isoformat()}
                for m in self.mistake_log
            ],
            "session_started_at": self.session_started_at.isoformat(),
            "observation_day": self.observation_day,
            "last_context": self.last_context.to_dict() if self.last_context else None,
            "last_activity_at": _iso(self.last_activity_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], settings: Optional[TrustConfig] = None) -> TrustLedger:
        ledger = cls(settings=settings, session_started_at=_parse(data.get("session_started_at")))
        for key, rec in (data.get("trusted_patterns") or {}).items():
            ledger.trusted_patterns[key] = PatternRecord(
                approval_count=int(rec.get("approval_count", 0)),
                last_approved_at=_parse(rec.get("last_approved_at")),
            )
        ledger.mistake_log = [
            MistakeEntry(m["pattern_key"], datetime.fromisoformat(m["timestamp"]))
            for m in data.get("mistake_log") or []
        ]
        ledger.observation_day = int(data.get("observation_day", 0))
        ledger.last_activity_at = _parse(data.get("last_activity_at"))
        last = data.get("last_context")
        if last:
            ledger.last_context = ContextFingerprint(**last)
        return ledger
