"""
Vigil Advisory Engine

The Decision API. Hosts call:

    decision = engine.evaluate(operation, identity)
    clearance = engine.authorize(identity, operation, decision)   # before executing
    engine.report_outcome(identity, operation, approved, was_mistake)

Each identity is an independent session with its own trust ledger, mode
and operation window. Calls for one identity are serialized behind that
session's lock; different identities never share mutable state.

Only InvalidOperation escapes evaluate(). Probe, store and plugin
failures are absorbed with risk-raising defaults and listed as reasons.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from vigil.config.loader import ConfigBundle, load_bundle
from vigil.context.probes import Probe, ProbeRunner, default_probes
from vigil.context.snapshot import SnapshotBuilder
from vigil.errors import (
    CheckpointError,
    InvalidOperation,
    PersistentStoreUnavailable,
    UnsupportedOperationKind,
)
from vigil.logging.audit_log import AuditEvent, AuditLog, EventType
from vigil.modes import ModeController, Transition
from vigil.plugins import ScoreHintProvider
from vigil.policy import PolicyEngine
from vigil.recovery.coordinator import RecoveryCoordinator
from vigil.recovery.strategies import RecoveryStrategy
from vigil.rules.evaluator import RiskRuleEvaluator
from vigil.rules.sequences import ToolSequenceCorrelator
from vigil.schemas import (
    Action,
    ContextSnapshot,
    Decision,
    ModeState,
    Operation,
    RecoveryCheckpoint,
    TrustInfo,
)
from vigil.store import InMemoryStore, KeyValueStore
from vigil.trust.ledger import TrustLedger
from vigil.trust.repository import STORE_FALLBACK_REASON, SessionRepository

logger = logging.getLogger(__name__)

UNSUPPORTED_NOTE = "unsupported, proceed at caller's risk"


@dataclass(frozen=True)
class Clearance:
    """Whether a host may go ahead with an evaluated operation."""
    proceed: bool
    checkpoint: Optional[RecoveryCheckpoint] = None
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proceed": self.proceed,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "notes": list(self.notes),
        }


@dataclass
class Session:
    """Mutable per-identity state. Only touched while holding ``lock``."""
    identity: str
    ledger: TrustLedger
    mode: ModeController
    builder: SnapshotBuilder
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_snapshot: Optional[ContextSnapshot] = None


class AdvisoryEngine:
    """Adaptive command-risk advisory engine."""

    def __init__(
        self,
        bundle: Optional[ConfigBundle] = None,
        store: Optional[KeyValueStore] = None,
        probes: Optional[Mapping[str, Probe]] = None,
        score_hint: Optional[ScoreHintProvider] = None,
        strategies: Optional[Sequence[RecoveryStrategy]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        audit: bool = True,
    ):
        self.bundle = bundle or load_bundle()
        self.config = self.bundle.config
        self.store = store or InMemoryStore()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.evaluator = RiskRuleEvaluator.from_config(
            self.bundle.rules, self.config.modifiers, self.config.context
        )
        self.correlator = ToolSequenceCorrelator.from_config(self.bundle.sequences)
        self.policy = PolicyEngine(self.evaluator, self.correlator, self.config, score_hint)
        self.recovery = RecoveryCoordinator(
            self.store, self.config.recovery, strategies, clock=self.clock
        )
        self.repository = SessionRepository(self.store, self.config.trust)
        self.audit_log: Optional[AuditLog] = AuditLog(self.store) if audit else None
        self.probe_runner = ProbeRunner(
            probes if probes is not None else default_probes(
                git_timeout=self.config.context.probe_timeout_seconds
            ),
            timeout=self.config.context.probe_timeout_seconds,
        )

        self._sessions: Dict[str, Session] = {}
        self._sessions_lock = threading.Lock()

    # =========================================================================
    # Sessions
    # =========================================================================

    def _session(self, identity: str) -> Session:
        if not isinstance(identity, str) or not identity.strip():
            raise InvalidOperation("identity must be a non-empty string")
        with self._sessions_lock:
            session = self._sessions.get(identity)
            if session is None:
                session = self._load_session(identity)
                self._sessions[identity] = session
            return session

    def _load_session(self, identity: str) -> Session:
        now = self.clock()
        ledger = self.repository.load_ledger(identity)
        has_history = ledger is not None
        if ledger is None:
            ledger = TrustLedger(self.config.trust, session_started_at=now)

        state = self.repository.load_mode(identity)
        if state is not None:
            mode = ModeController(state, self.config.modes)
        else:
            mode = ModeController.initial(now, has_history, self.config.modes)
            self.repository.save_mode(identity, mode.state)

        builder = SnapshotBuilder(self.config.context)
        builder.seed(self.repository.load_window(identity))
        logger.debug("Session %s loaded in %s mode", identity, mode.mode.value)
        return Session(identity=identity, ledger=ledger, mode=mode, builder=builder)

    def _persist(self, session: Session) -> None:
        self.repository.save_ledger(session.identity, session.ledger)
        self.repository.save_window(session.identity, session.builder.window)

    def _audit(self, event_type: EventType, identity: str, now: datetime, **fields) -> None:
        if self.audit_log is not None:
            self.audit_log.record(AuditEvent(event_type, identity, timestamp=now, **fields))

    def _mode_changed(self, session: Session, transition: Optional[Transition], now: datetime) -> None:
        if transition is None or transition[0] == transition[1]:
            return
        self.repository.save_mode(session.identity, session.mode.state)
        self._audit(
            EventType.MODE_CHANGE, session.identity, now,
            reason=f"{transition[0].value} -> {transition[1].value}",
            metadata=session.mode.state.to_dict(),
        )

    @staticmethod
    def _check_operation(operation: Any) -> Operation:
        if not isinstance(operation, Operation):
            raise InvalidOperation(f"expected an Operation, got {type(operation).__name__}")
        return operation

    # =========================================================================
    # Decision API
    # =========================================================================

    def evaluate(
        self,
        operation: Operation,
        identity: str = "default",
        probe_results: Optional[Mapping[str, Any]] = None,
    ) -> Decision:
        """Score an operation for identity and decide what the host should do.

        Args:
            operation: The proposed operation
            identity: Scopes trust, mode and the operation window
            probe_results: Pre-fetched context facts; probes run when omitted

        Raises:
            InvalidOperation: malformed operation or identity
        """
        operation = self._check_operation(operation)
        session = self._session(identity)
        facts = probe_results if probe_results is not None else self.probe_runner.run()

        with session.lock:
            now = self.clock()
            self._mode_changed(session, session.mode.tick(now), now)

            last = session.ledger.last_activity_at
            idle = int((now - last).total_seconds()) if last else 0
            snapshot = session.builder.build(facts, operation, idle_seconds=idle, now=now)
            session.last_snapshot = snapshot

            notes: List[str] = []
            if self.repository.is_degraded(identity):
                notes.append(STORE_FALLBACK_REASON)
            decision = self.policy.evaluate(
                operation,
                snapshot,
                session.ledger,
                session.mode,
                has_backup=self.recovery.has_live_checkpoint(operation, now),
                extra_notes=notes,
            )

            if session.ledger.last_reset_reasons:
                self._audit(
                    EventType.TRUST_RESET, identity, now,
                    reason="; ".join(session.ledger.last_reset_reasons),
                )

            session.ledger.last_activity_at = now
            was_degraded = self.repository.is_degraded(identity)
            self._persist(session)
            if not was_degraded and self.repository.is_degraded(identity):
                decision = replace(decision, reasons=decision.reasons + (STORE_FALLBACK_REASON,))
                self._audit(EventType.STORE_FALLBACK, identity, now, reason=STORE_FALLBACK_REASON)

            self._audit(
                EventType.DECISION, identity, now,
                command=operation.raw_text,
                action=decision.action.value,
                risk_score=decision.risk_score,
                reason="; ".join(decision.reasons),
                metadata={
                    "kind": operation.kind.value,
                    "mode": decision.mode.value,
                    "rules": list(decision.matched_rule_ids),
                    "sequences": list(decision.matched_sequence_ids),
                    "pattern_key": decision.pattern_key,
                },
            )

        logger.debug("%s: %s -> %s (%d)", identity, operation.kind.value,
                     decision.action.value, decision.risk_score)
        return decision

    def report_outcome(
        self,
        identity: str,
        operation: Operation,
        approved: bool,
        was_mistake: bool = False,
    ) -> TrustInfo:
        """Feed back what happened. Only this grows approval counts."""
        operation = self._check_operation(operation)
        session = self._session(identity)
        with session.lock:
            now = self.clock()
            pattern_key = self.policy.pattern_key(operation)
            info = session.ledger.record_outcome(pattern_key, approved, was_mistake, now)
            session.ledger.last_activity_at = now
            self._persist(session)
            self._audit(
                EventType.OUTCOME, identity, now,
                command=operation.raw_text,
                reason="mistake" if was_mistake else ("approved" if approved else "declined"),
                metadata={"pattern_key": pattern_key, "approval_count": info.approval_count,
                          "auto_trusted": info.auto_trusted},
            )
        return info

    def authorize(self, identity: str, operation: Operation, decision: Decision) -> Clearance:
        """Checkpoint a risky operation before the host runs it.

        Synchronous: when this returns with proceed=True and a checkpoint,
        the backup is complete.
        """
        operation = self._check_operation(operation)
        session = self._session(identity)
        min_score = self.config.recovery.checkpoint_min_score
        needs_checkpoint = (
            decision.risk_score >= min_score
            or decision.action in (Action.EXPLAIN_AND_CONFIRM, Action.BLOCK)
        )
        if not needs_checkpoint:
            return Clearance(proceed=True)

        with session.lock:
            now = self.clock()
            working_dir = (
                str(operation.params.get("cwd") or "")
                or (session.last_snapshot.working_dir if session.last_snapshot else "")
                or os.getcwd()
            )
            try:
                checkpoint = self.recovery.checkpoint(
                    operation, working_dir=working_dir, identity=identity, now=now
                )
            except UnsupportedOperationKind as e:
                if decision.action == Action.BLOCK:
                    return Clearance(
                        proceed=False,
                        notes=(str(e), "blocked operations need a recovery checkpoint"),
                    )
                return Clearance(proceed=True, notes=(f"{e}: {UNSUPPORTED_NOTE}",))
            except (CheckpointError, PersistentStoreUnavailable) as e:
                logger.warning("Checkpoint for %s failed: %s", identity, e)
                return Clearance(proceed=False, notes=(f"checkpoint failed: {e}",))

            self._audit(
                EventType.CHECKPOINT_CREATED, identity, now,
                command=operation.raw_text,
                metadata={"checkpoint_id": checkpoint.id, "strategy": checkpoint.strategy,
                          "expires_at": checkpoint.expires_at.isoformat()},
            )
        return Clearance(proceed=True, checkpoint=checkpoint)

    # =========================================================================
    # Recovery
    # =========================================================================

    def restore(self, checkpoint_id: str) -> RecoveryCheckpoint:
        """Restore a checkpoint.

        Raises:
            CheckpointNotFound, CheckpointExpired, RestoreFailed
        """
        now = self.clock()
        identity = self.recovery.identity_of(checkpoint_id)
        checkpoint = self.recovery.restore(checkpoint_id, now)
        self._audit(
            EventType.CHECKPOINT_RESTORED, identity or "unknown", now,
            command=checkpoint.operation.raw_text,
            metadata={"checkpoint_id": checkpoint.id, "strategy": checkpoint.strategy},
        )
        return checkpoint

    def checkpoints(self, identity: Optional[str] = None) -> List[RecoveryCheckpoint]:
        return self.recovery.live_checkpoints(identity, self.clock())

    def purge_expired(self) -> int:
        return self.recovery.purge_expired(self.clock())

    # =========================================================================
    # Modes
    # =========================================================================

    def _transition(self, identity: str, change: Callable[[ModeController, datetime], Transition]) -> ModeState:
        session = self._session(identity)
        with session.lock:
            now = self.clock()
            self._mode_changed(session, session.mode.tick(now), now)
            self._mode_changed(session, change(session.mode, now), now)
            return session.mode.state

    def mode(self, identity: str) -> ModeState:
        session = self._session(identity)
        with session.lock:
            now = self.clock()
            self._mode_changed(session, session.mode.tick(now), now)
            return session.mode.state

    def enter_flow(self, identity: str, minutes: Optional[int] = None) -> ModeState:
        return self._transition(identity, lambda m, now: m.enter_flow(now, minutes))

    def exit_flow(self, identity: str) -> ModeState:
        return self._transition(identity, lambda m, now: m.exit_flow(now))

    def enter_paranoid(self, identity: str) -> ModeState:
        return self._transition(identity, lambda m, now: m.enter_paranoid(now))

    def exit_paranoid(self, identity: str) -> ModeState:
        return self._transition(identity, lambda m, now: m.exit_paranoid(now))

    # =========================================================================
    # Trust
    # =========================================================================

    def trust(self, identity: str) -> TrustLedger:
        """The live ledger of identity (do not mutate outside the engine)."""
        return self._session(identity).ledger

    def reset_trust(self, identity: str) -> None:
        session = self._session(identity)
        with session.lock:
            now = self.clock()
            session.ledger.reset()
            self._persist(session)
            self._audit(EventType.TRUST_RESET, identity, now, reason="manual reset")

    def close(self) -> None:
        self.store.close()
