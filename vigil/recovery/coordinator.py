"""
Vigil Recovery Coordinator

Creates reversible checkpoints for risky-but-approved operations and
restores them on demand.

Store layout:
    checkpoint:<id>   checkpoint metadata (no store expiry, so an expired
                      checkpoint can still be told apart from an unknown id)
    backup:<id>       strategy payload, stored with the checkpoint's expiry

Expiry is enforced lazily when a checkpoint is looked up; purge_expired()
is the only bulk cleanup and is never run in the background.
"""
from __future__ import annotations

import logging
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from vigil.config.models import RecoveryConfig
from vigil.errors import (
    CheckpointExpired,
    CheckpointNotFound,
    PersistentStoreUnavailable,
    RestoreFailed,
    UnsupportedOperationKind,
)
from vigil.recovery.strategies import RecoveryStrategy, default_strategies
from vigil.schemas import Operation, RecoveryCheckpoint
from vigil.store import KeyValueStore

logger = logging.getLogger(__name__)


class RecoveryCoordinator:
    """Owns every RecoveryCheckpoint; the only code that creates or destroys them."""

    CHECKPOINT_PREFIX = "checkpoint"
    BACKUP_PREFIX = "backup"

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[RecoveryConfig] = None,
        strategies: Optional[Sequence[RecoveryStrategy]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings or RecoveryConfig()
        self.strategies = list(strategies) if strategies is not None else default_strategies(
            self.settings.max_archive_bytes, self.settings.git_timeout_seconds
        )
        self._by_name: Dict[str, RecoveryStrategy] = {s.name: s for s in self.strategies}
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        # Held across lookup, restore and discard so a checkpoint is applied at most once
        self._restore_lock = threading.Lock()

    def _checkpoint_key(self, checkpoint_id: str) -> str:
        return f"{self.CHECKPOINT_PREFIX}:{checkpoint_id}"

    def _backup_key(self, checkpoint_id: str) -> str:
        return f"{self.BACKUP_PREFIX}:{checkpoint_id}"

    def supported(self, operation: Operation) -> List[RecoveryStrategy]:
        return [s for s in self.strategies if s.supports(operation)]

    # --- Create ---

    def checkpoint(
        self,
        operation: Operation,
        working_dir: Optional[str] = None,
        identity: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RecoveryCheckpoint:
        """Back up what operation is about to change.

        Raises:
            UnsupportedOperationKind: no strategy can protect this operation
            CheckpointError: a strategy applied but the backup failed
            PersistentStoreUnavailable: the backup could not be stored
        """
        now = now or self.clock()
        working_dir = working_dir or str(operation.params.get("cwd") or os.getcwd())

        last_unsupported: Optional[UnsupportedOperationKind] = None
        for strategy in self.supported(operation):
            try:
                payload = strategy.capture(operation, working_dir)
            except UnsupportedOperationKind as e:
                last_unsupported = e
                continue

            checkpoint_id = uuid.uuid4().hex[:12]
            checkpoint = RecoveryCheckpoint(
                id=checkpoint_id,
                operation=operation,
                backup_ref=self._backup_key(checkpoint_id),
                strategy=strategy.name,
                created_at=now,
                expires_at=now + timedelta(seconds=self.settings.retention_seconds),
            )
            self.store.put(checkpoint.backup_ref, payload, expires_at=checkpoint.expires_at)
            record = checkpoint.to_dict()
            record["identity"] = identity
            self.store.put(self._checkpoint_key(checkpoint.id), record)
            logger.info("Checkpoint %s created with %s (expires %s)",
                        checkpoint.id, strategy.name, checkpoint.expires_at.isoformat())
            return checkpoint

        if last_unsupported is not None:
            raise last_unsupported
        raise UnsupportedOperationKind(operation.kind.value)

    # --- Lookup ---

    def _record(self, checkpoint_id: str) -> Dict:
        record = self.store.get(self._checkpoint_key(checkpoint_id))
        if record is None:
            raise CheckpointNotFound(f"no checkpoint {checkpoint_id}", checkpoint_id)
        return record

    def _discard(self, checkpoint_id: str) -> None:
        self.store.delete(self._backup_key(checkpoint_id))
        self.store.delete(self._checkpoint_key(checkpoint_id))

    def get(self, checkpoint_id: str, now: Optional[datetime] = None) -> RecoveryCheckpoint:
        """Look up a live checkpoint; an expired one is destroyed on sight."""
        now = now or self.clock()
        checkpoint = RecoveryCheckpoint.from_dict(self._record(checkpoint_id))
        if checkpoint.is_expired(now):
            self._discard(checkpoint_id)
            raise CheckpointExpired(
                f"checkpoint {checkpoint_id} expired at {checkpoint.expires_at.isoformat()}",
                checkpoint_id,
            )
        return checkpoint

    def identity_of(self, checkpoint_id: str) -> Optional[str]:
        try:
            return self._record(checkpoint_id).get("identity")
        except CheckpointNotFound:
            return None

    def live_checkpoints(self, identity: Optional[str] = None, now: Optional[datetime] = None) -> List[RecoveryCheckpoint]:
        """Live checkpoints, oldest first, optionally for one identity."""
        now = now or self.clock()
        live = []
        for key in self.store.keys(f"{self.CHECKPOINT_PREFIX}:"):
            record = self.store.get(key)
            if record is None or (identity is not None and record.get("identity") != identity):
                continue
            checkpoint = RecoveryCheckpoint.from_dict(record)
            if not checkpoint.is_expired(now):
                live.append(checkpoint)
        return sorted(live, key=lambda c: c.created_at)

    def has_live_checkpoint(self, operation: Operation, now: Optional[datetime] = None) -> bool:
        """True if an unexpired checkpoint already covers this exact operation."""
        fingerprint = operation.fingerprint()
        try:
            return any(c.operation.fingerprint() == fingerprint for c in self.live_checkpoints(now=now))
        except PersistentStoreUnavailable as e:
            logger.warning("Cannot check for existing checkpoints: %s", e)
            return False

    # --- Restore / expiry ---

    def restore(self, checkpoint_id: str, now: Optional[datetime] = None) -> RecoveryCheckpoint:
        """Restore and destroy a checkpoint.

        Raises:
            CheckpointNotFound, CheckpointExpired, RestoreFailed
        """
        with self._restore_lock:
            checkpoint = self.get(checkpoint_id, now)
            payload = self.store.get(checkpoint.backup_ref)
            if payload is None:
                raise RestoreFailed(f"backup for checkpoint {checkpoint_id} is missing", checkpoint_id)
            strategy = self._by_name.get(checkpoint.strategy)
            if strategy is None:
                raise RestoreFailed(f"unknown recovery strategy {checkpoint.strategy!r}", checkpoint_id)

            try:
                strategy.restore(payload)
            except RestoreFailed as e:
                e.checkpoint_id = checkpoint_id
                raise
            self._discard(checkpoint_id)
        logger.info("Checkpoint %s restored", checkpoint_id)
        return checkpoint

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Bulk-delete expired checkpoints and payloads. Returns checkpoints removed."""
        now = now or self.clock()
        self.store.delete_expired(now)
        removed = 0
        for key in self.store.keys(f"{self.CHECKPOINT_PREFIX}:"):
            record = self.store.get(key)
            if record is None:
                continue
            if datetime.fromisoformat(record["expires_at"]) <= now:
                self._discard(record["id"])
                removed += 1
        if removed:
            logger.info("Purged %d expired checkpoint(s)", removed)
        return removed
