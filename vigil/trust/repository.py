"""
Vigil Session Repository

Persists per-identity trust ledgers and mode state in the Persistent
Store:

    trust:<identity>   TrustLedger.to_dict()
    mode:<identity>    ModeState.to_dict()
    window:<identity>  recent operations, oldest first

When the store fails, the repository logs a warning, marks the identity
as running on an in-memory, session-scoped ledger, and never raises.
The mark clears on the next successful write.
"""
from __future__ import annotations

import logging
import threading
from typing import List, Optional, Sequence, Set

from vigil.config.models import TrustConfig
from vigil.errors import PersistentStoreUnavailable
from vigil.schemas import ModeState, Operation
from vigil.store import KeyValueStore
from vigil.trust.ledger import TrustLedger

logger = logging.getLogger(__name__)

STORE_FALLBACK_REASON = "persistent store unavailable: trust kept in memory for this session"


class SessionRepository:
    """Load/save ledger and mode state with in-memory fallback."""

    TRUST_PREFIX = "trust"
    MODE_PREFIX = "mode"
    WINDOW_PREFIX = "window"

    def __init__(self, store: KeyValueStore, settings: Optional[TrustConfig] = None):
        self.store = store
        self.settings = settings or TrustConfig()
        self._degraded: Set[str] = set()
        self._lock = threading.Lock()

    def _trust_key(self, identity: str) -> str:
        return f"{self.TRUST_PREFIX}:{identity}"

    def _mode_key(self, identity: str) -> str:
        return f"{self.MODE_PREFIX}:{identity}"

    def _window_key(self, identity: str) -> str:
        return f"{self.WINDOW_PREFIX}:{identity}"

    def _mark(self, identity: str, error: Exception) -> None:
        with self._lock:
            first = identity not in self._degraded
            self._degraded.add(identity)
        if first:
            logger.warning("Store unavailable for %s, using in-memory ledger: %s", identity, error)

    def _clear(self, identity: str) -> None:
        with self._lock:
            self._degraded.discard(identity)

    def is_degraded(self, identity: str) -> bool:
        with self._lock:
            return identity in self._degraded

    def identities(self) -> Set[str]:
        """Identities with stored trust or mode state."""
        found: Set[str] = set()
        for prefix in (self.TRUST_PREFIX, self.MODE_PREFIX):
            found.update(k.split(":", 1)[1] for k in self.store.keys(f"{prefix}:"))
        return found

    # --- Trust ---

    def load_ledger(self, identity: str) -> Optional[TrustLedger]:
        """The stored ledger, or None if there is none (or the store failed)."""
        try:
            data = self.store.get(self._trust_key(identity))
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return None
        if data is None:
            return None
        return TrustLedger.from_dict(data, settings=self.settings)

    def save_ledger(self, identity: str, ledger: TrustLedger) -> bool:
        try:
            self.store.put(self._trust_key(identity), ledger.to_dict())
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return False
        self._clear(identity)
        return True

    def delete_ledger(self, identity: str) -> bool:
        try:
            return self.store.delete(self._trust_key(identity))
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return False

    # --- Mode ---

    def load_mode(self, identity: str) -> Optional[ModeState]:
        try:
            data = self.store.get(self._mode_key(identity))
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return None
        return ModeState.from_dict(data) if data else None

    def save_mode(self, identity: str, state: ModeState) -> bool:
        try:
            self.store.put(self._mode_key(identity), state.to_dict())
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return False
        return True

    # --- Sliding window ---

    def load_window(self, identity: str) -> List[Operation]:
        """Recent operations from a previous process, oldest first."""
        try:
            data = self.store.get(self._window_key(identity)) or []
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return []
        return [Operation.from_dict(item) for item in data]

    def save_window(self, identity: str, window: Sequence[Operation]) -> bool:
        try:
            self.store.put(self._window_key(identity), [op.to_dict() for op in window])
        except PersistentStoreUnavailable as e:
            self._mark(identity, e)
            return False
        return True
