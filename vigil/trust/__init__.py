"""Vigil trust ledger and its persistence."""

from vigil.trust.ledger import TrustLedger
from vigil.trust.repository import STORE_FALLBACK_REASON, SessionRepository

__all__ = ["STORE_FALLBACK_REASON", "SessionRepository", "TrustLedger"]
