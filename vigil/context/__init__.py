"""Vigil context gathering: probes and snapshot assembly."""

from vigil.context.probes import UNAVAILABLE, ProbeRunner, default_probes
from vigil.context.snapshot import DEGRADED_NOTES, SnapshotBuilder

__all__ = ["DEGRADED_NOTES", "ProbeRunner", "SnapshotBuilder", "UNAVAILABLE", "default_probes"]
