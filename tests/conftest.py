"""Pytest configuration and fixtures for Vigil tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from vigil.config.loader import BUNDLED_RULES, BUNDLED_SEQUENCES, load_bundle
from vigil.context.probes import (
    CI,
    CLOCK,
    CONTAINER,
    ENVIRONMENT,
    GIT,
    REMOTE_SESSION,
    WORKING_DIR,
)
from vigil.engine import AdvisoryEngine
from vigil.errors import PersistentStoreUnavailable
from vigil.schemas import ContextSnapshot, Operation, OperationKind
from vigil.store import InMemoryStore, KeyValueStore

# Monday noon: inside working hours
T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
PROJECT_DIR = "/home/dev/project"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class FailingStore(KeyValueStore):
    """A store whose backend is gone."""

    def get(self, key):
        raise PersistentStoreUnavailable("store is down")

    def put(self, key, value, expires_at=None):
        raise PersistentStoreUnavailable("store is down")

    def delete(self, key):
        raise PersistentStoreUnavailable("store is down")

    def keys(self, prefix=""):
        raise PersistentStoreUnavailable("store is down")

    def delete_expired(self, now):
        raise PersistentStoreUnavailable("store is down")


def make_facts(**overrides) -> Dict[str, Any]:
    """Probe results for a calm, non-production dev box.

    Keyword names are probe names; ``branch``/``dirty`` adjust the git probe.
    """
    git = {"is_repo": True, "branch": overrides.pop("branch", "feature/x"),
           "dirty": overrides.pop("dirty", False)}
    facts = {
        WORKING_DIR: PROJECT_DIR,
        GIT: git,
        ENVIRONMENT: {"ENV": "dev"},
        CONTAINER: False,
        REMOTE_SESSION: False,
        CI: False,
        CLOCK: T0,
    }
    facts.update(overrides)
    return facts


def make_snapshot(
    operations: Optional[List[Operation]] = None,
    **overrides,
) -> ContextSnapshot:
    """A ContextSnapshot matching make_facts(), newest operation last."""
    values = dict(
        working_dir=PROJECT_DIR,
        git_branch="feature/x",
        has_uncommitted_changes=False,
        is_production=False,
        is_ci=False,
        is_remote_session=False,
        is_container=False,
        time_of_day=12,
        idle_seconds=0,
        recent_operations=tuple(operations or ()),
        taken_at=T0,
        is_git_repo=True,
    )
    values.update(overrides)
    return ContextSnapshot(**values)


def shell(text: str, **params) -> Operation:
    return Operation(kind=OperationKind.SHELL, raw_text=text, params=params)


def load_test_bundle(tmp_path: Path, **overrides):
    """Bundled rule tables plus config overrides; no user or project files."""
    return load_bundle(
        config_path=tmp_path / "no-user-config.yaml",
        rules_path=BUNDLED_RULES,
        sequences_path=BUNDLED_SEQUENCES,
        overrides=overrides or None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def facts():
    return make_facts()


@pytest.fixture
def bundle(tmp_path):
    return load_test_bundle(tmp_path)


@pytest.fixture
def make_engine(tmp_path, clock, store):
    """Factory for engines on the shared clock and store.

    Sessions start in Adaptive mode unless learning_days is given.
    """
    engines = []

    def _make(
        learning_days: int = 0,
        facts: Optional[Dict[str, Any]] = None,
        engine_store: Optional[KeyValueStore] = None,
        **kwargs,
    ) -> AdvisoryEngine:
        overrides = kwargs.pop("overrides", {})
        overrides.setdefault("modes", {})["learning_period_days"] = learning_days
        probe_facts = facts if facts is not None else make_facts()
        engine = AdvisoryEngine(
            bundle=load_test_bundle(tmp_path, **overrides),
            store=engine_store if engine_store is not None else store,
            probes={name: (lambda v=value: v) for name, value in probe_facts.items()},
            clock=clock,
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()
