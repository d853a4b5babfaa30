"""
Vigil Mode/State Controller

One active mode per session:

    Learning --(learning_period_days elapsed)--> Adaptive
    Adaptive <--(enter_flow / expiry, exit_flow)--> Flow
    Adaptive <--(enter_paranoid / exit_paranoid)--> Paranoid

Time-based transitions (learning rollover, flow expiry) happen lazily in
tick(), which the engine calls at the start of every evaluation. There
is no timer thread.

Each mode shifts the base threshold table by its offset. Whatever the
mode, a score at or above critical_floor_score is never mapped below
ExplainAndConfirm.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Tuple

from vigil.config.models import ModesConfig
from vigil.errors import ModeTransitionError
from vigil.schemas import Action, ModeName, ModeState

logger = logging.getLogger(__name__)

Transition = Tuple[ModeName, ModeName]


@dataclass(frozen=True)
class ActionThresholds:
    """Lowest score that triggers each action."""
    hint_only: int
    quick_confirm: int
    explain_and_confirm: int
    block: int

    def action_for(self, score: int, suppress_low_hints: bool = True) -> Action:
        if score >= self.block:
            return Action.BLOCK
        if score >= self.explain_and_confirm:
            return Action.EXPLAIN_AND_CONFIRM
        if score >= self.quick_confirm:
            return Action.QUICK_CONFIRM
        if score >= self.hint_only:
            return Action.HINT_ONLY
        # Below the hint threshold: a hint that is suppressed by default
        return Action.ALLOW if suppress_low_hints else Action.HINT_ONLY


class ModeController:
    """Finite state machine for one session's operating mode."""

    def __init__(self, state: ModeState, settings: Optional[ModesConfig] = None):
        self.settings = settings or ModesConfig()
        self._state = state

    @classmethod
    def initial(
        cls,
        now: datetime,
        has_history: bool,
        settings: Optional[ModesConfig] = None,
    ) -> ModeController:
        """Learning for a brand-new identity, Adaptive if it has history."""
        mode = ModeName.ADAPTIVE if has_history else ModeName.LEARNING
        return cls(ModeState(mode=mode, started_at=now), settings)

    @property
    def state(self) -> ModeState:
        return self._state

    @property
    def mode(self) -> ModeName:
        return self._state.mode

    def _move(self, new_state: ModeState) -> Transition:
        old = self._state.mode
        self._state = new_state
        if old != new_state.mode:
            logger.info("Mode %s -> %s", old.value, new_state.mode.value)
        return old, new_state.mode

    # --- Time-triggered transitions ---

    def tick(self, now: datetime) -> Optional[Transition]:
        """Apply any due time-based transition. Returns it, if one happened."""
        state = self._state
        if state.mode == ModeName.LEARNING:
            days = max(0, (now - state.started_at).days)
            if days >= self.settings.learning_period_days:
                return self._move(ModeState(mode=ModeName.ADAPTIVE, started_at=now))
            if days != state.days_observed:
                self._state = replace(state, days_observed=days)
        elif state.mode == ModeName.FLOW:
            if state.expires_at is not None and now >= state.expires_at:
                return self._move(ModeState(mode=ModeName.ADAPTIVE, started_at=now))
        return None

    # --- Explicit transitions ---

    def enter_flow(self, now: datetime, minutes: Optional[int] = None) -> Transition:
        """Enter (or extend) Flow mode for ``minutes``."""
        minutes = minutes or self.settings.default_flow_minutes
        if minutes <= 0:
            raise ModeTransitionError("flow duration must be positive")
        if self.mode not in (ModeName.ADAPTIVE, ModeName.FLOW):
            raise ModeTransitionError(f"cannot enter flow from {self.mode.value}")
        return self._move(ModeState(
            mode=ModeName.FLOW,
            started_at=now,
            expires_at=now + timedelta(minutes=minutes),
        ))

    def exit_flow(self, now: datetime) -> Transition:
        if self.mode != ModeName.FLOW:
            raise ModeTransitionError(f"not in flow mode (current: {self.mode.value})")
        return self._move(ModeState(mode=ModeName.ADAPTIVE, started_at=now))

    def enter_paranoid(self, now: datetime) -> Transition:
        if self.mode == ModeName.PARANOID:
            return self.mode, self.mode
        if self.mode != ModeName.ADAPTIVE:
            raise ModeTransitionError(f"cannot enter paranoid from {self.mode.value}")
        return self._move(ModeState(mode=ModeName.PARANOID, started_at=now))

    def exit_paranoid(self, now: datetime) -> Transition:
        if self.mode != ModeName.PARANOID:
            raise ModeTransitionError(f"not in paranoid mode (current: {self.mode.value})")
        return self._move(ModeState(mode=ModeName.ADAPTIVE, started_at=now))

    # --- Threshold table ---

    def thresholds(self, mode: Optional[ModeName] = None) -> ActionThresholds:
        mode = mode or self.mode
        base = self.settings.thresholds
        offset = getattr(self.settings.offsets, mode.value)
        return ActionThresholds(
            hint_only=base.hint_only + offset,
            quick_confirm=base.quick_confirm + offset,
            explain_and_confirm=base.explain_and_confirm + offset,
            block=base.block + offset,
        )

    def action_for(self, score: int) -> Action:
        """Map a final score to an action under the current mode."""
        action = self.thresholds().action_for(score, self.settings.suppress_low_hints)
        if score >= self.settings.critical_floor_score:
            action = action.at_least(Action.EXPLAIN_AND_CONFIRM)
        return action

    def learning_days_remaining(self, now: datetime) -> Optional[int]:
        if self.mode != ModeName.LEARNING:
            return None
        elapsed = max(0, (now - self._state.started_at).days)
        return max(0, self.settings.learning_period_days - elapsed)
