"""
Session state machine.

IDLE → AWAKE → CAPTURING → TRANSCRIBING → ROUTING →
(EXECUTING | CONFIRMING | ANSWERING) → IDLE

Every non-idle state may also abort straight back to IDLE. The machine is
owned by the listener loop; nothing else mutates the state.
"""

import logging
from enum import Enum, auto
from typing import Callable, Dict, FrozenSet, Optional

from .errors import BtwError, ReentrantSession

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = auto()
    AWAKE = auto()
    CAPTURING = auto()
    TRANSCRIBING = auto()
    ROUTING = auto()
    EXECUTING = auto()
    CONFIRMING = auto()
    ANSWERING = auto()


_S = SessionState

TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    _S.IDLE: frozenset({_S.AWAKE}),
    _S.AWAKE: frozenset({_S.CAPTURING, _S.IDLE}),
    _S.CAPTURING: frozenset({_S.TRANSCRIBING, _S.IDLE}),
    _S.TRANSCRIBING: frozenset({_S.ROUTING, _S.IDLE}),
    _S.ROUTING: frozenset({_S.EXECUTING, _S.CONFIRMING, _S.ANSWERING, _S.IDLE}),
    _S.EXECUTING: frozenset({_S.IDLE}),
    _S.CONFIRMING: frozenset({_S.IDLE}),
    _S.ANSWERING: frozenset({_S.IDLE}),
}


class InvalidTransition(BtwError):
    """Raised for an edge that is not in the transition table."""


class SessionMachine:
    """Single-owner session state with an explicit transition function."""

    def __init__(self, on_change: Optional[Callable[[SessionState, SessionState], None]] = None):
        self._state = SessionState.IDLE
        self._on_change = on_change
        self.sessions_started = 0
        self.rejected_wakes = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._state is SessionState.IDLE

    def can_transition(self, new_state: SessionState) -> bool:
        return new_state in TRANSITIONS[self._state]

    def transition(self, new_state: SessionState) -> None:
        old = self._state
        if new_state not in TRANSITIONS[old]:
            raise InvalidTransition(f"{old.name} -> {new_state.name}")
        self._state = new_state
        logger.info("state: %s -> %s", old.name, new_state.name)
        if self._on_change:
            try:
                self._on_change(old, new_state)
            except Exception:
                logger.exception("state change callback failed")

    def begin(self) -> None:
        """Start a session. Raises ReentrantSession unless idle."""
        if not self.is_idle:
            raise ReentrantSession(f"session already {self._state.name}")
        self.transition(SessionState.AWAKE)
        self.sessions_started += 1

    def try_wake(self) -> bool:
        """Start a session if idle. Returns False (state unchanged) otherwise."""
        try:
            self.begin()
        except ReentrantSession as e:
            self.rejected_wakes += 1
            logger.debug("wake ignored: %s", e.message)
            return False
        return True

    def reset(self) -> None:
        """Abort whatever is in progress and return to IDLE."""
        if not self.is_idle:
            self.transition(SessionState.IDLE)
