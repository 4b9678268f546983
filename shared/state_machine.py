from enum import Enum
from typing import List, Dict, Type
from dataclasses import dataclass

from .errors import InvalidStateError


class CompetitionState(str, Enum):
    REGISTRATION = "registration"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class TeamState(str, Enum):
    FORMING = "forming"
    FULL = "full"
    ACTIVE = "active"
    DISSOLVED = "dissolved"


class TransitionError(InvalidStateError):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason, state=from_state)


@dataclass
class Transition:
    from_state: Enum
    to_state: Enum
    action: str


class StateMachine:
    """
    Table-driven state machine.

    Subclasses declare STATE_TYPE, INITIAL_STATE, TRANSITIONS (the only legal
    edges) and ALLOWED_ACTIONS (actions that may be performed in a state,
    including ones that do not change it).
    """
    STATE_TYPE: Type[Enum] = None
    INITIAL_STATE: Enum = None
    TRANSITIONS: List[Transition] = []
    ALLOWED_ACTIONS: Dict[Enum, List[str]] = {}

    def __init__(self, initial_state: Enum = None):
        self._state = initial_state if initial_state is not None else self.INITIAL_STATE
        self._history: List[tuple] = []

    @property
    def state(self):
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    @property
    def is_terminal(self) -> bool:
        return not any(t.from_state == self._state for t in self.TRANSITIONS)

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def require(self, action: str):
        """Raise TransitionError unless `action` is allowed in the current state."""
        if not self.can_perform(action):
            raise TransitionError(
                self._state.value,
                action,
                f"Cannot {action.replace('_', ' ')} while {self._state.value}"
            )

    def transition(self, action: str):
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "StateMachine":
        try:
            state = cls.STATE_TYPE(state_str)
        except ValueError:
            raise InvalidStateError(f"Unknown state '{state_str}'", state=state_str)
        return cls(initial_state=state)


class CompetitionStateMachine(StateMachine):
    STATE_TYPE = CompetitionState
    INITIAL_STATE = CompetitionState.REGISTRATION

    TRANSITIONS = [
        Transition(CompetitionState.REGISTRATION, CompetitionState.IN_PROGRESS, "start"),
        Transition(CompetitionState.REGISTRATION, CompetitionState.CANCELLED, "cancel"),
        Transition(CompetitionState.IN_PROGRESS, CompetitionState.IN_PROGRESS, "advance"),
        Transition(CompetitionState.IN_PROGRESS, CompetitionState.FINISHED, "finish"),
        Transition(CompetitionState.IN_PROGRESS, CompetitionState.CANCELLED, "cancel"),
    ]

    ALLOWED_ACTIONS = {
        CompetitionState.REGISTRATION: ["register", "start", "cancel"],
        CompetitionState.IN_PROGRESS: ["report_result", "advance", "finish", "cancel"],
        CompetitionState.FINISHED: ["view"],
        CompetitionState.CANCELLED: ["view"],
    }


class TeamStateMachine(StateMachine):
    STATE_TYPE = TeamState
    INITIAL_STATE = TeamState.FORMING

    TRANSITIONS = [
        Transition(TeamState.FORMING, TeamState.FULL, "fill"),
        Transition(TeamState.FULL, TeamState.FORMING, "vacate"),
        Transition(TeamState.FORMING, TeamState.ACTIVE, "lock"),
        Transition(TeamState.FULL, TeamState.ACTIVE, "lock"),
        Transition(TeamState.FORMING, TeamState.DISSOLVED, "dissolve"),
        Transition(TeamState.FULL, TeamState.DISSOLVED, "dissolve"),
        Transition(TeamState.ACTIVE, TeamState.DISSOLVED, "dissolve"),
    ]

    ALLOWED_ACTIONS = {
        TeamState.FORMING: ["join", "leave", "promote", "remove_member", "update",
                            "regenerate_invite", "lock", "dissolve"],
        TeamState.FULL: ["leave", "promote", "remove_member", "update",
                         "regenerate_invite", "lock", "dissolve"],
        TeamState.ACTIVE: ["promote", "dissolve"],
        TeamState.DISSOLVED: [],
    }

